"""Meta Instagram messaging webhook."""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.routers.payloads import parse_json_body
from app.schemas.instagram import InstagramWebhook
from app.schemas.telegram import WebhookAck
from app.services.channels.instagram import InstagramNormalizer
from app.services.inbound_pipeline import process_inbound

logger = get_logger("instagram_webhook")

router = APIRouter()


@router.get("/instagram-main-webhook", response_class=PlainTextResponse)
def verify_instagram_webhook(
    hub_mode: str = Query(default="", alias="hub.mode"),
    hub_verify_token: str = Query(default="", alias="hub.verify_token"),
    hub_challenge: str = Query(default="", alias="hub.challenge"),
):
    if hub_mode == "subscribe" and hub_verify_token and hub_verify_token == settings.instagram_verify_token:
        return PlainTextResponse(hub_challenge)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post("/instagram-main-webhook", response_model=WebhookAck)
async def handle_instagram_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Each messaging event is processed and committed on its own so one bad
    event does not discard the others. Meta always gets ok back.
    """
    body = await parse_json_body(request)
    if body is None:
        return WebhookAck()
    return await run_in_threadpool(process_instagram_payload, db, body)


def process_instagram_payload(db: Session, body: dict) -> WebhookAck:
    try:
        events = InstagramWebhook.model_validate(body).events()
    except ValidationError as e:
        logger.warning("Unexpected Instagram payload shape", extra={"context": {"error": str(e)[:300]}})
        return WebhookAck()

    normalizer = InstagramNormalizer()
    for event in events:
        try:
            outcome = process_inbound(db, normalizer, event)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Instagram webhook event failed: {e}", exc_info=True)
            continue
        if outcome is not None:
            logger.info(
                "Instagram event processed",
                extra={
                    "context": {
                        "chat_id": outcome.chat.id,
                        "stored": len(outcome.messages),
                        "replied": outcome.reply is not None,
                        "skipped": outcome.skipped,
                    }
                },
            )
    return WebhookAck()
