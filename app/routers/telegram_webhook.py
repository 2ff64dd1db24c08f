"""Per-bot Telegram webhooks; every connected bot posts to its own assistant channel URL."""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.models import AssistantChannel
from app.routers.payloads import parse_json_body
from app.schemas.telegram import WebhookAck
from app.services.channels.telegram import TelegramNormalizer
from app.services.inbound_pipeline import process_inbound

logger = get_logger("telegram_webhook")

router = APIRouter()


def secret_matches(expected: str, provided: Optional[str]) -> bool:
    if not expected:
        return True
    return hmac.compare_digest(expected, (provided or "").strip())


@router.post("/integrations/telegram/webhook/{assistant_channel_id}", response_model=WebhookAck)
async def handle_telegram_webhook(assistant_channel_id: int, request: Request, db: Session = Depends(get_db)):
    """Read the body on the loop, then run the blocking pipeline in the threadpool."""
    provided = request.headers.get(settings.telegram_webhook_secret_header)
    body = await parse_json_body(request)
    return await run_in_threadpool(process_telegram_update, db, assistant_channel_id, provided, body)


def process_telegram_update(
    db: Session, assistant_channel_id: int, provided_secret: Optional[str], body: Optional[dict]
) -> WebhookAck:
    assistant_channel = (
        db.query(AssistantChannel)
        .filter(AssistantChannel.id == assistant_channel_id, AssistantChannel.channel == "telegram")
        .first()
    )
    if assistant_channel is None:
        logger.debug("Unknown Telegram channel", extra={"context": {"assistant_channel_id": assistant_channel_id}})
        return WebhookAck()

    if not secret_matches(assistant_channel.credential("webhook_secret"), provided_secret):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid webhook secret")

    if body is None:
        return WebhookAck()

    try:
        outcome = process_inbound(db, TelegramNormalizer(assistant_channel_id), body)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Telegram webhook error: {e}", exc_info=True)
        return WebhookAck()

    if outcome is not None:
        logger.info(
            "Telegram update processed",
            extra={
                "context": {
                    "assistant_channel_id": assistant_channel_id,
                    "chat_id": outcome.chat.id,
                    "stored": len(outcome.messages),
                    "replied": outcome.reply is not None,
                    "skipped": outcome.skipped,
                }
            },
        )
    return WebhookAck()
