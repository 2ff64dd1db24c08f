"""Public endpoints behind the embeddable website chat widget."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.models import AssistantChannel, ChatMessage
from app.schemas.widget import (
    WidgetConfigOut,
    WidgetHistoryResponse,
    WidgetMessageIn,
    WidgetMessageOut,
    WidgetPostResponse,
)
from app.services.channels.widget import WidgetNormalizer, find_widget_channel, widget_message_id
from app.services.chat_service import find_chat
from app.services.inbound_pipeline import process_inbound

logger = get_logger("widget")

router = APIRouter(prefix="/widget", tags=["widget"])

HISTORY_LIMIT = 120


def _require_channel(db: Session, widget_key: str) -> AssistantChannel:
    assistant_channel = find_widget_channel(db, widget_key)
    if assistant_channel is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Widget not found")
    return assistant_channel


def _setting(assistant_channel: AssistantChannel, key: str) -> Optional[str]:
    value = (assistant_channel.settings or {}).get(key)
    if value is None:
        return None
    return str(value).strip() or None


@router.get("/{widget_key}/config", response_model=WidgetConfigOut)
def get_widget_config(widget_key: str, db: Session = Depends(get_db)):
    assistant_channel = _require_channel(db, widget_key)
    assistant = assistant_channel.assistant
    company_name = assistant.company.name if assistant is not None and assistant.company is not None else ""
    return WidgetConfigOut(
        widget_key=widget_key,
        assistant_name=assistant.name if assistant is not None else "",
        company_name=company_name,
        is_active=bool(assistant_channel.is_active and assistant is not None and assistant.is_active),
        title=_setting(assistant_channel, "title"),
        welcome_message=_setting(assistant_channel, "welcome_message"),
        accent_color=_setting(assistant_channel, "accent_color"),
    )


@router.get("/{widget_key}/messages", response_model=WidgetHistoryResponse)
def get_widget_messages(
    widget_key: str,
    session_id: str = Query(min_length=1, max_length=120),
    after_id: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=HISTORY_LIMIT),
    db: Session = Depends(get_db),
):
    assistant_channel = _require_channel(db, widget_key)
    chat = find_chat(db, assistant_channel.company_id, "widget", session_id.strip())
    if chat is None:
        return WidgetHistoryResponse(session_id=session_id)

    messages = (
        db.query(ChatMessage)
        .filter(ChatMessage.chat_id == chat.id, ChatMessage.id > after_id)
        .order_by(ChatMessage.id.asc())
        .limit(limit)
        .all()
    )
    return WidgetHistoryResponse(
        session_id=session_id,
        messages=[WidgetMessageOut.model_validate(message) for message in messages],
    )


@router.post("/{widget_key}/messages", response_model=WidgetPostResponse)
def post_widget_message(widget_key: str, request: WidgetMessageIn, db: Session = Depends(get_db)):
    assistant_channel = _require_channel(db, widget_key)
    payload = request.model_dump()

    if request.client_message_id:
        chat = find_chat(db, assistant_channel.company_id, "widget", request.session_id.strip())
        if chat is not None:
            existing = (
                db.query(ChatMessage)
                .filter(ChatMessage.chat_id == chat.id, ChatMessage.channel_message_id == widget_message_id(payload))
                .first()
            )
            if existing is not None:
                return WidgetPostResponse(duplicate=True, message=WidgetMessageOut.model_validate(existing))

    try:
        outcome = process_inbound(db, WidgetNormalizer(widget_key), payload)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Widget message failed: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Message not processed") from e

    if outcome is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Widget not found")

    stored = outcome.messages[-1] if outcome.messages else None
    return WidgetPostResponse(
        message=WidgetMessageOut.model_validate(stored) if stored is not None else None,
        reply=WidgetMessageOut.model_validate(outcome.reply) if outcome.reply is not None else None,
    )
