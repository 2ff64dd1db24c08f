from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Assistant, AssistantChannel, Company, User
from app.services.billing_ledger import utcnow
from app.services.channels.base import (
    TEXT,
    ChannelClient,
    ChannelIdentity,
    ChannelNormalizer,
    InboundEvent,
    NormalizedPart,
    compact,
    fallback_message_id,
    text_part_type,
)

logger = get_logger("channels.widget")

SESSION_ID_LIMIT = 120
TEXT_LIMIT = 4000


def widget_message_id(payload: dict) -> str:
    """Client-supplied id when present so resubmits land on the same row."""
    client_id = str(payload.get("client_message_id") or "").strip()[:120]
    if client_id:
        return f"widget-{client_id}"
    return fallback_message_id(
        "widget",
        {"session_id": payload.get("session_id"), "text": payload.get("text"), "at": utcnow().isoformat()},
    )


def find_widget_channel(db: Session, widget_key: str) -> Optional[AssistantChannel]:
    key = (widget_key or "").strip()
    if not key:
        return None
    return (
        db.query(AssistantChannel)
        .filter(AssistantChannel.channel == "widget", AssistantChannel.credentials["widget_key"].astext == key)
        .order_by(AssistantChannel.is_active.desc(), AssistantChannel.id)
        .first()
    )


class WidgetNormalizer(ChannelNormalizer):
    """
    Text-only adapter for the embeddable web chat.

    Visitors are keyed by the browser session id; the reply is returned in
    the HTTP response instead of being pushed through a channel client.
    """

    channel = "widget"
    label = "Website widget"
    replies_inline = True

    def __init__(self, widget_key: str):
        self.widget_key = widget_key

    def auto_reply_enabled(self) -> bool:
        return settings.widget_auto_reply_enabled

    def is_self_event(self, payload: dict) -> bool:
        return False

    def resolve_identity(self, db: Session, payload: dict) -> Optional[ChannelIdentity]:
        assistant_channel = find_widget_channel(db, self.widget_key)
        if assistant_channel is None:
            return None
        company = db.query(Company).filter(Company.id == assistant_channel.company_id).first()
        if company is None:
            return None
        user = db.query(User).filter(User.id == company.user_id).first()
        if user is None:
            return None
        assistant = db.query(Assistant).filter(Assistant.id == assistant_channel.assistant_id).first()
        return ChannelIdentity(assistant_channel=assistant_channel, assistant=assistant, company=company, user=user)

    def client_for(self, identity: ChannelIdentity) -> Optional[ChannelClient]:
        return None

    def build_event(self, identity: ChannelIdentity, payload: dict) -> Optional[InboundEvent]:
        session_id = str(payload.get("session_id") or "").strip()[:SESSION_ID_LIMIT]
        text = str(payload.get("text") or "").strip()[:TEXT_LIMIT]
        if not session_id or not text:
            return None

        visitor = compact(
            {
                "name": str(payload.get("visitor_name") or "").strip()[:160],
                "email": str(payload.get("visitor_email") or "").strip()[:160],
                "phone": str(payload.get("visitor_phone") or "").strip()[:64],
                "page_url": str(payload.get("page_url") or "").strip()[:2048],
            }
        )
        metadata = {
            "source": "web_widget",
            "widget": compact({"assistant_channel_id": identity.assistant_channel.id, "visitor": visitor or None}),
        }

        message_type, link_url = text_part_type(text)
        part = NormalizedPart(
            channel_message_id=widget_message_id(payload),
            message_type=message_type,
            text=text,
            link_url=link_url,
            payload=compact({"session_id": session_id, "page_url": visitor.get("page_url")}),
            sent_at=utcnow(),
            kind=TEXT,
        )
        return InboundEvent(
            identity=identity,
            channel_chat_id=session_id,
            sender_id=session_id,
            reply_to=session_id,
            display_name=visitor.get("name"),
            chat_metadata=metadata,
            parts=[part],
            raw=payload,
        )
