from typing import Any, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Assistant, AssistantChannel, Company, User
from app.services.channels.base import (
    EVENT_KIND,
    FILE,
    IMAGE,
    LINK,
    TEXT,
    VIDEO,
    VOICE,
    ChannelIdentity,
    ChannelNormalizer,
    InboundEvent,
    NormalizedPart,
    compact,
    fallback_message_id,
    part_message_id,
    resolve_event_timestamp,
    text_part_type,
)
from app.services.instagram_service import InstagramService

logger = get_logger("channels.instagram")

ATTACHMENT_TYPES = {
    "image": IMAGE,
    "story_mention": IMAGE,
    "story_reply": IMAGE,
    "video": VIDEO,
    "audio": VOICE,
    "file": FILE,
    "share": LINK,
}
ATTACHMENT_URL_KEYS = ("url", "attachment_url", "link", "href")


def _trimmed(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def attachment_url(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for key in ATTACHMENT_URL_KEYS:
        candidate = payload.get(key)
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def summarize_payload(payload: dict) -> Optional[str]:
    """Human label for content-less events (reactions, reads, postbacks); None for anything else."""
    if "reaction" in payload:
        reaction = payload.get("reaction") or {}
        emoji = _trimmed(reaction.get("reaction") or reaction.get("emoji")) if isinstance(reaction, dict) else ""
        return f"Reaction: {emoji}" if emoji else "Reaction received"
    if "read" in payload:
        return "Message seen"
    if "postback" in payload:
        postback = payload.get("postback") or {}
        title = _trimmed(postback.get("title")) if isinstance(postback, dict) else ""
        return f"Postback: {title}" if title else "Postback received"
    return None


class InstagramNormalizer(ChannelNormalizer):
    channel = "instagram"
    label = "Instagram"

    def __init__(self, client: Optional[InstagramService] = None):
        self._client = client

    def auto_reply_enabled(self) -> bool:
        return settings.instagram_auto_reply_enabled

    def voice_reply_enabled(self) -> bool:
        return settings.instagram_voice_reply_for_audio

    @staticmethod
    def sender_id(event: dict) -> str:
        return _trimmed((event.get("sender") or {}).get("id"))

    @staticmethod
    def recipient_id(event: dict) -> str:
        return _trimmed((event.get("recipient") or {}).get("id"))

    def is_self_event(self, payload: dict) -> bool:
        message = payload.get("message")
        if isinstance(message, dict) and message.get("is_echo"):
            return True
        return bool(payload.get("is_echo"))

    def resolve_identity(self, db: Session, payload: dict) -> Optional[ChannelIdentity]:
        recipient_id = self.recipient_id(payload)
        if not self.sender_id(payload) or not recipient_id:
            return None

        assistant_channel = (
            db.query(AssistantChannel)
            .filter(
                AssistantChannel.channel == self.channel,
                or_(
                    AssistantChannel.external_account_id == recipient_id,
                    AssistantChannel.credentials["receiver_id"].astext == recipient_id,
                    AssistantChannel.credentials["instagram_user_id"].astext == recipient_id,
                ),
            )
            .order_by(AssistantChannel.is_active.desc(), AssistantChannel.id)
            .first()
        )
        if assistant_channel is None:
            logger.debug("No Instagram channel for recipient", extra={"context": {"recipient_id": recipient_id}})
            return None

        self.bind_recipient(db, assistant_channel, recipient_id)

        company = db.query(Company).filter(Company.id == assistant_channel.company_id).first()
        if company is None:
            return None
        user = db.query(User).filter(User.id == company.user_id).first()
        if user is None:
            return None
        assistant = db.query(Assistant).filter(Assistant.id == assistant_channel.assistant_id).first()
        return ChannelIdentity(assistant_channel=assistant_channel, assistant=assistant, company=company, user=user)

    @staticmethod
    def bind_recipient(db: Session, assistant_channel: AssistantChannel, recipient_id: str) -> None:
        """Remember the receiver id Meta reports so replies go out from the right account."""
        if assistant_channel.credential("receiver_id") == recipient_id:
            return
        credentials = dict(assistant_channel.credentials or {})
        credentials["receiver_id"] = recipient_id
        if not _trimmed(credentials.get("instagram_user_id")):
            credentials["instagram_user_id"] = assistant_channel.external_account_id or recipient_id
        assistant_channel.credentials = credentials
        assistant_channel.external_account_id = recipient_id
        db.flush()

    def client_for(self, identity: ChannelIdentity) -> Optional[InstagramService]:
        if self._client is not None:
            return self._client
        channel = identity.assistant_channel
        token = channel.credential("access_token")
        ig_user_id = channel.credential("receiver_id") or channel.credential("instagram_user_id")
        if not token or not ig_user_id:
            return None
        return InstagramService(token, ig_user_id)

    def build_event(self, identity: ChannelIdentity, payload: dict) -> Optional[InboundEvent]:
        sender_id = self.sender_id(payload)
        recipient_id = self.recipient_id(payload)
        channel = identity.assistant_channel
        name = _trimmed((payload.get("sender") or {}).get("name"))[:160] or None

        metadata = {
            "source": "meta_instagram_main_webhook",
            "instagram": compact(
                {
                    "integration_id": channel.id,
                    "instagram_user_id": channel.credential("instagram_user_id"),
                    "receiver_id": recipient_id,
                }
            ),
        }
        return InboundEvent(
            identity=identity,
            channel_chat_id=f"{recipient_id}:{sender_id}",
            sender_id=sender_id,
            reply_to=sender_id,
            display_name=name,
            chat_metadata=metadata,
            parts=self.normalize_parts(payload),
            raw=payload,
        )

    def normalize_parts(self, event: dict) -> list[NormalizedPart]:
        message = event.get("message") if isinstance(event.get("message"), dict) else {}
        payload = event.get("payload") if isinstance(event.get("payload"), dict) else event
        sent_at = resolve_event_timestamp(event.get("timestamp"))

        base_id = _trimmed(message.get("mid") or event.get("mid"))
        if not base_id:
            base_id = fallback_message_id(
                "ig",
                {
                    "sender": event.get("sender"),
                    "recipient": event.get("recipient"),
                    "timestamp": event.get("timestamp"),
                    "message": message,
                },
            )

        parts = []
        text = _trimmed(message.get("text"))
        if text:
            message_type, link_url = text_part_type(text)
            parts.append(
                NormalizedPart(
                    channel_message_id=part_message_id(base_id, "text"),
                    message_type=message_type,
                    text=text,
                    link_url=link_url,
                    payload=payload,
                    sent_at=sent_at,
                    kind=TEXT,
                )
            )

        attachments = message.get("attachments") if isinstance(message.get("attachments"), list) else []
        for index, attachment in enumerate(attachments):
            if not isinstance(attachment, dict):
                continue
            kind = _trimmed(attachment.get("type")).lower()
            message_type = ATTACHMENT_TYPES.get(kind, FILE)
            url = attachment_url(attachment.get("payload"))
            parts.append(
                NormalizedPart(
                    channel_message_id=part_message_id(base_id, f"attachment-{index}"),
                    message_type=message_type,
                    media_url=None if message_type == LINK else url,
                    link_url=url if message_type == LINK else None,
                    payload=payload,
                    sent_at=sent_at,
                    kind=kind or "attachment",
                )
            )

        if not parts:
            summary = summarize_payload(payload)
            if summary is None:
                return []
            parts.append(
                NormalizedPart(
                    channel_message_id=part_message_id(base_id, EVENT_KIND),
                    message_type=TEXT,
                    text=summary,
                    payload=payload,
                    sent_at=sent_at,
                    kind=EVENT_KIND,
                )
            )
        return parts

    def should_fetch_profile(self, chat, is_new: bool, sender_id: str) -> bool:
        return is_new and settings.instagram_resolve_customer_profile

    def fetch_profile(self, event: InboundEvent) -> dict:
        client = self.client_for(event.identity)
        if client is None:
            return {}
        return client.fetch_profile(event.sender_id)
