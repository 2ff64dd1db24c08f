from datetime import datetime, timedelta
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Assistant, AssistantChannel, Company, User
from app.schemas.telegram import MESSAGE_EVENT_KEYS, TelegramFile, TelegramMessage, TelegramUpdate
from app.services.billing_ledger import as_aware, utcnow
from app.services.channels.base import (
    AUDIO,
    EVENT_KIND,
    FILE,
    IMAGE,
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
from app.services.telegram_service import TelegramService

logger = get_logger("channels.telegram")

EVENT_TEXT = "Telegram event received"


class TelegramNormalizer(ChannelNormalizer):
    """Adapter for updates delivered to /integrations/telegram/webhook/{assistant_channel_id}."""

    channel = "telegram"
    label = "Telegram"

    def __init__(self, assistant_channel_id: int, client: Optional[TelegramService] = None):
        self.assistant_channel_id = assistant_channel_id
        self._client = client

    def auto_reply_enabled(self) -> bool:
        return settings.telegram_auto_reply_enabled

    def voice_reply_enabled(self) -> bool:
        return settings.telegram_voice_reply_for_audio

    @staticmethod
    def parse_update(payload: dict) -> Optional[TelegramMessage]:
        try:
            return TelegramUpdate.model_validate(payload).event()
        except ValidationError as e:
            logger.warning("Unparseable Telegram update", extra={"context": {"error": str(e)[:300]}})
            return None

    def is_self_event(self, payload: dict) -> bool:
        message = self.parse_update(payload)
        return message is not None and message.from_user is not None and message.from_user.is_bot

    def resolve_identity(self, db: Session, payload: dict) -> Optional[ChannelIdentity]:
        assistant_channel = (
            db.query(AssistantChannel)
            .filter(AssistantChannel.id == self.assistant_channel_id, AssistantChannel.channel == self.channel)
            .first()
        )
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

    def client_for(self, identity: ChannelIdentity) -> Optional[TelegramService]:
        if self._client is not None:
            return self._client
        token = identity.assistant_channel.credential("bot_token")
        return TelegramService(token) if token else None

    def build_event(self, identity: ChannelIdentity, payload: dict) -> Optional[InboundEvent]:
        message = self.parse_update(payload)
        if message is None:
            return None

        chat_id = str(message.chat.id).strip()
        sender_id = str(message.from_user.id if message.from_user else chat_id).strip()
        if not chat_id or not sender_id:
            return None

        credentials = identity.assistant_channel
        metadata = {
            "source": "telegram_webhook",
            "telegram": compact(
                {
                    "assistant_channel_id": credentials.id,
                    "chat_id": chat_id,
                    "chat_type": message.chat.type,
                    "bot_id": credentials.credential("bot_id"),
                    "bot_username": credentials.credential("bot_username"),
                }
            ),
        }
        return InboundEvent(
            identity=identity,
            channel_chat_id=chat_id,
            sender_id=sender_id,
            reply_to=chat_id,
            display_name=message.display_name(),
            chat_metadata=metadata,
            parts=self.normalize_parts(message, payload, self.client_for(identity)),
            raw=payload,
        )

    def normalize_parts(
        self, message: TelegramMessage, update: dict, client: Optional[TelegramService]
    ) -> list[NormalizedPart]:
        sent_at = resolve_event_timestamp(message.date)
        base_id = str(message.message_id or update.get("update_id") or "").strip()
        if not base_id:
            event = next((update[key] for key in MESSAGE_EVENT_KEYS if isinstance(update.get(key), dict)), {})
            base_id = fallback_message_id("tg", event)

        def file_url(file_id: Optional[str]) -> Optional[str]:
            return client.get_file_url(file_id) if client is not None and file_id else None

        parts = []
        text = message.body_text
        if text:
            message_type, link_url = text_part_type(text)
            parts.append(
                NormalizedPart(
                    channel_message_id=part_message_id(base_id, "text"),
                    message_type=message_type,
                    text=text,
                    link_url=link_url,
                    payload=update,
                    sent_at=sent_at,
                    kind=TEXT,
                )
            )

        if message.photo:
            parts.append(
                NormalizedPart(
                    channel_message_id=part_message_id(base_id, "photo"),
                    message_type=IMAGE,
                    media_url=file_url(message.photo[-1].file_id),
                    payload=update,
                    sent_at=sent_at,
                    kind="photo",
                )
            )

        attachments: list[tuple[str, str, Optional[TelegramFile]]] = [
            ("video", VIDEO, message.video),
            ("voice", VOICE, message.voice),
            ("audio", AUDIO, message.audio),
            ("document", FILE, message.document),
        ]
        for kind, message_type, attachment in attachments:
            if attachment is None:
                continue
            parts.append(
                NormalizedPart(
                    channel_message_id=part_message_id(base_id, kind),
                    message_type=message_type,
                    media_url=file_url(attachment.file_id),
                    media_mime_type=(attachment.mime_type or "").strip() or None,
                    payload=update,
                    sent_at=sent_at,
                    kind=kind,
                )
            )

        if not parts:
            parts.append(
                NormalizedPart(
                    channel_message_id=part_message_id(base_id, EVENT_KIND),
                    message_type=TEXT,
                    text=EVENT_TEXT,
                    payload=update,
                    sent_at=sent_at,
                    kind=EVENT_KIND,
                )
            )
        return parts

    @staticmethod
    def profile_is_stale(metadata: Optional[dict], now: Optional[datetime] = None) -> bool:
        profile = ((metadata or {}).get("telegram") or {}).get("customer_profile") or {}
        resolved_at = str(profile.get("resolved_at") or "").strip()
        if not resolved_at:
            return True
        try:
            resolved = as_aware(datetime.fromisoformat(resolved_at))
        except ValueError:
            return True
        refresh = timedelta(minutes=max(settings.telegram_customer_profile_refresh_minutes, 1))
        return resolved <= (now or utcnow()) - refresh

    def should_fetch_profile(self, chat, is_new: bool, sender_id: str) -> bool:
        if not settings.telegram_resolve_customer_profile:
            return False
        if is_new or self.is_placeholder_name(chat.name, sender_id):
            return True
        if not (chat.avatar or "").strip():
            return True
        return self.profile_is_stale(chat.chat_metadata)

    def fetch_profile(self, event: InboundEvent) -> dict:
        """Names from the update, avatar from the Bot API."""
        message = self.parse_update(event.raw)
        profile = {}
        if message is not None:
            sender = message.from_user
            first = ((sender.first_name if sender else None) or message.chat.first_name or "").strip()
            last = ((sender.last_name if sender else None) or message.chat.last_name or "").strip()
            username = ((sender.username if sender else None) or message.chat.username or "").strip()
            name = f"{first} {last}".strip() or (f"@{username}" if username else "")
            profile = compact({"name": name[:160], "username": username[:160]})

        client = self.client_for(event.identity)
        if client is not None and event.sender_id:
            profile.update(client.fetch_profile(event.sender_id))
        return profile
