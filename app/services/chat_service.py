import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Chat, ChatMessage
from app.services.billing_ledger import as_aware, utcnow
from app.services.channels.base import ChannelNormalizer, InboundEvent, NormalizedPart, merge_metadata

logger = get_logger("chat_service")

MAX_SUFFIX_ATTEMPTS = 50
PREVIEW_LIMIT = 160
PREVIEW_LABELS = {
    "image": "[Image]",
    "video": "[Video]",
    "voice": "[Voice]",
    "audio": "[Audio]",
    "link": "[Link]",
    "file": "[File]",
}

OPEN_STATUSES = {"open", "pending"}


def find_chat(db: Session, company_id: int, channel: str, channel_chat_id: str) -> Optional[Chat]:
    return (
        db.query(Chat)
        .filter(Chat.company_id == company_id, Chat.channel == channel, Chat.channel_chat_id == channel_chat_id)
        .first()
    )


def get_or_create_chat(
    db: Session, company_id: int, user_id: int, channel: str, channel_chat_id: str
) -> tuple[Chat, bool]:
    """Find the chat by its channel key or insert it; concurrent first messages converge on one row."""
    chat = find_chat(db, company_id, channel, channel_chat_id)
    if chat is not None:
        return chat, False

    stmt = (
        insert(Chat)
        .values(
            user_id=user_id,
            company_id=company_id,
            channel=channel,
            channel_chat_id=channel_chat_id,
        )
        .on_conflict_do_nothing(index_elements=["company_id", "channel", "channel_chat_id"])
        .returning(Chat.id)
    )
    created = db.execute(stmt).first() is not None
    return find_chat(db, company_id, channel, channel_chat_id), created


def resolve_chat(db: Session, normalizer: ChannelNormalizer, event: InboundEvent) -> Chat:
    """Get-or-create the chat for an inbound event and refresh its name, avatar and metadata."""
    identity = event.identity
    chat, is_new = get_or_create_chat(
        db, identity.company.id, identity.company.user_id, normalizer.channel, event.channel_chat_id
    )

    display_name = event.display_name
    avatar = (chat.avatar or "").strip()
    incoming = dict(event.chat_metadata)

    if normalizer.should_fetch_profile(chat, is_new, event.sender_id):
        try:
            profile = normalizer.fetch_profile(event)
        except Exception as e:
            logger.warning(
                "Customer profile lookup failed",
                extra={"context": {"chat_id": chat.id, "channel": normalizer.channel, "error": str(e)}},
            )
            profile = {}

        profile_name = str(profile.get("name") or "").strip()
        replace_name = is_new or normalizer.is_placeholder_name(chat.name, event.sender_id)
        if display_name is None and profile_name and replace_name:
            display_name = profile_name[:160]
        if str(profile.get("avatar") or "").strip():
            avatar = str(profile["avatar"]).strip()

        snapshot = normalizer.profile_snapshot(profile)
        if snapshot:
            incoming = merge_metadata(incoming, {normalizer.channel: {"customer_profile": snapshot}})

    chat.user_id = identity.company.user_id
    if identity.assistant is not None:
        chat.assistant_id = identity.assistant.id
    chat.assistant_channel_id = identity.assistant_channel.id
    chat.channel_user_id = event.sender_id
    chat.name = display_name or chat.name or f"{normalizer.label} {event.sender_id}"
    chat.avatar = avatar[:2048] or None
    chat.status = chat.status or "open"
    chat.chat_metadata = merge_metadata(chat.chat_metadata, incoming)
    db.flush()
    return chat


def message_id_exists(db: Session, chat_id: int, channel_message_id: str) -> bool:
    return (
        db.query(ChatMessage.id)
        .filter(ChatMessage.chat_id == chat_id, ChatMessage.channel_message_id == channel_message_id)
        .first()
        is not None
    )


def timestamp_suffix(sent_at: Optional[datetime]) -> str:
    moment = as_aware(sent_at) or utcnow()
    return str(int(moment.timestamp() * 1000))


def resolve_unique_message_id(
    base_id: str,
    sent_at: Optional[datetime],
    exists: Callable[[str], bool],
) -> str:
    """
    Channel message id that is free within the chat.

    The base id when unused, then `{base}-{ms}`, `{base}-{ms}-2` ... `{base}-{ms}-50`,
    and finally `{base}-{uuid}`.
    """
    if not exists(base_id):
        return base_id

    suffix = timestamp_suffix(sent_at)
    candidate = f"{base_id}-{suffix}"
    attempt = 1
    while exists(candidate):
        attempt += 1
        if attempt > MAX_SUFFIX_ATTEMPTS:
            return f"{base_id}-{uuid.uuid4()}"
        candidate = f"{base_id}-{suffix}-{attempt}"
    return candidate


def insert_inbound_message(
    db: Session, chat: Chat, assistant_id: Optional[int], part: NormalizedPart, channel_message_id: str
) -> Optional[ChatMessage]:
    """INSERT ... ON CONFLICT DO NOTHING; None when a concurrent delivery took the key first."""
    stmt = (
        insert(ChatMessage)
        .values(
            user_id=chat.user_id,
            company_id=chat.company_id,
            chat_id=chat.id,
            assistant_id=assistant_id,
            sender_type="customer",
            direction="inbound",
            status="received",
            channel_message_id=channel_message_id,
            message_type=part.message_type,
            text=part.text,
            media_url=part.media_url,
            media_mime_type=part.media_mime_type,
            link_url=part.link_url,
            payload=part.payload,
            sent_at=part.sent_at,
        )
        .on_conflict_do_nothing(index_elements=["chat_id", "channel_message_id"])
        .returning(ChatMessage.id)
    )
    row = db.execute(stmt).first()
    if row is None:
        return None
    return db.get(ChatMessage, row[0])


def persist_inbound_parts(
    db: Session, chat: Chat, assistant_id: Optional[int], parts: list[NormalizedPart]
) -> list[ChatMessage]:
    created = []
    for part in parts:
        channel_message_id = resolve_unique_message_id(
            part.channel_message_id,
            part.sent_at,
            lambda candidate: message_id_exists(db, chat.id, candidate),
        )
        message = insert_inbound_message(db, chat, assistant_id or chat.assistant_id, part, channel_message_id)
        if message is not None:
            created.append(message)

    if created:
        touch_chat_snapshot(db, chat, created[-1], increment_unread_by=len(created))
    return created


def persist_outbound_message(
    db: Session,
    chat: Chat,
    assistant_id: Optional[int],
    text: str,
    channel_message_id: Optional[str],
    message_type: str = "text",
    media_url: Optional[str] = None,
) -> ChatMessage:
    message = ChatMessage(
        user_id=chat.user_id,
        company_id=chat.company_id,
        chat_id=chat.id,
        assistant_id=assistant_id,
        sender_type="assistant",
        direction="outbound",
        status="sent",
        channel_message_id=channel_message_id or f"out-{uuid.uuid4()}",
        message_type=message_type,
        text=text,
        media_url=media_url,
        sent_at=utcnow(),
    )
    db.add(message)
    db.flush()
    touch_chat_snapshot(db, chat, message, increment_unread_by=0)
    return message


def message_preview(message: ChatMessage) -> str:
    text = (message.text or "").strip()
    if text:
        return text if len(text) <= PREVIEW_LIMIT else text[:PREVIEW_LIMIT] + "..."
    return PREVIEW_LABELS.get(message.message_type, "[Message]")


def touch_chat_snapshot(db: Session, chat: Chat, message: ChatMessage, increment_unread_by: int) -> None:
    chat.last_message_preview = message_preview(message)
    chat.last_message_at = message.sent_at or utcnow()
    if increment_unread_by > 0:
        chat.unread_count = int(chat.unread_count or 0) + increment_unread_by
    db.flush()


def is_chat_open_for_auto_reply(chat: Chat) -> bool:
    metadata = chat.chat_metadata if isinstance(chat.chat_metadata, dict) else {}
    if metadata.get("is_active") is False:
        return False
    return (chat.status or "open") in OPEN_STATUSES


def thread_id_for(chat: Chat, assistant_id: int) -> str:
    threads = (chat.chat_metadata or {}).get("openai_threads")
    if not isinstance(threads, dict):
        return ""
    return str(threads.get(str(assistant_id)) or "").strip()


def remember_thread(db: Session, chat: Chat, assistant_id: int, thread_id: str) -> None:
    chat.chat_metadata = merge_metadata(chat.chat_metadata, {"openai_threads": {str(assistant_id): thread_id}})
    db.flush()
