"""
Shared contract for inbound channel adapters.

Each adapter turns a raw webhook payload into an `InboundEvent`: the resolved
tenant identity, the channel-side chat key and an ordered list of canonical
`NormalizedPart`s. Persistence, gating and replies are done by the pipeline.
"""

import hashlib
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from app.models import Assistant, AssistantChannel, Company, User
from app.services.billing_ledger import utcnow

URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)

TEXT = "text"
IMAGE = "image"
VIDEO = "video"
VOICE = "voice"
AUDIO = "audio"
LINK = "link"
FILE = "file"
MESSAGE_TYPES = {TEXT, IMAGE, VIDEO, VOICE, AUDIO, LINK, FILE}

EVENT_KIND = "event"
PROMPT_FOOTER = "Reply in the same language as customer, concise and helpful."


class ChannelApiError(Exception):
    """Channel API rejected a request."""


class ChannelClient(ABC):
    """Outbound capabilities of a messaging channel."""

    @abstractmethod
    def send_text(self, recipient: str, text: str) -> str:
        """Send text and return the provider message id."""

    @abstractmethod
    def send_media(self, recipient: str, kind: str, url: str) -> str:
        """Send a media attachment by URL and return the provider message id."""

    @abstractmethod
    def fetch_profile(self, user_id: str) -> dict:
        """Best-effort {name?, avatar?} for a channel user."""

    @abstractmethod
    def get_file_url(self, file_id: str) -> Optional[str]:
        pass


@dataclass
class NormalizedPart:
    channel_message_id: str
    message_type: str
    text: Optional[str] = None
    media_url: Optional[str] = None
    media_mime_type: Optional[str] = None
    link_url: Optional[str] = None
    payload: Optional[dict] = None
    sent_at: Optional[datetime] = None
    kind: str = TEXT

    @property
    def is_event(self) -> bool:
        return self.kind == EVENT_KIND


@dataclass
class ChannelIdentity:
    assistant_channel: AssistantChannel
    assistant: Optional[Assistant]
    company: Company
    user: User


@dataclass
class InboundEvent:
    identity: ChannelIdentity
    channel_chat_id: str
    sender_id: str
    # Where the reply goes (Instagram user id, Telegram chat id, widget session).
    reply_to: str
    display_name: Optional[str] = None
    chat_metadata: dict = field(default_factory=dict)
    parts: list[NormalizedPart] = field(default_factory=list)
    raw: dict = field(default_factory=dict)

    @property
    def has_replyable_content(self) -> bool:
        return any(not part.is_event for part in self.parts)

    @property
    def contains_voice(self) -> bool:
        return any(part.message_type in (VOICE, AUDIO) for part in self.parts)


def extract_first_url(text: Optional[str]) -> Optional[str]:
    match = URL_RE.search(text or "")
    if not match:
        return None
    return match.group(0).strip() or None


def is_only_url(text: Optional[str]) -> bool:
    normalized = (text or "").strip()
    if not normalized or any(ch.isspace() for ch in normalized):
        return False
    parsed = urlparse(normalized)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def text_part_type(text: str) -> tuple[str, Optional[str]]:
    """(message_type, link_url) for a text body; a body that is exactly one URL is a link."""
    link_url = extract_first_url(text)
    if link_url is not None and is_only_url(text):
        return LINK, link_url
    return TEXT, link_url


def resolve_event_timestamp(value: Any) -> datetime:
    """Unix timestamp in seconds (up to 10 digits) or milliseconds; now when missing."""
    if isinstance(value, bool) or value is None:
        return utcnow()
    try:
        number = float(value)
    except (TypeError, ValueError):
        return utcnow()
    digits = re.sub(r"\D+", "", str(value).split(".")[0])
    if digits and len(digits) <= 10:
        return datetime.fromtimestamp(int(number), tz=timezone.utc)
    return datetime.fromtimestamp(int(number) / 1000, tz=timezone.utc)


def fallback_message_id(prefix: str, payload: Any) -> str:
    encoded = json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
    return f"{prefix}-{hashlib.sha1(encoded.encode('utf-8')).hexdigest()[:40]}"


def part_message_id(base_message_id: str, suffix: str) -> str:
    return f"{base_message_id}:{suffix}"


def merge_metadata(existing: Any, incoming: dict) -> dict:
    """Recursive merge; incoming scalars replace, nested dicts merge key by key."""
    merged = dict(existing) if isinstance(existing, dict) else {}
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_metadata(merged[key], value)
        else:
            merged[key] = value
    return merged


def compact(values: dict) -> dict:
    return {key: value for key, value in values.items() if value is not None and value != ""}


class ChannelNormalizer(ABC):
    """One adapter per channel; subclasses fill in identity, parts and profile lookups."""

    channel: str = ""
    label: str = ""
    # Replies go back in the HTTP response rather than through a channel client.
    replies_inline: bool = False

    @abstractmethod
    def is_self_event(self, payload: dict) -> bool:
        pass

    @abstractmethod
    def resolve_identity(self, db: Session, payload: dict) -> Optional[ChannelIdentity]:
        pass

    @abstractmethod
    def build_event(self, identity: ChannelIdentity, payload: dict) -> Optional[InboundEvent]:
        pass

    @abstractmethod
    def client_for(self, identity: ChannelIdentity) -> Optional[ChannelClient]:
        pass

    def auto_reply_enabled(self) -> bool:
        return True

    def voice_reply_enabled(self) -> bool:
        return False

    def should_fetch_profile(self, chat, is_new: bool, sender_id: str) -> bool:
        return False

    def fetch_profile(self, event: InboundEvent) -> dict:
        return {}

    def is_placeholder_name(self, current_name: Optional[str], sender_id: str) -> bool:
        """True for empty names and the '{Label} {sender}' default given to new chats."""
        name = (current_name or "").strip()
        if not name:
            return True
        if not sender_id:
            return False
        return name == sender_id or name.lower() == f"{self.label} {sender_id}".lower()

    def profile_snapshot(self, profile: dict) -> Optional[dict]:
        if not profile:
            return None
        snapshot = compact({**profile, "resolved_at": utcnow().isoformat()})
        return snapshot if len(snapshot) > 1 else None

    def normalize(self, db: Session, payload: dict) -> Optional[InboundEvent]:
        """Echo filter, identity resolution and part extraction; None means nothing to store."""
        if not isinstance(payload, dict) or self.is_self_event(payload):
            return None
        identity = self.resolve_identity(db, payload)
        if identity is None:
            return None
        return self.build_event(identity, payload)

    def build_prompt(self, parts: list[NormalizedPart]) -> str:
        lines = [f"Incoming customer message from {self.label}:"]
        for part in parts:
            text = (part.text or "").strip()
            media_url = (part.media_url or "").strip()
            if part.message_type == TEXT and text:
                lines.append(f"- Text: {text}")
            elif part.message_type == LINK:
                lines.append(f"- Link: {(part.link_url or '').strip() or text}")
            elif part.message_type == IMAGE:
                lines.append(f"- Image URL: {media_url}")
            elif part.message_type == VIDEO:
                lines.append(f"- Video URL: {media_url}")
            elif part.message_type in (VOICE, AUDIO):
                lines.append(f"- Voice/audio URL: {media_url}")
            elif part.message_type == FILE:
                lines.append(f"- File URL: {media_url}")
            elif text:
                lines.append(f"- Message: {text}")
        lines.append(PROMPT_FOOTER)
        return "\n".join(lines)
