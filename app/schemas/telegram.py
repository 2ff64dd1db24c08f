from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

MESSAGE_EVENT_KEYS = ("message", "edited_message", "channel_post", "edited_channel_post")


class TelegramUser(BaseModel):
    id: int
    is_bot: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None


class TelegramChat(BaseModel):
    id: int
    type: str = "private"  # private, group, supergroup, channel
    title: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class TelegramPhotoSize(BaseModel):
    file_id: str
    file_unique_id: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    file_size: Optional[int] = None


class TelegramFile(BaseModel):
    """Video, voice, audio and document share the fields used here."""

    file_id: str
    file_unique_id: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None
    duration: Optional[int] = None


class TelegramMessage(BaseModel):
    message_id: Optional[int] = None
    date: Optional[int] = None
    chat: TelegramChat
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")  # "from" is reserved in Python
    text: Optional[str] = None
    caption: Optional[str] = None
    photo: Optional[list[TelegramPhotoSize]] = None
    video: Optional[TelegramFile] = None
    voice: Optional[TelegramFile] = None
    audio: Optional[TelegramFile] = None
    document: Optional[TelegramFile] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def body_text(self) -> str:
        return (self.text or self.caption or "").strip()

    def display_name(self) -> Optional[str]:
        """First and last name, else chat title, else @username (at most 160 chars)."""
        sender = self.from_user
        first = ((sender.first_name if sender else None) or self.chat.first_name or "").strip()
        last = ((sender.last_name if sender else None) or self.chat.last_name or "").strip()
        username = ((sender.username if sender else None) or self.chat.username or "").strip()

        name = f"{first} {last}".strip()
        if not name and self.chat.title:
            name = self.chat.title.strip()
        if not name and username:
            name = f"@{username}"
        return name[:160] or None


class TelegramUpdate(BaseModel):
    update_id: Optional[int] = None
    message: Optional[TelegramMessage] = None
    edited_message: Optional[TelegramMessage] = None
    channel_post: Optional[TelegramMessage] = None
    edited_channel_post: Optional[TelegramMessage] = None

    model_config = ConfigDict(extra="ignore")

    def event(self) -> Optional[TelegramMessage]:
        for key in MESSAGE_EVENT_KEYS:
            value = getattr(self, key)
            if value is not None:
                return value
        return None


class WebhookAck(BaseModel):
    ok: bool = True
