from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.channels.base import ChannelApiError, ChannelClient

logger = get_logger("telegram_service")

MEDIA_METHODS = {
    "image": ("sendPhoto", "photo"),
    "photo": ("sendPhoto", "photo"),
    "video": ("sendVideo", "video"),
    "voice": ("sendVoice", "voice"),
    "audio": ("sendAudio", "audio"),
    "file": ("sendDocument", "document"),
    "document": ("sendDocument", "document"),
}


class TelegramService(ChannelClient):
    """Bot API client for one bot token."""

    def __init__(self, bot_token: str, api_base: Optional[str] = None, timeout_seconds: Optional[float] = None):
        self.bot_token = bot_token
        self.api_base = (api_base or settings.telegram_bot_api_base).rstrip("/")
        self.base_url = f"{self.api_base}/bot{bot_token}"
        self.timeout = timeout_seconds if timeout_seconds is not None else settings.telegram_timeout_seconds

    def _make_request(self, method: str, data: Optional[dict] = None) -> dict:
        """Call a Bot API method and return its `result`; raises ChannelApiError when not ok."""
        url = f"{self.base_url}/{method}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, json=data or {})
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Telegram API error: {method}: {e}")
            raise ChannelApiError(f"Telegram {method} failed: {e}") from e

        if not isinstance(body, dict) or not body.get("ok"):
            description = body.get("description") if isinstance(body, dict) else None
            logger.warning(f"Telegram API rejected {method}: {description}")
            raise ChannelApiError(description or f"Telegram {method} failed with status {response.status_code}")
        return body.get("result")

    @staticmethod
    def _message_id(result) -> str:
        if isinstance(result, dict) and result.get("message_id") is not None:
            return str(result["message_id"])
        raise ChannelApiError("Telegram response has no message_id")

    def send_message(self, chat_id: str, text: str) -> dict:
        """Send plain text to a chat."""
        return self._make_request(
            "sendMessage", {"chat_id": chat_id, "text": text, "disable_web_page_preview": False}
        )

    def send_text(self, recipient: str, text: str) -> str:
        return self._message_id(self.send_message(recipient, text))

    def send_media(self, recipient: str, kind: str, url: str) -> str:
        method, field_name = MEDIA_METHODS.get(kind, MEDIA_METHODS["file"])
        return self._message_id(self._make_request(method, {"chat_id": recipient, field_name: url}))

    def get_file(self, file_id: str) -> dict:
        return self._make_request("getFile", {"file_id": file_id}) or {}

    def resolve_download_url(self, file_path: str) -> str:
        return f"{self.api_base}/file/bot{self.bot_token}/{file_path.lstrip('/')}"

    def get_file_url(self, file_id: str) -> Optional[str]:
        if not file_id:
            return None
        try:
            file_path = str(self.get_file(file_id).get("file_path") or "").strip()
        except ChannelApiError:
            return None
        return self.resolve_download_url(file_path) if file_path else None

    def get_user_profile_photos(self, user_id: str, offset: int = 0, limit: int = 1) -> dict:
        return self._make_request("getUserProfilePhotos", {"user_id": user_id, "offset": offset, "limit": limit}) or {}

    def fetch_profile(self, user_id: str) -> dict:
        """Avatar download URL from the user's newest profile photo; names come from the update itself."""
        try:
            photos = self.get_user_profile_photos(user_id, 0, 1).get("photos") or []
        except ChannelApiError:
            return {}
        sizes = photos[0] if photos and isinstance(photos[0], list) else []
        file_id = str((sizes[-1] or {}).get("file_id") or "").strip() if sizes else ""
        avatar = self.get_file_url(file_id)
        return {"avatar": avatar[:2048]} if avatar else {}
