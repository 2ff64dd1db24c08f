from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.channels.base import ChannelApiError, ChannelClient

logger = get_logger("instagram_service")

PROFILE_FIELDS = "name,username,profile_pic,profile_picture_url"


class InstagramService(ChannelClient):
    """Instagram messaging over the Graph API for one connected business account."""

    def __init__(self, access_token: str, ig_user_id: str, api_version: Optional[str] = None):
        self.access_token = access_token
        self.ig_user_id = ig_user_id
        self.api_version = (api_version or settings.instagram_api_version).strip() or "v23.0"
        self.base_url = settings.instagram_graph_fallback_base.rstrip("/")

    def _send(self, recipient: str, message: dict) -> str:
        url = f"{self.base_url}/{self.api_version}/{self.ig_user_id}/messages"
        payload = {"recipient": {"id": recipient}, "message": message}
        try:
            with httpx.Client(timeout=settings.instagram_send_timeout_seconds) as client:
                response = client.post(url, json=payload, headers={"Authorization": f"Bearer {self.access_token}"})
        except httpx.HTTPError as e:
            logger.error(f"Instagram send error: {e}")
            raise ChannelApiError(f"Instagram send failed: {e}") from e

        if response.status_code != 200:
            logger.warning(f"Instagram API rejected send: status={response.status_code}, body={response.text[:300]}")
            raise ChannelApiError(f"Instagram send failed with status {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            logger.warning(f"Instagram send returned a non-JSON body: {response.text[:300]}")
            raise ChannelApiError(f"Instagram send returned an unreadable body: {e}") from e

        message_id = str(data.get("message_id") or "").strip() if isinstance(data, dict) else ""
        if not message_id:
            raise ChannelApiError("Instagram response has no message_id")
        return message_id

    def send_text(self, recipient: str, text: str) -> str:
        return self._send(recipient, {"text": text})

    def send_media(self, recipient: str, kind: str, url: str) -> str:
        return self._send(recipient, {"attachment": {"type": kind, "payload": {"url": url}}})

    def graph_bases(self) -> list[str]:
        bases = []
        for base in (settings.instagram_graph_base, settings.instagram_graph_fallback_base):
            base = (base or "").rstrip("/")
            if base and base not in bases:
                bases.append(base)
        return bases

    def fetch_profile(self, user_id: str) -> dict:
        """First successful profile lookup across the Graph hosts; {} when none answers."""
        if not user_id or not self.access_token:
            return {}

        for base in self.graph_bases():
            try:
                with httpx.Client(timeout=settings.instagram_profile_timeout_seconds) as client:
                    response = client.get(
                        f"{base}/{self.api_version}/{user_id}",
                        params={"fields": PROFILE_FIELDS, "access_token": self.access_token},
                    )
                data = response.json() if response.status_code == 200 else None
            except (httpx.HTTPError, ValueError) as e:
                logger.debug(f"Instagram profile lookup failed on {base}: {e}")
                continue
            if not isinstance(data, dict):
                continue

            name = str(data.get("name") or data.get("username") or "").strip()
            avatar = str(data.get("profile_pic") or data.get("profile_picture_url") or "").strip()
            profile = {}
            if name:
                profile["name"] = name[:160]
            if avatar:
                profile["avatar"] = avatar[:2048]
            return profile
        return {}

    def get_file_url(self, file_id: str) -> Optional[str]:
        # Instagram webhooks carry attachment URLs inline.
        return None
