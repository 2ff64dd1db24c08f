"""Local media storage with HMAC-signed public URLs."""

import hashlib
import hmac
import secrets
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlparse

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.billing_ledger import utcnow

logger = get_logger("storage_service")

IMAGE_EXTENSIONS_BY_MIME = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/bmp": "bmp",
    "image/tiff": "tiff",
    "image/avif": "avif",
    "image/heic": "heic",
    "image/heif": "heif",
}
IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "webp", "gif", "bmp", "tif", "tiff", "avif", "heic", "heif"}
MAX_MEDIA_BYTES = 25 * 1024 * 1024


class MediaPathError(ValueError):
    pass


def normalize_media_path(path: str) -> str:
    return (path or "").strip().replace("\\", "/").lstrip("/")


def storage_root() -> Path:
    return Path(settings.media_storage_dir).resolve()


def resolve_media_path(relative_path: str) -> Path:
    """Absolute path for a stored blob; refuses paths that escape the storage root."""
    normalized = normalize_media_path(relative_path)
    if not normalized:
        raise MediaPathError("Missing media path")
    base_dir = storage_root()
    target = (base_dir / normalized).resolve()
    if base_dir not in target.parents:
        raise MediaPathError("Invalid media path")
    return target


def put_media(relative_path: str, content: bytes) -> Path:
    target = resolve_media_path(relative_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(content)
    return target


def get_media(relative_path: str) -> Optional[bytes]:
    target = resolve_media_path(relative_path)
    if not target.is_file():
        return None
    return target.read_bytes()


def _sign_media_path(path: str, expires: int, secret: str) -> str:
    payload = f"{path}:{expires}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def build_signed_media_url(relative_path: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
    """Public URL for a stored blob, or None when signing is not configured."""
    secret = settings.media_signing_secret
    if not secret:
        logger.error("MEDIA_SIGNING_SECRET not configured")
        return None
    ttl = ttl_seconds if ttl_seconds is not None else settings.media_url_ttl_seconds
    expires = int(time.time()) + max(int(ttl), 60)
    normalized = normalize_media_path(relative_path)
    signature = _sign_media_path(normalized, expires, secret)
    return f"{settings.app_url.rstrip('/')}/media/{quote(normalized, safe='/')}?expires={expires}&sig={signature}"


def verify_signed_media_path(relative_path: str, expires: int, signature: str) -> bool:
    secret = settings.media_signing_secret
    if not secret or not signature:
        return False
    if expires < int(time.time()):
        return False
    expected = _sign_media_path(normalize_media_path(relative_path), expires, secret)
    return hmac.compare_digest(expected, signature)


def dated_path(prefix: str, filename: str, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"{prefix.strip('/')}/{now:%Y/%m/%d}/{filename}"


def assistant_audio_path(extension: str, now: Optional[datetime] = None) -> str:
    return dated_path("assistant-audio", f"{uuid.uuid4()}.{extension or 'mp3'}", now)


def image_extension(content_type: Optional[str], url: str) -> str:
    normalized = (content_type or "").strip().lower()
    for mime, extension in IMAGE_EXTENSIONS_BY_MIME.items():
        if normalized.startswith(mime):
            return extension

    suffix = Path(urlparse(url).path).suffix.lower().lstrip(".")
    if suffix in IMAGE_EXTENSIONS:
        return {"jpeg": "jpg", "tif": "tiff"}.get(suffix, suffix)
    return "jpg"


def download_image(url: str, source: str, index: int, now: Optional[datetime] = None) -> Optional[Path]:
    """
    Fetch a remote image into chat-files/webhook-media/{source}/...

    Returns the local path, or None on any network or HTTP failure.
    """
    try:
        with httpx.Client(timeout=settings.media_download_timeout_seconds, follow_redirects=True) as client:
            response = client.get(url, headers={"Accept": "image/*"})
    except httpx.HTTPError as e:
        logger.warning("Media download failed", extra={"context": {"url": url[:200], "error": str(e)}})
        return None

    if response.status_code >= 400 or not response.content:
        return None
    if len(response.content) > MAX_MEDIA_BYTES:
        logger.warning("Media download too large", extra={"context": {"url": url[:200], "size": len(response.content)}})
        return None

    now = now or utcnow()
    extension = image_extension(response.headers.get("Content-Type"), url)
    filename = f"{now:%H%M%S}-{index}-{secrets.token_hex(12)}.{extension}"
    return put_media(dated_path(f"chat-files/webhook-media/{source}", filename, now), response.content)
