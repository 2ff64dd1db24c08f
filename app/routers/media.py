from fastapi import APIRouter, HTTPException, status
from fastapi.responses import FileResponse

from app.services.storage_service import MediaPathError, resolve_media_path, verify_signed_media_path

router = APIRouter()


@router.get("/media/{media_path:path}")
async def serve_media(media_path: str, expires: int, sig: str):
    """Serve locally stored media via signed URLs."""
    normalized_path = (media_path or "").strip().lstrip("/")
    if not normalized_path:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing media path")
    if not verify_signed_media_path(normalized_path, expires, sig):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired signature")

    try:
        target_path = resolve_media_path(normalized_path)
    except MediaPathError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid media path") from e
    if not target_path.exists() or not target_path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")

    return FileResponse(target_path)
