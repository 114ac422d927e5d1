"""Storage endpoints: the media proxy and the local-storage file server."""

import asyncio

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import FileResponse, RedirectResponse

from src.config import get_settings
from src.services.storage_service import get_storage_service

settings = get_settings()
router = APIRouter()

MEDIA_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".aac": "audio/aac",
}


@router.get("/media/{storage_key:path}")
async def get_media(storage_key: str) -> RedirectResponse:
    """Redirect to a signed URL for the stored media.

    Layers reference media through this route. Renders skip it and fetch
    the signed URL directly.
    """
    storage = get_storage_service()
    try:
        exists = await asyncio.to_thread(storage.file_exists, storage_key)
    except ValueError:
        exists = False
    if not exists:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found",
        )
    url = await asyncio.to_thread(
        storage.generate_download_url,
        storage_key,
        expires_minutes=settings.media_url_expiry_minutes,
    )
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/files/{storage_key:path}")
async def get_file(storage_key: str):
    """Serve files from local storage."""
    if not settings.use_local_storage:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Local storage not enabled",
        )

    try:
        file_path = get_storage_service().get_file_path(storage_key)
    except ValueError:
        file_path = None
    if file_path is None or not file_path.is_file():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found",
        )

    media_type = MEDIA_TYPES.get(file_path.suffix.lower(), "application/octet-stream")
    return FileResponse(
        path=str(file_path),
        media_type=media_type,
        filename=file_path.name,
    )
