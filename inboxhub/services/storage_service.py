"""
Local file storage for uploads (attachments, avatars) and media serving.

Files live under ``UPLOAD_DIR``; they are published as ``/api/media/<path>``
so the messaging platform can fetch them over the app's HTTPS origin.
"""

import logging
import mimetypes
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import aiofiles
from fastapi import UploadFile

from inboxhub.core.config import settings
from inboxhub.core.errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {
    'image': ['.jpg', '.jpeg', '.png', '.gif', '.webp'],
    'video': ['.mp4', '.mov', '.webm'],
    'audio': ['.mp3', '.m4a', '.wav', '.ogg', '.aac'],
    'document': ['.pdf', '.doc', '.docx', '.xls', '.xlsx', '.txt', '.csv', '.zip'],
}

AVATAR_EXTENSIONS = set(ALLOWED_EXTENSIONS['image'])
AVATAR_MAX_SIZE = 5 * 1024 * 1024  # 5MB

ALL_ALLOWED_EXTENSIONS = set()
for ext_list in ALLOWED_EXTENSIONS.values():
    ALL_ALLOWED_EXTENSIONS.update(ext_list)


def get_file_category(filename: str) -> str:
    """Determine file category based on extension."""
    ext = Path(filename).suffix.lower()
    for category, extensions in ALLOWED_EXTENSIONS.items():
        if ext in extensions:
            return category
    return 'other'


def upload_root() -> Path:
    return Path(settings.UPLOAD_DIR).resolve()


def media_url(relative_path: str) -> str:
    return f"{settings.APP_URL.rstrip('/')}/api/media/{relative_path}"


def safe_media_path(relative_path: str, root: Optional[Path] = None) -> Path:
    """
    Resolve ``relative_path`` inside the upload root.

    Rejects ``..`` segments, empty segments (doubled separators), absolute
    paths and backslashes, then checks the resolved path is still contained
    in the root. Raises NotFound for anything that fails.
    """
    root = (root or upload_root()).resolve()
    if not relative_path or relative_path.startswith("/") or "\\" in relative_path or "\x00" in relative_path:
        raise NotFound("File not found")

    segments = relative_path.split("/")
    if any(segment in ("", ".", "..") for segment in segments):
        raise NotFound("File not found")

    candidate = root.joinpath(*segments).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        logger.warning(f"Rejected media path outside upload root: {relative_path}")
        raise NotFound("File not found")
    return candidate


def content_type_for(path: Path) -> str:
    return mimetypes.guess_type(path.name)[0] or "application/octet-stream"


async def read_media(relative_path: str) -> bytes:
    path = safe_media_path(relative_path)
    if not path.is_file():
        raise NotFound("File not found")
    async with aiofiles.open(path, "rb") as f:
        return await f.read()


async def _write(relative_path: str, content: bytes) -> Path:
    path = safe_media_path(relative_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, "wb") as f:
        await f.write(content)
    return path


async def save_upload(
    file: UploadFile,
    subdir: Optional[str] = None,
    allowed_extensions=None,
    max_size: Optional[int] = None,
) -> Dict[str, object]:
    """
    Store one uploaded file as ``<subdir or yyyy/mm>/<uuid><ext>``.
    Returns ``{url, path, size, type, category, original_name}``.
    """
    if not file or not file.filename:
        raise ValidationError("No file provided")

    allowed_extensions = allowed_extensions or ALL_ALLOWED_EXTENSIONS
    max_size = max_size or settings.MAX_UPLOAD_SIZE

    ext = Path(file.filename).suffix.lower()
    if ext not in allowed_extensions:
        raise ValidationError(f"File type not allowed. Allowed: {', '.join(sorted(allowed_extensions))}")

    content = await file.read()
    if not content:
        raise ValidationError("File is empty")
    if len(content) > max_size:
        raise ValidationError(f"File exceeds {max_size / (1024 * 1024):.0f}MB limit")

    folder = subdir or datetime.utcnow().strftime("%Y/%m")
    relative_path = f"{folder}/{uuid.uuid4().hex}{ext}"
    await _write(relative_path, content)

    mime_type = file.content_type or mimetypes.guess_type(file.filename)[0] or "application/octet-stream"
    logger.info(f"Stored upload {relative_path} ({len(content)} bytes)")
    return {
        "url": media_url(relative_path),
        "path": relative_path,
        "size": len(content),
        "type": mime_type,
        "category": get_file_category(file.filename),
        "original_name": file.filename,
    }


async def save_avatar(file: UploadFile, user_id: int) -> Dict[str, object]:
    return await save_upload(
        file,
        subdir=f"avatars/{user_id}",
        allowed_extensions=AVATAR_EXTENSIONS,
        max_size=AVATAR_MAX_SIZE,
    )


async def save_bytes(content: bytes, ext: str, subdir: Optional[str] = None) -> str:
    """Store raw bytes (e.g. media downloaded from the platform). Returns the public URL."""
    folder = subdir or datetime.utcnow().strftime("%Y/%m")
    relative_path = f"{folder}/{uuid.uuid4().hex}{ext}"
    await _write(relative_path, content)
    return media_url(relative_path)
