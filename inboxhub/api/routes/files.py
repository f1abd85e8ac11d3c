"""
File upload and media serving.
"""
import logging

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import Response

from inboxhub.core.auth import get_current_user
from inboxhub.models.entities import User
from inboxhub.services import storage_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Files"])


@router.post("/upload")
async def upload_file(
    file: UploadFile = File(...),
    current_user: User = Depends(get_current_user),
):
    stored = await storage_service.save_upload(file)
    logger.info(f"User {current_user.id} uploaded {stored['path']}")
    return {"success": True, "data": stored}


@router.get("/media/{path:path}")
async def get_media(path: str):
    """
    Serve an uploaded file. Public, because the messaging platform fetches
    image and video URLs without credentials.
    """
    content = await storage_service.read_media(path)
    media_type = storage_service.content_type_for(storage_service.safe_media_path(path))
    return Response(
        content=content,
        media_type=media_type,
        headers={"Cache-Control": "public, max-age=31536000"},
    )
