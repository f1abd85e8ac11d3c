"""
Conversation tags. Tags belong to a channel owner and are shared with the
owner's team; delegates edit them through ``can_manage_tags``.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from inboxhub.core.auth import get_current_user
from inboxhub.core.errors import Conflict, Forbidden, NotFound
from inboxhub.models.database import get_db
from inboxhub.models.entities import Tag, User
from inboxhub.models.entities.tag import DEFAULT_TAG_COLOR
from inboxhub.services.access_resolver import AccessResolver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tags", tags=["Tags"])


class TagCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(None, max_length=20)
    description: Optional[str] = None
    owner_id: Optional[int] = None


class TagUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    color: Optional[str] = Field(None, max_length=20)
    description: Optional[str] = None


def _require_tag_manager(db: Session, user: User, owner_id: int):
    if owner_id not in AccessResolver.accessible_owner_ids(db, user.id):
        raise NotFound("Tag not found")
    if not AccessResolver.owner_capability(db, user.id, owner_id, "can_manage_tags"):
        raise Forbidden("You do not have permission to manage tags")


def _check_unique(db: Session, owner_id: int, name: str, exclude_id: Optional[int] = None):
    query = db.query(Tag).filter(Tag.owner_id == owner_id, Tag.name == name)
    if exclude_id is not None:
        query = query.filter(Tag.id != exclude_id)
    if query.first():
        raise Conflict("A tag with this name already exists")


def _load_tag(db: Session, user: User, tag_id: int) -> Tag:
    tag = db.query(Tag).filter(Tag.id == tag_id).first()
    if not tag:
        raise NotFound("Tag not found")
    _require_tag_manager(db, user, tag.owner_id)
    return tag


@router.get("")
async def list_tags(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    owner_ids = AccessResolver.accessible_owner_ids(db, current_user.id)
    tags = db.query(Tag).filter(Tag.owner_id.in_(owner_ids)).order_by(Tag.name).all()
    return {"success": True, "data": [t.to_dict() for t in tags]}


@router.post("")
async def create_tag(
    request: TagCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    owner_id = request.owner_id or current_user.id
    _require_tag_manager(db, current_user, owner_id)

    name = request.name.strip()
    _check_unique(db, owner_id, name)

    tag = Tag(
        owner_id=owner_id,
        name=name,
        color=request.color or DEFAULT_TAG_COLOR,
        description=request.description,
    )
    db.add(tag)
    db.commit()
    db.refresh(tag)
    return {"success": True, "data": tag.to_dict()}


@router.put("/{tag_id}")
async def update_tag(
    tag_id: int,
    request: TagUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    tag = _load_tag(db, current_user, tag_id)
    if request.name is not None:
        name = request.name.strip()
        _check_unique(db, tag.owner_id, name, exclude_id=tag.id)
        tag.name = name
    if request.color is not None:
        tag.color = request.color
    if request.description is not None:
        tag.description = request.description
    db.commit()
    db.refresh(tag)
    return {"success": True, "data": tag.to_dict()}


@router.delete("/{tag_id}")
async def delete_tag(
    tag_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    tag = _load_tag(db, current_user, tag_id)
    db.delete(tag)
    db.commit()
    return {"success": True, "message": "Tag deleted"}
