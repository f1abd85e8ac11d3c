"""
Per-user preferences (notifications, chat, general) and the bot API token.
"""
import copy
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from inboxhub.core.auth import get_current_user
from inboxhub.core.errors import ValidationError
from inboxhub.models.database import get_db
from inboxhub.models.entities import User
from inboxhub.models.entities.user import DEFAULT_SETTINGS
from inboxhub.services import bot_service

router = APIRouter(prefix="/settings", tags=["Settings"])


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def effective_settings(user: User) -> Dict[str, Any]:
    return deep_merge(DEFAULT_SETTINGS, user.settings or {})


@router.get("")
async def get_settings(current_user: User = Depends(get_current_user)):
    return {"success": True, "data": effective_settings(current_user)}


@router.put("")
async def update_settings(
    body: Dict[str, Any],
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    unknown = set(body) - set(DEFAULT_SETTINGS)
    if unknown:
        raise ValidationError(f"Unknown settings sections: {', '.join(sorted(unknown))}")
    for section, values in body.items():
        if not isinstance(values, dict):
            raise ValidationError(f"{section} must be an object")

    # Assign a new object so the JSON column is flagged dirty
    current_user.settings = deep_merge(current_user.settings or {}, body)
    db.commit()
    db.refresh(current_user)
    return {"success": True, "data": effective_settings(current_user)}


@router.get("/bot-token")
async def get_bot_token(current_user: User = Depends(get_current_user)):
    return {
        "success": True,
        "data": {
            "has_token": bool(current_user.bot_api_token),
            "masked_token": bot_service.mask_token(current_user.bot_api_token),
        },
    }


@router.post("/bot-token")
async def regenerate_bot_token(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Issue a new bot API token. The full value is only returned here."""
    token = bot_service.regenerate_token(db, current_user)
    return {
        "success": True,
        "message": "Bot API token generated. Copy it now, it will not be shown again",
        "data": {"token": token, "masked_token": bot_service.mask_token(token)},
    }


@router.delete("/bot-token")
async def revoke_bot_token(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    bot_service.revoke_token(db, current_user)
    return {"success": True, "message": "Bot API token revoked"}
