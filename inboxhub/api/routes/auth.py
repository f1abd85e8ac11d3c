"""
Account API: registration, email verification, cookie login/logout, profile
and passwords.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, File, Response, UploadFile
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from inboxhub.core.auth import clear_auth_cookie, get_current_user, set_auth_cookie, token_for_user
from inboxhub.core.config import settings
from inboxhub.core.errors import Conflict, Forbidden, Unauthorized, ValidationError
from inboxhub.core.security import generate_token
from inboxhub.models.database import get_db
from inboxhub.models.entities import User, UserRole, UserStatus
from inboxhub.services import email_service, invitation_service, storage_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


# Request Models
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=6)
    # Token from an email invitation; proves the address of an invited account
    invite_token: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    avatar: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str
    password: str = Field(..., min_length=6)


class VerifyEmailRequest(BaseModel):
    token: str


def verification_url(token: str) -> str:
    return f"{settings.APP_URL.rstrip('/')}/auth/verify?token={token}"


@router.post("/register")
async def register(request: RegisterRequest, response: Response, db: Session = Depends(get_db)):
    """
    Create an owner account.

    An email that was invited before registering has a pending placeholder
    account. Registering claims it, so the existing grants keep pointing at
    it, but only with the invite token that was mailed to that address.
    Other new accounts stay pending until the verification link is opened
    when ``EMAIL_VERIFICATION_REQUIRED`` is set.
    """
    existing = User.get_by_email(db, request.email)
    if existing and existing.status != UserStatus.PENDING.value:
        raise Conflict("This email is already registered")

    if existing and existing.verification_token and not request.invite_token:
        raise Conflict("This email is awaiting verification. Check your inbox for the link")

    if existing:
        invitation_service.invite_for_account(db, request.invite_token, existing)
        existing.name = request.name.strip()
        existing.hashed_password = User.hash_password(request.password)
        existing.status = UserStatus.ACTIVE.value
        existing.role = UserRole.USER.value
        existing.verification_token = None
        existing.email_verified_at = datetime.utcnow()
        db.commit()
        db.refresh(existing)
        user = existing
        logger.info(f"Invited account {user.id} claimed by registration")
    elif settings.EMAIL_VERIFICATION_REQUIRED:
        user = User.create_user(
            db, request.name, request.email, request.password, status=UserStatus.PENDING.value
        )
        user.verification_token = generate_token(32)
        db.commit()
        email_sent = await email_service.send_verification_email(
            user.email, user.name, verification_url(user.verification_token)
        )
        logger.info(f"Registered user {user.id}, awaiting email verification")
        return {
            "success": True,
            "message": "Registration successful. Check your email to verify your account",
            "data": {"email": user.email, "verification_required": True, "email_sent": email_sent},
        }
    else:
        user = User.create_user(db, request.name, request.email, request.password)
        logger.info(f"Registered user {user.id}")

    set_auth_cookie(response, token_for_user(user))
    return {"success": True, "message": "Registration successful", "data": user.to_dict()}


def _verify_email(db: Session, token: Optional[str]) -> User:
    user = db.query(User).filter(User.verification_token == token).first() if token else None
    if not user:
        raise ValidationError("Verification link is invalid or has already been used")
    user.verification_token = None
    user.email_verified_at = datetime.utcnow()
    if user.status == UserStatus.PENDING.value:
        user.status = UserStatus.ACTIVE.value
    db.commit()
    db.refresh(user)
    logger.info(f"User {user.id} verified their email")
    return user


@router.get("/verify")
async def verify_email_link(token: Optional[str] = None, db: Session = Depends(get_db)):
    user = _verify_email(db, token)
    return {"success": True, "message": "Email verified. You can now log in", "data": user.to_dict()}


@router.post("/verify")
async def verify_email(request: VerifyEmailRequest, db: Session = Depends(get_db)):
    user = _verify_email(db, request.token)
    return {"success": True, "message": "Email verified. You can now log in", "data": user.to_dict()}


def _pending_message(user: User) -> str:
    if user.verification_token:
        return "Please verify your email before logging in"
    return "Please complete registration before logging in"


@router.post("/login")
async def login(request: LoginRequest, response: Response, db: Session = Depends(get_db)):
    user = User.authenticate(db, request.email, request.password)
    if not user:
        pending = User.get_by_email(db, request.email)
        if pending and pending.status == UserStatus.PENDING.value:
            raise Forbidden(_pending_message(pending))
        raise Unauthorized("Incorrect email or password")
    if user.status == UserStatus.SUSPENDED.value:
        raise Forbidden("This account has been suspended")
    if not user.is_active:
        raise Forbidden(_pending_message(user))

    user.touch_login()
    db.commit()
    set_auth_cookie(response, token_for_user(user))
    return {"success": True, "message": "Logged in", "data": user.to_dict()}


@router.post("/logout")
async def logout(response: Response):
    clear_auth_cookie(response)
    return {"success": True, "message": "Logged out"}


@router.get("/me")
async def me(current_user: User = Depends(get_current_user)):
    return {"success": True, "data": current_user.to_dict()}


@router.put("/profile")
async def update_profile(
    request: ProfileUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if request.name is not None:
        current_user.name = request.name.strip()
    if request.avatar is not None:
        current_user.avatar = request.avatar or None
    db.commit()
    db.refresh(current_user)
    return {"success": True, "message": "Profile updated", "data": current_user.to_dict()}


@router.post("/change-password")
async def change_password(
    request: ChangePasswordRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if not User.verify_password(request.current_password, current_user.hashed_password):
        raise ValidationError("Current password is incorrect")
    current_user.hashed_password = User.hash_password(request.new_password)
    db.commit()
    return {"success": True, "message": "Password changed"}


@router.post("/forgot-password")
async def forgot_password(request: ForgotPasswordRequest, db: Session = Depends(get_db)):
    """Always answers success so the endpoint cannot be used to enumerate accounts."""
    user = User.get_by_email(db, request.email)
    if user and user.is_active:
        user.reset_token = generate_token(32)
        user.reset_token_expires_at = datetime.utcnow() + timedelta(minutes=settings.RESET_TOKEN_EXPIRE_MINUTES)
        db.commit()
        reset_url = f"{settings.APP_URL.rstrip('/')}/auth/reset-password?token={user.reset_token}"
        await email_service.send_reset_password_email(user.email, user.name, reset_url)
    return {"success": True, "message": "If the email exists, a reset link has been sent"}


@router.post("/reset-password")
async def reset_password(request: ResetPasswordRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.reset_token == request.token).first()
    if not user or not user.reset_token_expires_at or user.reset_token_expires_at < datetime.utcnow():
        raise ValidationError("Reset link is invalid or has expired")
    user.hashed_password = User.hash_password(request.password)
    user.reset_token = None
    user.reset_token_expires_at = None
    db.commit()
    return {"success": True, "message": "Password has been reset"}


@router.post("/avatar")
async def upload_avatar(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    stored = await storage_service.save_avatar(file, current_user.id)
    current_user.avatar = stored["url"]
    db.commit()
    return {"success": True, "data": {"avatar": current_user.avatar}}
