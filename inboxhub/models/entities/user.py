import enum
from datetime import datetime
from typing import Optional

from passlib.context import CryptContext
from sqlalchemy import Column, DateTime, Integer, JSON, String
from sqlalchemy.orm import Session

from inboxhub.models.entities.base import Base, TimestampMixin, iso

# Password hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class UserRole(str, enum.Enum):
    USER = "user"                 # may own channels
    ADMIN = "admin"               # team-only account created through an invite
    SUPER_ADMIN = "super_admin"


class UserStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"


DEFAULT_SETTINGS = {
    "notifications": {
        "email_new_message": False,
        "email_daily_report": False,
        "browser_notifications": True,
        "sound_enabled": True,
    },
    "chat": {
        "auto_assign": False,
        "auto_reply_enabled": False,
        "working_hours_only": False,
        "working_hours_start": "09:00",
        "working_hours_end": "18:00",
    },
    "general": {
        "timezone": "Asia/Bangkok",
        "language": "th",
        "date_format": "DD/MM/YYYY",
    },
}


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False, default="")
    # Empty for accounts created by an email invite until the invitee registers
    hashed_password = Column(String(255), nullable=True)
    avatar = Column(String(500), nullable=True)
    role = Column(String(20), default=UserRole.USER.value, nullable=False, index=True)
    status = Column(String(20), default=UserStatus.PENDING.value, nullable=False, index=True)
    settings = Column(JSON, nullable=True)
    reset_token = Column(String(128), nullable=True, index=True)
    reset_token_expires_at = Column(DateTime, nullable=True)
    verification_token = Column(String(128), nullable=True, index=True)
    email_verified_at = Column(DateTime, nullable=True)
    bot_api_token = Column(String(128), nullable=True, unique=True, index=True)
    last_login_at = Column(DateTime, nullable=True)

    @staticmethod
    def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
        """Verify a password against its hash."""
        if not hashed_password:
            return False
        return pwd_context.verify(plain_password, hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password for storage."""
        return pwd_context.hash(password)

    @staticmethod
    def normalize_email(email: str) -> str:
        return (email or "").strip().lower()

    @classmethod
    def get_by_email(cls, db: Session, email: str) -> Optional["User"]:
        return db.query(cls).filter(cls.email == cls.normalize_email(email)).first()

    @classmethod
    def create_user(
        cls, db: Session, name: str, email: str, password: str,
        status: str = UserStatus.ACTIVE.value,
    ) -> "User":
        """Create a new user (active unless told otherwise) with hashed password."""
        user = cls(
            name=name.strip(),
            email=cls.normalize_email(email),
            hashed_password=cls.hash_password(password),
            role=UserRole.USER.value,
            status=status,
            settings={},
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    @classmethod
    def create_pending(cls, db: Session, email: str) -> "User":
        """Placeholder account for an invited email that has not registered yet."""
        email = cls.normalize_email(email)
        user = cls(
            name=email.split("@")[0],
            email=email,
            hashed_password=None,
            role=UserRole.ADMIN.value,
            status=UserStatus.PENDING.value,
            settings={},
        )
        db.add(user)
        db.flush()
        return user

    @classmethod
    def authenticate(cls, db: Session, email: str, password: str) -> Optional["User"]:
        """Authenticate a user with email and password."""
        user = cls.get_by_email(db, email)
        if not user:
            return None
        if not cls.verify_password(password, user.hashed_password):
            return None
        return user

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value

    @property
    def can_own_channels(self) -> bool:
        return self.role != UserRole.ADMIN.value

    def touch_login(self):
        self.last_login_at = datetime.utcnow()

    def to_dict(self) -> dict:
        """Convert user to dictionary (never includes credentials)."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "avatar": self.avatar,
            "role": self.role,
            "status": self.status,
            "email_verified_at": iso(self.email_verified_at),
            "last_login_at": iso(self.last_login_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def to_brief(self) -> dict:
        return {"id": self.id, "name": self.name, "email": self.email, "avatar": self.avatar}
