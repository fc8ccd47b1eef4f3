"""User service - account lookup and credential storage"""

from sqlalchemy.orm import Session
from typing import Optional
from app.config import settings
from app.models.user import User
from app.core.security import get_password_hash
from app.core.exceptions import ResourceAlreadyExistsError, ResourceNotFoundError, ValidationError
import logging

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class UserService:
    """Service for user management"""

    @staticmethod
    def create_user(
        db: Session,
        email: str,
        password: Optional[str] = None,
        role: str = "user",
    ) -> User:
        """
        Create new user

        Args:
            db: Database session
            email: Login email (stored lower-cased)
            password: Plain password; None for provider-only identities
            role: "user" or "admin"

        Returns:
            Created user
        """
        email = normalize_email(email)
        existing = db.query(User).filter(User.email == email).first()
        if existing:
            raise ResourceAlreadyExistsError("User")

        if password is not None:
            UserService.validate_password(password)

        user = User(
            email=email,
            password_hash=get_password_hash(password) if password is not None else None,
            role=role,
        )

        db.add(user)
        db.commit()
        db.refresh(user)

        logger.info(f"Created user {user.id} (role: {user.role})")
        return user

    @staticmethod
    def validate_password(password: str) -> None:
        if len(password) < settings.PASSWORD_MIN_LENGTH:
            raise ValidationError(
                f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters",
                details={"field": "password"},
            )

    @staticmethod
    def set_password(db: Session, user_id: int, new_password: str, commit: bool = True) -> User:
        """
        Hash and store a new password.

        With ``commit=False`` the change is only flushed so the caller can
        commit it together with related writes.
        """
        UserService.validate_password(new_password)
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise ResourceNotFoundError("User")

        user.password_hash = get_password_hash(new_password)
        if not commit:
            db.flush()
            return user
        db.commit()
        db.refresh(user)

        logger.info(f"Password changed for user {user_id}")
        return user

    @staticmethod
    def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
        """Get user by ID"""
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_user_by_email(db: Session, email: str) -> Optional[User]:
        """Get user by email (case-insensitive)"""
        return db.query(User).filter(User.email == normalize_email(email)).first()


# Singleton instance
user_service = UserService()
