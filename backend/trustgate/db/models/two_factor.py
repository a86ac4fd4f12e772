# backend/trustgate/db/models/two_factor.py
"""
Models for per-user 2FA credentials and security preferences.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from trustgate.db.base_class import Base


class TwoFactorCredential(Base):
    """
    TOTP credential for a single user.

    The secret is Fernet-encrypted and each backup code is stored as a salted
    PBKDF2 hash (``salt$hash``). When 2FA is disabled the secret is NULL and
    the backup code list is empty.
    """

    __tablename__ = "two_factor_credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    secret_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    backup_codes: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    enabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    disabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<TwoFactorCredential(user_id={self.user_id!r}, enabled={self.enabled!r})>"


class UserSecuritySettings(Base):
    __tablename__ = "user_security_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    email_notifications: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    session_timeout_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
