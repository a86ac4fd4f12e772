# backend/trustgate/db/models/ip_blacklist.py
import enum
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String, Text, Uuid
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.orm import Mapped, mapped_column

from trustgate.db.base_class import Base


class BlacklistSource(str, enum.Enum):
    MANUAL = "MANUAL"
    AUTOMATIC = "AUTOMATIC"
    SYSTEM = "SYSTEM"


class BlacklistEntry(Base):
    """
    Persisted blacklist row. ``expires_at`` NULL means the block is permanent.

    The in-process IPBlacklistCache mirrors the non-expired rows of this table.
    """

    __tablename__ = "ip_blacklist"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False, unique=True, index=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[BlacklistSource] = mapped_column(
        SQLAlchemyEnum(
            BlacklistSource,
            name="blacklist_source_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=BlacklistSource.MANUAL,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return (
            f"<BlacklistEntry(ip={self.ip_address!r}, source={self.source!r}, "
            f"expires_at={self.expires_at!r})>"
        )
