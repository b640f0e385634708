from __future__ import annotations

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from quota_ledger.infra.db import Base, UUID_TYPE


class StorageReservation(Base):
    """An in-flight claim on an organization's storage headroom.

    Rows are inserted by a reservation and deleted by exactly one of commit,
    cancel or expiry; they are never updated in between.
    """

    __tablename__ = "storage_reservations"
    __table_args__ = (
        sa.CheckConstraint("bytes > 0", name="ck_storage_reservations_bytes_positive"),
        sa.CheckConstraint("expires_at > created_at", name="ck_storage_reservations_expiry_after_create"),
        sa.Index("ix_storage_reservations_org_expires", "org_id", "expires_at"),
    )

    reservation_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
    )
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        sa.ForeignKey("organizations.org_id", ondelete="CASCADE"),
        nullable=False,
    )
    bytes: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    user_id: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    file_key: Mapped[str | None] = mapped_column(sa.String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
