"""storage quota ledger

Revision ID: 0001_storage_quota_ledger
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_storage_quota_ledger"
down_revision = None
branch_labels = None
depends_on = None


UUID_TYPE = sa.Uuid(as_uuid=True)


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("org_id", UUID_TYPE, primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False, unique=True),
        sa.Column("storage_used_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("storage_reserved_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("storage_limit_bytes", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("storage_used_bytes >= 0", name="ck_organizations_storage_used_non_negative"),
        sa.CheckConstraint(
            "storage_reserved_bytes >= 0", name="ck_organizations_storage_reserved_non_negative"
        ),
        sa.CheckConstraint("storage_limit_bytes >= 0", name="ck_organizations_storage_limit_non_negative"),
    )
    op.create_table(
        "storage_reservations",
        sa.Column("reservation_id", UUID_TYPE, primary_key=True, nullable=False),
        sa.Column("org_id", UUID_TYPE, nullable=False),
        sa.Column("bytes", sa.BigInteger(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("file_key", sa.String(length=512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.org_id"], ondelete="CASCADE"),
        sa.CheckConstraint("bytes > 0", name="ck_storage_reservations_bytes_positive"),
        sa.CheckConstraint("expires_at > created_at", name="ck_storage_reservations_expiry_after_create"),
    )
    op.create_index(
        "ix_storage_reservations_org_expires",
        "storage_reservations",
        ["org_id", "expires_at"],
    )
    op.create_table(
        "stored_files",
        sa.Column("file_id", UUID_TYPE, primary_key=True, nullable=False),
        sa.Column("org_id", UUID_TYPE, nullable=False),
        sa.Column("path", sa.String(length=512), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("mime_type", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.org_id"], ondelete="CASCADE"),
        sa.CheckConstraint("size_bytes >= 0", name="ck_stored_files_size_non_negative"),
    )
    op.create_index("ix_stored_files_org_deleted", "stored_files", ["org_id", "deleted_at"])


def downgrade() -> None:
    op.drop_index("ix_stored_files_org_deleted", table_name="stored_files")
    op.drop_table("stored_files")
    op.drop_index("ix_storage_reservations_org_expires", table_name="storage_reservations")
    op.drop_table("storage_reservations")
    op.drop_table("organizations")
