from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.domain.organizations.db_models import Organization
from quota_ledger.domain.organizations.service import OrganizationNotFound
from quota_ledger.domain.storage_quota.db_models import StorageReservation
from quota_ledger.infra.metrics import metrics
from quota_ledger.settings import settings

logger = logging.getLogger(__name__)


def format_bytes(value: int) -> str:
    size = float(max(value, 0))
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024 or unit == "TB":
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


class StorageQuotaExceeded(Exception):
    def __init__(self, org_id: uuid.UUID, requested_bytes: int, available_bytes: int) -> None:
        super().__init__(
            "Storage limit exceeded. "
            f"Requested: {format_bytes(requested_bytes)}, available: {format_bytes(available_bytes)}"
        )
        self.org_id = org_id
        self.requested_bytes = requested_bytes
        self.available_bytes = available_bytes


class StorageReservationLost(Exception):
    """The reservation was gone before the upload could commit it.

    Raised after the transfer finished, typically because the upload outlived
    the TTL and a sweep reclaimed the claim. The bytes are not counted as used;
    the caller must re-reserve them or delete the stored object.
    """

    def __init__(self, org_id: uuid.UUID, reservation_id: uuid.UUID, bytes_reserved: int) -> None:
        super().__init__(f"storage_reservation_lost:{reservation_id}")
        self.org_id = org_id
        self.reservation_id = reservation_id
        self.bytes_reserved = bytes_reserved


@dataclass(frozen=True)
class OrgStorageQuotaSnapshot:
    org_id: uuid.UUID
    used_bytes: int
    reserved_bytes: int
    limit_bytes: int

    @property
    def available_bytes(self) -> int:
        return max(self.limit_bytes - self.used_bytes - self.reserved_bytes, 0)

    @property
    def usage_percent(self) -> int:
        if self.limit_bytes <= 0:
            return 0
        consumed = self.used_bytes + self.reserved_bytes
        # Integer round-half-up; counters can exceed float precision.
        percent = (200 * consumed + self.limit_bytes) // (2 * self.limit_bytes)
        return min(percent, 100)


def _is_sqlite(session: AsyncSession) -> bool:
    bind = session.get_bind()
    return getattr(getattr(bind, "dialect", None), "name", "") == "sqlite"


async def _acquire_sqlite_write_lock(session: AsyncSession) -> None:
    # SQLite has no row locks; take the database write lock up front instead.
    if not _is_sqlite(session):
        return
    if session.in_transaction():
        return
    await session.execute(sa.text("BEGIN IMMEDIATE"))


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _now_for_db(session: AsyncSession, now: datetime | None = None) -> datetime:
    value = _ensure_utc(now) if now is not None else datetime.now(timezone.utc)
    if _is_sqlite(session):
        return value.replace(tzinfo=None)
    return value


def _coerce_reservation_id(value: uuid.UUID | str) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


@asynccontextmanager
async def ledger_transaction(session: AsyncSession, *, write: bool = True) -> AsyncIterator[None]:
    """Run one unit of work against the ledger: commit on success, roll back on error."""
    if write:
        await _acquire_sqlite_write_lock(session)
    try:
        yield
    except Exception:
        await session.rollback()
        raise
    await session.commit()


async def lock_organization_ledger(session: AsyncSession, org_id: uuid.UUID) -> sa.Row:
    result = await session.execute(
        sa.select(
            Organization.storage_used_bytes,
            Organization.storage_reserved_bytes,
            Organization.storage_limit_bytes,
        )
        .where(Organization.org_id == org_id)
        .with_for_update()
    )
    row = result.one_or_none()
    if row is None:
        raise OrganizationNotFound(org_id)
    return row


async def _apply_counter_delta(
    session: AsyncSession,
    org_id: uuid.UUID,
    *,
    used_delta: int = 0,
    reserved_delta: int = 0,
) -> None:
    values: dict[str, object] = {}
    if used_delta:
        values["storage_used_bytes"] = Organization.storage_used_bytes + used_delta
    if reserved_delta:
        values["storage_reserved_bytes"] = Organization.storage_reserved_bytes + reserved_delta
    if not values:
        return
    await session.execute(
        sa.update(Organization)
        .where(Organization.org_id == org_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def expire_reservations(
    session: AsyncSession, org_id: uuid.UUID, *, now: datetime | None = None
) -> int:
    """Reclaim reservations of ``org_id`` whose TTL elapsed; returns the bytes released."""
    async with ledger_transaction(session):
        await lock_organization_ledger(session, org_id)
        cutoff = _now_for_db(session, now)
        result = await session.execute(
            sa.delete(StorageReservation)
            .where(StorageReservation.org_id == org_id)
            .where(StorageReservation.expires_at < cutoff)
            .returning(StorageReservation.bytes)
            .execution_options(synchronize_session=False)
        )
        expired = [int(row[0]) for row in result.all()]
        reclaimed = sum(expired)
        if reclaimed:
            await _apply_counter_delta(session, org_id, reserved_delta=-reclaimed)

    if expired:
        logger.info(
            "storage_reservations_expired",
            extra={"extra": {"org_id": str(org_id), "expired": len(expired), "bytes_reclaimed": reclaimed}},
        )
        metrics.record_storage_bytes_reclaimed(reclaimed)
        for bytes_count in expired:
            metrics.record_storage_reservation("expired", bytes_count)
    return reclaimed


async def reserve_storage(
    session: AsyncSession,
    org_id: uuid.UUID,
    bytes_requested: int,
    *,
    user_id: str | None = None,
    file_key: str | None = None,
    ttl_seconds: int | None = None,
) -> uuid.UUID:
    """Claim ``bytes_requested`` of the organization's headroom before an upload.

    Raises ``StorageQuotaExceeded`` when the claim does not fit and
    ``OrganizationNotFound`` for an unknown tenant. The returned id must be
    passed to ``commit_reservation`` or ``cancel_reservation``; otherwise the
    claim lapses after the TTL.
    """
    if bytes_requested <= 0:
        raise ValueError("bytes_requested must be positive")
    ttl = ttl_seconds if ttl_seconds is not None else settings.storage_quota_reservation_ttl_seconds
    if ttl <= 0:
        raise ValueError("ttl_seconds must be positive")

    await expire_reservations(session, org_id)

    async with ledger_transaction(session):
        ledger = await lock_organization_ledger(session, org_id)
        used = int(ledger.storage_used_bytes)
        reserved = int(ledger.storage_reserved_bytes)
        limit = int(ledger.storage_limit_bytes)
        available = limit - (used + reserved)

        if bytes_requested > available:
            logger.warning(
                "org_storage_quota_rejected",
                extra={
                    "extra": {
                        "org_id": str(org_id),
                        "reason": "hard_limit",
                        "file_key": file_key,
                        "bytes_requested": bytes_requested,
                        "storage_used_bytes": used,
                        "storage_reserved_bytes": reserved,
                        "storage_limit_bytes": limit,
                        "available_bytes": available,
                    }
                },
            )
            metrics.record_org_storage_quota_rejection("hard_limit")
            raise StorageQuotaExceeded(org_id, bytes_requested, max(available, 0))

        now = _now_for_db(session)
        reservation_id = uuid.uuid4()
        expires_at = now + timedelta(seconds=ttl)
        session.add(
            StorageReservation(
                reservation_id=reservation_id,
                org_id=org_id,
                bytes=bytes_requested,
                user_id=user_id,
                file_key=file_key,
                created_at=now,
                expires_at=expires_at,
            )
        )
        await _apply_counter_delta(session, org_id, reserved_delta=bytes_requested)
        await session.flush()

    logger.info(
        "storage_reservation_created",
        extra={
            "extra": {
                "org_id": str(org_id),
                "reservation_id": str(reservation_id),
                "bytes_reserved": bytes_requested,
                "expires_at": _ensure_utc(expires_at).isoformat(),
            }
        },
    )
    metrics.record_storage_reservation("reserved", bytes_requested)
    return reservation_id


async def _resolve_reservation(
    session: AsyncSession, reservation_id: uuid.UUID | str, *, outcome: str
) -> bool:
    resolved_id = _coerce_reservation_id(reservation_id)
    if resolved_id is None:
        return False

    org_id: uuid.UUID | None = None
    released: int | None = None
    async with ledger_transaction(session):
        org_id = await session.scalar(
            sa.select(StorageReservation.org_id).where(StorageReservation.reservation_id == resolved_id)
        )
        if org_id is not None:
            # Organization row first, reservation row second: same order as the sweep.
            await lock_organization_ledger(session, org_id)
            result = await session.execute(
                sa.delete(StorageReservation)
                .where(StorageReservation.reservation_id == resolved_id)
                .returning(StorageReservation.bytes)
                .execution_options(synchronize_session=False)
            )
            released = result.scalar_one_or_none()
            if released is not None:
                await _apply_counter_delta(
                    session,
                    org_id,
                    used_delta=released if outcome == "committed" else 0,
                    reserved_delta=-released,
                )

    if released is None:
        logger.info(
            "storage_reservation_already_resolved",
            extra={"extra": {"reservation_id": str(resolved_id), "outcome": outcome}},
        )
        return False

    logger.info(
        f"storage_reservation_{outcome}",
        extra={
            "extra": {
                "org_id": str(org_id),
                "reservation_id": str(resolved_id),
                "bytes_reserved": int(released),
            }
        },
    )
    metrics.record_storage_reservation(outcome, int(released))
    return True


async def commit_reservation(session: AsyncSession, reservation_id: uuid.UUID | str) -> bool:
    """Move a reservation's bytes from reserved to used.

    Returns ``False`` when the reservation no longer exists (already committed,
    canceled or expired); that is the normal outcome of a retried call.
    """
    return await _resolve_reservation(session, reservation_id, outcome="committed")


async def cancel_reservation(session: AsyncSession, reservation_id: uuid.UUID | str) -> bool:
    """Release a reservation without counting its bytes as used."""
    return await _resolve_reservation(session, reservation_id, outcome="canceled")


async def get_org_storage_quota(session: AsyncSession, org_id: uuid.UUID) -> OrgStorageQuotaSnapshot:
    await expire_reservations(session, org_id)
    async with ledger_transaction(session, write=False):
        result = await session.execute(
            sa.select(
                Organization.storage_used_bytes,
                Organization.storage_reserved_bytes,
                Organization.storage_limit_bytes,
            ).where(Organization.org_id == org_id)
        )
        row = result.one_or_none()
        if row is None:
            raise OrganizationNotFound(org_id)
    return OrgStorageQuotaSnapshot(
        org_id=org_id,
        used_bytes=int(row.storage_used_bytes or 0),
        reserved_bytes=int(row.storage_reserved_bytes or 0),
        limit_bytes=int(row.storage_limit_bytes or 0),
    )


async def has_available_storage(session: AsyncSession, org_id: uuid.UUID, bytes_requested: int) -> bool:
    # Advisory: a later reserve_storage can still be rejected.
    snapshot = await get_org_storage_quota(session, org_id)
    return bytes_requested <= snapshot.available_bytes


async def release_storage_usage(
    session: AsyncSession, org_id: uuid.UUID, bytes_to_release: int
) -> OrgStorageQuotaSnapshot:
    """Decrement committed usage inside the caller's ``ledger_transaction``."""
    if bytes_to_release <= 0:
        raise ValueError("bytes_to_release must be positive")

    ledger = await lock_organization_ledger(session, org_id)
    used = int(ledger.storage_used_bytes)
    new_used = max(used - bytes_to_release, 0)
    await session.execute(
        sa.update(Organization)
        .where(Organization.org_id == org_id)
        .values(storage_used_bytes=new_used)
        .execution_options(synchronize_session=False)
    )
    if used < bytes_to_release:
        logger.warning(
            "storage_usage_underflow_adjusted",
            extra={
                "extra": {
                    "org_id": str(org_id),
                    "storage_used_bytes": used,
                    "bytes_released": bytes_to_release,
                }
            },
        )
    return OrgStorageQuotaSnapshot(
        org_id=org_id,
        used_bytes=new_used,
        reserved_bytes=int(ledger.storage_reserved_bytes),
        limit_bytes=int(ledger.storage_limit_bytes),
    )


async def decrement_storage_usage(
    session: AsyncSession, org_id: uuid.UUID, bytes_to_release: int
) -> OrgStorageQuotaSnapshot:
    if bytes_to_release <= 0:
        raise ValueError("bytes_to_release must be positive")
    async with ledger_transaction(session):
        snapshot = await release_storage_usage(session, org_id, bytes_to_release)
    return snapshot


@asynccontextmanager
async def storage_reservation(
    session: AsyncSession,
    org_id: uuid.UUID,
    bytes_requested: int,
    *,
    user_id: str | None = None,
    file_key: str | None = None,
) -> AsyncIterator[uuid.UUID]:
    """Reserve around an upload: commit on success, cancel if the body raises.

    A rejected reservation raises before the body runs, so nothing is
    transferred. If the process dies inside the body the reservation is left
    to expire. If the reservation expired while the body ran, the commit finds
    nothing to move and ``StorageReservationLost`` is raised; work flushed in
    the body is still committed.
    """
    reservation_id = await reserve_storage(
        session, org_id, bytes_requested, user_id=user_id, file_key=file_key
    )
    try:
        yield reservation_id
    except Exception:
        await session.rollback()
        await cancel_reservation(session, reservation_id)
        raise
    if not await commit_reservation(session, reservation_id):
        logger.warning(
            "storage_reservation_commit_missed",
            extra={
                "extra": {
                    "org_id": str(org_id),
                    "reservation_id": str(reservation_id),
                    "file_key": file_key,
                    "bytes_reserved": bytes_requested,
                }
            },
        )
        metrics.record_storage_reservation("commit_missed", bytes_requested)
        raise StorageReservationLost(org_id, reservation_id, bytes_requested)


async def count_pending_reservations(session: AsyncSession, *, now: datetime | None = None) -> int:
    cutoff = _now_for_db(session, now)
    async with ledger_transaction(session, write=False):
        pending = await session.scalar(
            sa.select(sa.func.count(StorageReservation.reservation_id)).where(
                StorageReservation.expires_at >= cutoff
            )
        )
    return int(pending or 0)


async def orgs_with_expired_reservations(
    session: AsyncSession, *, now: datetime | None = None, limit: int | None = None
) -> list[uuid.UUID]:
    cutoff = _now_for_db(session, now)
    stmt = (
        sa.select(StorageReservation.org_id)
        .where(StorageReservation.expires_at < cutoff)
        .group_by(StorageReservation.org_id)
        .order_by(sa.func.min(StorageReservation.expires_at))
    )
    if limit:
        stmt = stmt.limit(limit)
    async with ledger_transaction(session, write=False):
        result = await session.execute(stmt)
        org_ids = [row[0] for row in result.all()]
    return org_ids
