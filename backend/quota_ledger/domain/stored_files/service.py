from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.domain.storage_quota import service as storage_quota_service
from quota_ledger.domain.stored_files.db_models import StoredFile

logger = logging.getLogger(__name__)


class StoredFileNotFound(LookupError):
    pass


class StoredFileNotDeleted(ValueError):
    pass


async def register_stored_file(
    session: AsyncSession,
    org_id: uuid.UUID,
    *,
    path: str,
    size_bytes: int,
    mime_type: str | None = None,
) -> StoredFile:
    """Record an uploaded object in the live-object index.

    Quota usage is not touched here: uploads account for their bytes through a
    storage reservation that is committed once the object is registered. The
    caller commits.
    """
    if size_bytes < 0:
        raise ValueError("size_bytes must be non-negative")
    stored_file = StoredFile(org_id=org_id, path=path, size_bytes=size_bytes, mime_type=mime_type)
    session.add(stored_file)
    await session.flush()
    return stored_file


async def _get_stored_file(session: AsyncSession, file_id: uuid.UUID) -> StoredFile:
    stored_file = await session.get(StoredFile, file_id, populate_existing=True)
    if stored_file is None:
        raise StoredFileNotFound(str(file_id))
    return stored_file


async def mark_stored_file_deleted(session: AsyncSession, file_id: uuid.UUID) -> StoredFile:
    stored_file = await _get_stored_file(session, file_id)
    if stored_file.deleted_at is None:
        stored_file.deleted_at = datetime.now(timezone.utc)
        await session.flush()
    return stored_file


async def purge_stored_file(session: AsyncSession, file_id: uuid.UUID) -> None:
    """Hard-delete a soft-deleted file and release its bytes from committed usage."""
    async with storage_quota_service.ledger_transaction(session):
        stored_file = await _get_stored_file(session, file_id)
        if stored_file.deleted_at is None:
            raise StoredFileNotDeleted("stored_file_not_marked_deleted")
        org_id = stored_file.org_id
        size_bytes = stored_file.size_bytes
        await session.delete(stored_file)
        if size_bytes > 0:
            await storage_quota_service.release_storage_usage(session, org_id, size_bytes)

    logger.info(
        "stored_file_purged",
        extra={"extra": {"org_id": str(org_id), "file_id": str(file_id), "bytes_released": size_bytes}},
    )
