from __future__ import annotations

import logging
import uuid

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.domain.organizations.db_models import Organization
from quota_ledger.settings import settings

logger = logging.getLogger(__name__)


class OrganizationNotFound(LookupError):
    def __init__(self, org_id: uuid.UUID) -> None:
        super().__init__(f"organization_not_found:{org_id}")
        self.org_id = org_id


async def create_organization(
    session: AsyncSession, name: str, *, limit_bytes: int | None = None
) -> Organization:
    if limit_bytes is None:
        limit_bytes = settings.storage_quota_default_limit_bytes
    if limit_bytes < 0:
        raise ValueError("limit_bytes must be non-negative")
    org = Organization(
        name=name,
        storage_used_bytes=0,
        storage_reserved_bytes=0,
        storage_limit_bytes=limit_bytes,
    )
    session.add(org)
    await session.flush()
    return org


async def get_organization(session: AsyncSession, org_id: uuid.UUID) -> Organization:
    org = await session.get(Organization, org_id, populate_existing=True)
    if org is None:
        raise OrganizationNotFound(org_id)
    return org


async def set_storage_limit(session: AsyncSession, org_id: uuid.UUID, limit_bytes: int) -> Organization:
    """Change the storage ceiling of an organization.

    Lowering the limit below current usage is allowed; it only blocks new
    reservations until usage drops. The caller commits.
    """
    if limit_bytes < 0:
        raise ValueError("limit_bytes must be non-negative")
    org = await get_organization(session, org_id)
    previous = org.storage_limit_bytes
    org.storage_limit_bytes = limit_bytes
    await session.flush()
    logger.info(
        "org_storage_limit_changed",
        extra={"extra": {"org_id": str(org_id), "previous_limit_bytes": previous, "limit_bytes": limit_bytes}},
    )
    return org


async def list_org_ids(session: AsyncSession) -> list[uuid.UUID]:
    result = await session.execute(sa.select(Organization.org_id).order_by(Organization.created_at))
    return [row[0] for row in result.all()]
