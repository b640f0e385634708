from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.domain.organizations import service as organizations_service
from quota_ledger.domain.organizations.service import OrganizationNotFound
from quota_ledger.domain.storage_quota import reconciliation as reconciliation_service
from quota_ledger.domain.storage_quota import service as storage_quota_service
from quota_ledger.infra.metrics import metrics
from quota_ledger.settings import settings

logger = logging.getLogger(__name__)


async def run_storage_quota_sweep(
    session: AsyncSession,
    *,
    batch_size: int | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    limit = batch_size if batch_size is not None else settings.storage_quota_sweep_batch_size
    org_ids = await storage_quota_service.orgs_with_expired_reservations(session, now=now, limit=limit or None)

    swept = 0
    reclaimed = 0
    for org_id in org_ids:
        try:
            reclaimed += await storage_quota_service.expire_reservations(session, org_id, now=now)
        except OrganizationNotFound:
            # Deleted concurrently; its reservations went with it.
            continue
        swept += 1

    pending = await storage_quota_service.count_pending_reservations(session, now=now)
    metrics.set_storage_reservations_pending(pending)

    logger.info(
        "storage_quota_sweep",
        extra={"extra": {"orgs": swept, "bytes_reclaimed": reclaimed, "pending": pending}},
    )
    return {"orgs": swept, "bytes_reclaimed": reclaimed}


async def run_storage_quota_reconciliation(
    session: AsyncSession,
    *,
    fix: bool | None = None,
) -> dict[str, int]:
    apply_fix = settings.storage_quota_reconcile_fix if fix is None else fix
    org_ids = await organizations_service.list_org_ids(session)
    await session.commit()

    reconciled = 0
    drifted = 0
    corrected = 0
    for org_id in org_ids:
        try:
            report = await reconciliation_service.reconcile_org_storage(session, org_id, fix=apply_fix)
        except OrganizationNotFound:
            continue
        reconciled += 1
        if report.deviation != 0:
            drifted += 1
        if report.corrected:
            corrected += 1

    logger.info(
        "storage_quota_reconciliation",
        extra={"extra": {"reconciled": reconciled, "drifted": drifted, "corrected": corrected}},
    )
    return {"reconciled": reconciled, "drifted": drifted, "corrected": corrected}
