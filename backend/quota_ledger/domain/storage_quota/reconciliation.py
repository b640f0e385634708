from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.domain.organizations.db_models import Organization
from quota_ledger.domain.storage_quota.service import lock_organization_ledger, ledger_transaction
from quota_ledger.domain.stored_files.db_models import StoredFile
from quota_ledger.infra.metrics import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationReport:
    org_id: uuid.UUID
    previous_used: int
    calculated_used: int
    deviation: int
    corrected: bool

    def as_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["org_id"] = str(self.org_id)
        return payload


async def _live_object_bytes(session: AsyncSession, org_id: uuid.UUID) -> int:
    total = await session.scalar(
        sa.select(sa.func.coalesce(sa.func.sum(StoredFile.size_bytes), 0))
        .where(StoredFile.org_id == org_id)
        .where(StoredFile.deleted_at.is_(None))
    )
    return int(total or 0)


async def reconcile_org_storage(
    session: AsyncSession, org_id: uuid.UUID, *, fix: bool = False
) -> ReconciliationReport:
    """Audit ``storage_used_bytes`` against the sizes of the org's live stored files.

    Only committed usage is compared and corrected; reserved bytes are bounded
    by reservation expiry instead. Drift is reported, never raised.
    """
    corrected = False
    async with ledger_transaction(session):
        ledger = await lock_organization_ledger(session, org_id)
        previous_used = int(ledger.storage_used_bytes)
        calculated_used = await _live_object_bytes(session, org_id)
        deviation = previous_used - calculated_used

        if fix and deviation != 0:
            await session.execute(
                sa.update(Organization)
                .where(Organization.org_id == org_id)
                .values(storage_used_bytes=calculated_used)
                .execution_options(synchronize_session=False)
            )
            corrected = True

    report = ReconciliationReport(
        org_id=org_id,
        previous_used=previous_used,
        calculated_used=calculated_used,
        deviation=deviation,
        corrected=corrected,
    )
    if deviation != 0:
        logger.warning(
            "storage_usage_reconciled" if corrected else "storage_usage_drift_detected",
            extra={"extra": report.as_dict()},
        )
        metrics.record_storage_reconciliation_deviation(corrected)
    return report
