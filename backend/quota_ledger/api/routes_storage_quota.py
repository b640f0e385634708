import uuid

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.domain.storage_quota import reconciliation as reconciliation_service
from quota_ledger.domain.storage_quota import service as storage_quota_service
from quota_ledger.infra.db import get_db_session

router = APIRouter(prefix="/v1/storage-quota", tags=["storage-quota"])


class StorageQuotaResponse(BaseModel):
    org_id: uuid.UUID
    used_bytes: int
    reserved_bytes: int
    limit_bytes: int
    available_bytes: int
    usage_percent: int


class ReservationRequest(BaseModel):
    bytes: int = Field(gt=0)
    user_id: str | None = Field(None, max_length=64)
    file_key: str | None = Field(None, max_length=512)


class ReservationResponse(BaseModel):
    reservation_id: uuid.UUID


class ResolutionResponse(BaseModel):
    reservation_id: str
    resolved: bool


class SweepResponse(BaseModel):
    org_id: uuid.UUID
    bytes_reclaimed: int


class ReconciliationResponse(BaseModel):
    org_id: uuid.UUID
    previous_used: int
    calculated_used: int
    deviation: int
    corrected: bool


@router.get("/orgs/{org_id}", response_model=StorageQuotaResponse)
async def get_storage_quota(
    org_id: uuid.UUID, session: AsyncSession = Depends(get_db_session)
) -> StorageQuotaResponse:
    snapshot = await storage_quota_service.get_org_storage_quota(session, org_id)
    return StorageQuotaResponse(
        org_id=snapshot.org_id,
        used_bytes=snapshot.used_bytes,
        reserved_bytes=snapshot.reserved_bytes,
        limit_bytes=snapshot.limit_bytes,
        available_bytes=snapshot.available_bytes,
        usage_percent=snapshot.usage_percent,
    )


@router.post(
    "/orgs/{org_id}/reservations",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_reservation(
    org_id: uuid.UUID,
    payload: ReservationRequest,
    session: AsyncSession = Depends(get_db_session),
) -> ReservationResponse:
    reservation_id = await storage_quota_service.reserve_storage(
        session,
        org_id,
        payload.bytes,
        user_id=payload.user_id,
        file_key=payload.file_key,
    )
    return ReservationResponse(reservation_id=reservation_id)


@router.post("/reservations/{reservation_id}/commit", response_model=ResolutionResponse)
async def commit_reservation(
    reservation_id: str, session: AsyncSession = Depends(get_db_session)
) -> ResolutionResponse:
    resolved = await storage_quota_service.commit_reservation(session, reservation_id)
    return ResolutionResponse(reservation_id=reservation_id, resolved=resolved)


@router.post("/reservations/{reservation_id}/cancel", response_model=ResolutionResponse)
async def cancel_reservation(
    reservation_id: str, session: AsyncSession = Depends(get_db_session)
) -> ResolutionResponse:
    resolved = await storage_quota_service.cancel_reservation(session, reservation_id)
    return ResolutionResponse(reservation_id=reservation_id, resolved=resolved)


@router.post("/orgs/{org_id}/sweep", response_model=SweepResponse)
async def sweep_expired_reservations(
    org_id: uuid.UUID, session: AsyncSession = Depends(get_db_session)
) -> SweepResponse:
    reclaimed = await storage_quota_service.expire_reservations(session, org_id)
    return SweepResponse(org_id=org_id, bytes_reclaimed=reclaimed)


@router.post("/orgs/{org_id}/reconcile", response_model=ReconciliationResponse)
async def reconcile_storage(
    org_id: uuid.UUID,
    fix: bool = Query(False),
    session: AsyncSession = Depends(get_db_session),
) -> ReconciliationResponse:
    report = await reconciliation_service.reconcile_org_storage(session, org_id, fix=fix)
    return ReconciliationResponse(
        org_id=report.org_id,
        previous_used=report.previous_used,
        calculated_used=report.calculated_used,
        deviation=report.deviation,
        corrected=report.corrected,
    )
