import asyncio
import logging
import time

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.infra.db import get_db_session

router = APIRouter()
logger = logging.getLogger(__name__)

_DB_CHECK_TIMEOUT_SECONDS = 2.0


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.head("/healthz")
async def healthz_head() -> Response:
    return Response(status_code=200)


@router.get("/readyz")
async def readyz(session: AsyncSession = Depends(get_db_session)) -> JSONResponse:
    """Report whether the ledger database answers within the check timeout."""
    start = time.perf_counter()
    try:
        await asyncio.wait_for(session.execute(text("SELECT 1")), timeout=_DB_CHECK_TIMEOUT_SECONDS)
        ok, detail = True, {"message": "database reachable"}
    except asyncio.TimeoutError:
        ok, detail = False, {"message": "database check timed out", "timeout_seconds": _DB_CHECK_TIMEOUT_SECONDS}
    except Exception as exc:  # noqa: BLE001
        logger.warning("database_check_failed", extra={"extra": {"error": type(exc).__name__}})
        ok, detail = False, {"message": "database check failed", "error": type(exc).__name__}
    elapsed_ms = (time.perf_counter() - start) * 1000
    check = {"name": "db", "ok": ok, "ms": round(elapsed_ms, 2), "detail": detail}
    return JSONResponse(status_code=200 if ok else 503, content={"ok": ok, "checks": [check]})
