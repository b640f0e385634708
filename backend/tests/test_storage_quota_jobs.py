import uuid
from datetime import datetime, timedelta, timezone

import pytest

from quota_ledger.domain.organizations import service as organizations_service
from quota_ledger.domain.storage_quota import service as storage_quota_service
from quota_ledger.domain.stored_files import service as stored_files_service
from quota_ledger.infra.metrics import metrics
from quota_ledger.jobs import run as jobs_run
from quota_ledger.jobs import storage_quota as storage_quota_job


async def _create_org(async_session_maker, name: str, *, used_bytes: int = 0) -> uuid.UUID:
    async with async_session_maker() as session:
        org = await organizations_service.create_organization(session, name, limit_bytes=10_000)
        org.storage_used_bytes = used_bytes
        await session.commit()
        return org.org_id


@pytest.mark.anyio
async def test_sweep_job_reclaims_expired_reservations_across_orgs(async_session_maker):
    first_org = await _create_org(async_session_maker, "Sweep Org A")
    second_org = await _create_org(async_session_maker, "Sweep Org B")
    idle_org = await _create_org(async_session_maker, "Sweep Org C")

    async with async_session_maker() as session:
        await storage_quota_service.reserve_storage(session, first_org, 100, ttl_seconds=1)
        await storage_quota_service.reserve_storage(session, first_org, 50, ttl_seconds=1)
        await storage_quota_service.reserve_storage(session, second_org, 70, ttl_seconds=1)
        await storage_quota_service.reserve_storage(session, idle_org, 30, ttl_seconds=3600)

    later = datetime.now(timezone.utc) + timedelta(seconds=5)
    async with async_session_maker() as session:
        result = await storage_quota_job.run_storage_quota_sweep(session, now=later)

    assert result == {"orgs": 2, "bytes_reclaimed": 220}
    assert metrics.storage_reservations_pending._value.get() == 1

    async with async_session_maker() as session:
        first = await storage_quota_service.get_org_storage_quota(session, first_org)
        second = await storage_quota_service.get_org_storage_quota(session, second_org)
        idle = await storage_quota_service.get_org_storage_quota(session, idle_org)
    assert first.reserved_bytes == 0
    assert second.reserved_bytes == 0
    assert idle.reserved_bytes == 30


@pytest.mark.anyio
async def test_sweep_job_respects_batch_size(async_session_maker):
    org_ids = [await _create_org(async_session_maker, f"Batch Org {index}") for index in range(3)]

    async with async_session_maker() as session:
        for org_id in org_ids:
            await storage_quota_service.reserve_storage(session, org_id, 10, ttl_seconds=1)

    later = datetime.now(timezone.utc) + timedelta(seconds=5)
    async with async_session_maker() as session:
        first_pass = await storage_quota_job.run_storage_quota_sweep(session, batch_size=2, now=later)
        second_pass = await storage_quota_job.run_storage_quota_sweep(session, batch_size=2, now=later)

    assert first_pass == {"orgs": 2, "bytes_reclaimed": 20}
    assert second_pass == {"orgs": 1, "bytes_reclaimed": 10}


@pytest.mark.anyio
async def test_sweep_job_with_nothing_to_do(async_session_maker):
    async with async_session_maker() as session:
        result = await storage_quota_job.run_storage_quota_sweep(session)
    assert result == {"orgs": 0, "bytes_reclaimed": 0}


@pytest.mark.anyio
async def test_reconciliation_job_reports_and_fixes(async_session_maker):
    drifted_org = await _create_org(async_session_maker, "Job Drift Org", used_bytes=500)
    clean_org = await _create_org(async_session_maker, "Job Clean Org", used_bytes=200)

    async with async_session_maker() as session:
        await stored_files_service.register_stored_file(
            session, drifted_org, path="orgs/drift.pdf", size_bytes=450
        )
        await stored_files_service.register_stored_file(
            session, clean_org, path="orgs/clean.pdf", size_bytes=200
        )
        await session.commit()

    async with async_session_maker() as session:
        report_only = await storage_quota_job.run_storage_quota_reconciliation(session, fix=False)
    assert report_only == {"reconciled": 2, "drifted": 1, "corrected": 0}

    async with async_session_maker() as session:
        fixed = await storage_quota_job.run_storage_quota_reconciliation(session, fix=True)
    assert fixed == {"reconciled": 2, "drifted": 1, "corrected": 1}

    async with async_session_maker() as session:
        snapshot = await storage_quota_service.get_org_storage_quota(session, drifted_org)
        repeat = await storage_quota_job.run_storage_quota_reconciliation(session)
    assert snapshot.used_bytes == 450
    assert repeat == {"reconciled": 2, "drifted": 0, "corrected": 0}


@pytest.mark.anyio
async def test_run_jobs_once_records_outcomes(async_session_maker):
    org_id = await _create_org(async_session_maker, "Runner Org")
    async with async_session_maker() as session:
        await storage_quota_service.reserve_storage(session, org_id, 10)

    outcomes = await jobs_run.run_jobs_once(
        async_session_maker, ["storage-quota-sweep", "storage-quota-reconcile"]
    )

    assert outcomes == {"storage-quota-sweep": "ok", "storage-quota-reconcile": "ok"}
    assert metrics.job_last_success.labels(job="storage-quota-sweep")._value.get() > 0
    assert metrics.job_last_success.labels(job="storage-quota-reconcile")._value.get() > 0


@pytest.mark.anyio
async def test_run_jobs_once_counts_failures(async_session_maker, monkeypatch):
    async def _boom(session, **kwargs):
        raise RuntimeError("db_unavailable")

    monkeypatch.setattr(storage_quota_job, "run_storage_quota_sweep", _boom)

    outcomes = await jobs_run.run_jobs_once(async_session_maker, ["storage-quota-sweep"])

    assert outcomes == {"storage-quota-sweep": "error"}
    assert metrics.job_errors.labels(job="storage-quota-sweep", reason="RuntimeError")._value.get() == 1


def test_unknown_job_name_is_rejected():
    with pytest.raises(ValueError, match="unknown_job"):
        jobs_run._job_runner("storage-quota-compact")


@pytest.mark.anyio
async def test_main_runs_selected_jobs_once(async_session_maker, monkeypatch):
    calls = []

    async def _fake_run_jobs_once(session_factory, job_names, *, fix=None):
        calls.append((session_factory, job_names, fix))
        return {name: "ok" for name in job_names}

    async def _noop_dispose() -> None:
        return None

    monkeypatch.setattr(jobs_run, "get_session_factory", lambda: async_session_maker)
    monkeypatch.setattr(jobs_run, "run_jobs_once", _fake_run_jobs_once)
    monkeypatch.setattr(jobs_run, "dispose_engine", _noop_dispose)

    await jobs_run.main(["--job", "storage-quota-reconcile", "--once", "--fix"])
    await jobs_run.main(["--once"])

    assert calls == [
        (async_session_maker, ["storage-quota-reconcile"], True),
        (async_session_maker, jobs_run.DEFAULT_JOBS, None),
    ]
