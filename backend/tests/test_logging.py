import asyncio
import json
import logging

from fastapi.testclient import TestClient

from quota_ledger.domain.organizations import service as organizations_service
from quota_ledger.domain.storage_quota import service as storage_quota_service
from quota_ledger.infra.logging import configure_logging, redact
from quota_ledger.main import create_app
from quota_ledger.settings import settings


def _log_lines(capsys) -> list[dict]:
    captured = capsys.readouterr()
    lines = (captured.out + captured.err).strip().splitlines()
    return [json.loads(line) for line in lines if line.startswith("{")]


def test_logging_redacts_tokens_and_signed_file_keys(capsys):
    configure_logging()
    logger = logging.getLogger("redaction-test")

    logger.info(
        "sensitive log",
        extra={
            "authorization": "Bearer super-secret",
            "extra": {
                "file_key": "https://bucket.example.com/a.pdf?X-Amz-Signature=abc123&X-Amz-Expires=60",
                "user": "owner@example.com",
            },
        },
    )

    payload = _log_lines(capsys)[-1]
    assert payload["authorization"] == "[REDACTED]"
    assert "abc123" not in payload["file_key"]
    assert "[REDACTED_TOKEN]" in payload["file_key"]
    assert payload["user"] == "[REDACTED_EMAIL]"


def test_redact_masks_bearer_tokens():
    assert redact("Authorization: Bearer abc.def-123") == "Authorization: Bearer [REDACTED_TOKEN]"


def test_reservation_events_are_structured(async_session_maker, capsys):
    async def _scenario():
        async with async_session_maker() as session:
            org = await organizations_service.create_organization(session, "Logged Org", limit_bytes=100)
            await session.commit()
            reservation_id = await storage_quota_service.reserve_storage(session, org.org_id, 60)
            await storage_quota_service.commit_reservation(session, reservation_id)
            try:
                await storage_quota_service.reserve_storage(session, org.org_id, 60)
            except storage_quota_service.StorageQuotaExceeded:
                pass
            return org.org_id, reservation_id

    configure_logging()
    org_id, reservation_id = asyncio.run(_scenario())

    events = {line["message"]: line for line in _log_lines(capsys)}
    assert events["storage_reservation_created"]["reservation_id"] == str(reservation_id)
    assert events["storage_reservation_committed"]["bytes_reserved"] == 60
    rejected = events["org_storage_quota_rejected"]
    assert rejected["level"] == "WARNING"
    assert rejected["org_id"] == str(org_id)
    assert rejected["available_bytes"] == 40


def test_unhandled_exception_logs_request_id(capsys):
    app = create_app(settings)

    @app.get("/_test/boom")
    async def boom():  # pragma: no cover - executed in test client
        raise RuntimeError("boom")

    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/_test/boom", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 500
    assert response.json()["request_id"] == "req-123"
    unhandled = next(line for line in reversed(_log_lines(capsys)) if line["message"] == "unhandled_exception")
    assert unhandled["request_id"] == "req-123"
    assert unhandled["error_type"] == "RuntimeError"
