from sqlalchemy.exc import OperationalError

from quota_ledger.infra.db import get_db_session
from quota_ledger.main import app
from quota_ledger.settings import settings


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert client.head("/healthz").status_code == 200


def test_readyz_reports_database_reachable(client):
    response = client.get("/readyz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    assert payload["checks"][0]["name"] == "db"
    assert payload["checks"][0]["detail"] == {"message": "database reachable"}


def test_readyz_returns_503_when_database_fails(client):
    class _BrokenSession:
        async def execute(self, *args, **kwargs):
            raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    async def _broken_db_session():
        yield _BrokenSession()

    app.dependency_overrides[get_db_session] = _broken_db_session

    response = client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["checks"][0]["detail"] == {
        "message": "database check failed",
        "error": "OperationalError",
    }


def test_openapi_title_uses_app_name(client):
    assert client.get("/openapi.json").json()["info"]["title"] == settings.app_name
