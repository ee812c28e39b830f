import pytest
from fastapi.testclient import TestClient

from paycore.api.routes import health as health_routes
from paycore.main import app


async def _ok_check() -> dict[str, str]:
    return {"status": "ok"}


def _patch_checks(monkeypatch, **overrides) -> None:
    monkeypatch.setattr(health_routes, "_check_database", overrides.get("database", _ok_check))
    monkeypatch.setattr(health_routes, "_check_redis", overrides.get("redis", _ok_check))
    monkeypatch.setattr(health_routes, "_check_celery_worker", overrides.get("celery", _ok_check))


def test_health_ok(monkeypatch) -> None:
    _patch_checks(monkeypatch)

    client = TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "checks": {
            "database": {"status": "ok"},
            "redis": {"status": "ok"},
            "celery": {"status": "ok"},
        },
    }


def test_live_needs_no_dependencies() -> None:
    client = TestClient(app)
    response = client.get("/live")
    assert response.status_code == 200
    assert response.json() == {"status": "live"}


def test_health_returns_503_when_dependency_failed(monkeypatch) -> None:
    async def _failed_redis() -> dict[str, str]:
        return {"status": "failed", "error": "redis down"}

    _patch_checks(monkeypatch, redis=_failed_redis)

    client = TestClient(app)
    response = client.get("/health")

    assert response.status_code == 503
    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["checks"]["redis"] == {"status": "failed", "error": "redis down"}


def test_ready_reports_not_ready(monkeypatch) -> None:
    async def _failed_database() -> dict[str, str]:
        return {"status": "failed", "error": "connection refused"}

    _patch_checks(monkeypatch, database=_failed_database)

    client = TestClient(app)
    response = client.get("/ready")

    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"


@pytest.mark.asyncio
async def test_database_check_reports_exception(monkeypatch) -> None:
    class _BrokenSession:
        async def __aenter__(self):
            raise RuntimeError("connection refused")

        async def __aexit__(self, exc_type, exc, tb) -> bool:
            return False

    monkeypatch.setattr(health_routes, "SessionLocal", lambda: _BrokenSession())

    result = await health_routes._check_database()
    assert result == {"status": "failed", "error": "connection refused"}


def test_celery_check_reports_missing_workers(monkeypatch) -> None:
    class _Inspector:
        def ping(self):
            return None

    class _Control:
        def inspect(self, timeout: float):
            return _Inspector()

    monkeypatch.setattr(health_routes.celery_app, "control", _Control())

    result = health_routes._ping_celery_workers()
    assert result == {"status": "failed", "error": "no celery workers responded to ping"}
