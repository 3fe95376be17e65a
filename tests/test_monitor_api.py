import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import app
from app.services import monitor_runner
from app.services.meeting_source_client import MeetingNotesApiClient, UpstreamFetchError
from app.services.monitor_models import MeetingRecord
from app.services.state_ledger import clear_monitor_state_backend_cache


class _MockResponse:
    status = 200

    def __enter__(self) -> "_MockResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        return None

    def read(self) -> bytes:
        return b"ok"


@pytest.fixture(autouse=True)
def reset_monitor_state(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "environments": {"production": {"url": "https://hooks.example.com/meetings"}},
                "webhook": {"secret": "s3cret", "maxRetries": 1},
                "monitoring": {"stateFilePath": str(tmp_path / "state.json")},
                "organizations": [{"name": "OMAI", "emailDomains": ["omaihq.com"]}],
            },
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("MONITOR_CONFIG_PATH", str(config_path))
    clear_monitor_state_backend_cache()
    get_settings.cache_clear()
    yield
    clear_monitor_state_backend_cache()
    get_settings.cache_clear()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture
def posted_bodies(monkeypatch: pytest.MonkeyPatch) -> list[dict]:
    bodies: list[dict] = []

    def fake_fetch_meetings(self, *, since: datetime) -> list[MeetingRecord]:  # type: ignore[no-untyped-def]
        return [
            MeetingRecord(
                id="doc-1",
                title="Weekly sync",
                created_at=datetime.now(UTC) - timedelta(hours=2),
                attendees=frozenset({"josh@omaihq.com"}),
            ),
        ]

    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        bodies.append(json.loads(req.data.decode("utf-8")))
        return _MockResponse()

    monkeypatch.setattr(MeetingNotesApiClient, "fetch_meetings", fake_fetch_meetings)
    monkeypatch.setattr("app.services.webhook_delivery.request.urlopen", fake_urlopen)
    return bodies


def test_monitor_run_delivers_and_updates_state(client: TestClient, posted_bodies: list[dict]) -> None:
    response = client.post("/api/monitor/runs")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "completed"
    assert payload["seen"] == 1
    assert payload["delivered"] == 1
    assert payload["failed"] == 0
    assert posted_bodies == [{"meetingId": "doc-1", "title": "Weekly sync", "organization": "OMAI"}]

    state_response = client.get("/api/monitor/state")

    assert state_response.status_code == 200
    state = state_response.json()
    assert state["processed_count"] == 1
    assert state["succeeded_count"] == 1
    assert state["consecutive_failures"] == 0
    assert state["run_in_progress"] is False


def test_repeated_runs_do_not_redeliver(client: TestClient, posted_bodies: list[dict]) -> None:
    client.post("/api/monitor/runs")
    second = client.post("/api/v1/monitor/runs")

    assert second.status_code == 200
    assert second.json()["delivered"] == 0
    assert len(posted_bodies) == 1


def test_monitor_run_reports_fetch_failures(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_fetch(self, *, since: datetime):  # type: ignore[no-untyped-def]
        raise UpstreamFetchError("Meeting source HTTP 502: bad gateway")

    monkeypatch.setattr(MeetingNotesApiClient, "fetch_meetings", failing_fetch)

    response = client.post("/api/monitor/runs")

    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert response.json()["error"] == "Meeting source HTTP 502: bad gateway"


def test_monitor_run_rejects_overlapping_runs(client: TestClient, posted_bodies: list[dict]) -> None:
    assert monitor_runner._monitor_run_lock.acquire(blocking=False)
    try:
        response = client.post("/api/monitor/runs")
        health = client.get("/api/health")
    finally:
        monitor_runner._monitor_run_lock.release()

    assert response.status_code == 409
    assert health.json()["monitor_run_in_progress"] is True
    assert posted_bodies == []


def test_missing_config_returns_service_unavailable(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("MONITOR_CONFIG_PATH", str(tmp_path / "missing.json"))
    get_settings.cache_clear()

    run_response = client.post("/api/monitor/runs")
    state_response = client.get("/api/monitor/state")

    assert run_response.status_code == 503
    assert "not found" in run_response.json()["detail"]
    assert state_response.status_code == 503
