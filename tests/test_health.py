from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import app

client = TestClient(app)


@pytest.fixture(autouse=True)
def reset_settings() -> None:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_health_endpoint_returns_expected_shape(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{}", encoding="utf-8")
    monkeypatch.setenv("MONITOR_CONFIG_PATH", str(config_path))

    response = client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["monitor_config_found"] is True
    assert data["monitor_polling_enabled"] is False
    assert data["monitor_run_in_progress"] is False
    assert "service" in data
    assert "timestamp" in data


def test_health_endpoint_is_degraded_without_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MONITOR_CONFIG_PATH", str(tmp_path / "missing.json"))
    monkeypatch.setenv("MONITOR_POLL_INTERVAL_SECONDS", "30")

    data = client.get("/api/health").json()

    assert data["status"] == "degraded"
    assert data["monitor_config_found"] is False
    assert data["monitor_polling_enabled"] is True
