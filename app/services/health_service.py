from datetime import UTC, datetime
from pathlib import Path

from app.core.config import Settings
from app.schemas.health import HealthResponse
from app.services.monitor_runner import is_monitor_running


class HealthService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def get_status(self) -> HealthResponse:
        config_found = Path(self.settings.monitor_config_path).expanduser().exists()
        return HealthResponse(
            status="ok" if config_found else "degraded",
            service=self.settings.app_name,
            version=self.settings.app_version,
            monitor_config_found=config_found,
            monitor_polling_enabled=self.settings.monitor_poll_interval_seconds > 0,
            monitor_run_in_progress=is_monitor_running(),
            timestamp=datetime.now(UTC),
        )
