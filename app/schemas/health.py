from datetime import datetime

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    version: str
    monitor_config_found: bool
    monitor_polling_enabled: bool
    monitor_run_in_progress: bool
    timestamp: datetime
