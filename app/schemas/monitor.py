from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class MonitorRunStatus(StrEnum):
    completed = "completed"
    failed = "failed"
    aborted = "aborted"


class MonitorRunResponse(BaseModel):
    status: MonitorRunStatus
    seen: int
    delivered: int
    skipped: int
    failed: int
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime | None = None


class MonitorStateResponse(BaseModel):
    last_check_timestamp: datetime
    processed_count: int
    succeeded_count: int
    failed_count: int
    consecutive_failures: int
    last_failure_notified_at: datetime | None = None
    run_in_progress: bool = False
