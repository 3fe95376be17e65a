import logging

from fastapi import APIRouter, HTTPException, status

from app.core.config import get_settings
from app.core.monitor_config import ConfigError
from app.schemas.monitor import MonitorRunResponse, MonitorRunStatus, MonitorStateResponse
from app.services.monitor_models import RunSummary
from app.services.monitor_runner import MonitorBusyError, is_monitor_running, run_monitor_once
from app.services.monitor_service import MonitorService

router = APIRouter(prefix="/monitor", tags=["monitor"])
logger = logging.getLogger(__name__)


@router.post("/runs", response_model=MonitorRunResponse)
async def trigger_monitor_run() -> MonitorRunResponse:
    settings = get_settings()
    try:
        summary = await run_monitor_once(settings)
    except ConfigError as exc:
        logger.error("Monitor run rejected, invalid config: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    except MonitorBusyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _to_run_response(summary)


@router.get("/state", response_model=MonitorStateResponse)
def get_monitor_state() -> MonitorStateResponse:
    settings = get_settings()
    try:
        service = MonitorService.from_settings(settings)
    except ConfigError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    return MonitorStateResponse(
        **service.state_snapshot(),
        run_in_progress=is_monitor_running(),
    )


def _to_run_response(summary: RunSummary) -> MonitorRunResponse:
    return MonitorRunResponse(
        status=MonitorRunStatus(summary.status),
        seen=summary.seen,
        delivered=summary.delivered,
        skipped=summary.skipped,
        failed=summary.failed,
        error=summary.error,
        warnings=summary.warnings,
        started_at=summary.started_at,
        finished_at=summary.finished_at,
    )
