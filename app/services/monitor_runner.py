from __future__ import annotations

import asyncio
import logging
import threading

from app.core.config import Settings
from app.core.monitor_config import ConfigError
from app.services.monitor_models import RunSummary
from app.services.monitor_service import MonitorService

logger = logging.getLogger(__name__)

_monitor_run_lock = threading.Lock()


class MonitorBusyError(Exception):
    pass


async def run_monitor_once(settings: Settings) -> RunSummary:
    # One state file has one writer: runs never overlap within the process.
    if not _monitor_run_lock.acquire(blocking=False):
        raise MonitorBusyError("A monitor run is already in progress.")
    try:
        service = MonitorService.from_settings(settings)
        return await service.run()
    finally:
        _monitor_run_lock.release()


def is_monitor_running() -> bool:
    return _monitor_run_lock.locked()


async def poll_forever(settings: Settings, interval_seconds: float) -> None:
    logger.info("Monitor polling started interval_seconds=%s", interval_seconds)
    while True:
        try:
            await run_monitor_once(settings)
        except MonitorBusyError:
            logger.info("Skipping scheduled monitor run, previous run still active")
        except ConfigError as exc:
            logger.error("Scheduled monitor run skipped, invalid config: %s", exc)
        except Exception:
            logger.exception("Scheduled monitor run crashed")
        await asyncio.sleep(interval_seconds)
