import asyncio
import logging

from fastapi import FastAPI

from app.api.router import api_router
from app.core.config import get_settings
from app.services.monitor_runner import poll_forever


logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_application() -> FastAPI:
    _configure_logging()
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_url=f"{settings.api_prefix}/openapi.json",
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
    )

    app.include_router(api_router, prefix=settings.api_prefix)
    app.state.monitor_poll_task = None
    app.add_event_handler("startup", lambda: _start_monitor_polling(app))
    app.add_event_handler("shutdown", lambda: _stop_monitor_polling(app))

    return app


def _start_monitor_polling(app: FastAPI) -> None:
    settings = get_settings()
    interval_seconds = settings.monitor_poll_interval_seconds
    if interval_seconds <= 0:
        logger.info("Monitor polling disabled; runs are triggered through the API")
        return
    app.state.monitor_poll_task = asyncio.get_running_loop().create_task(
        poll_forever(settings, interval_seconds),
    )


def _stop_monitor_polling(app: FastAPI) -> None:
    task = app.state.monitor_poll_task
    if task is None:
        return
    task.cancel()
    app.state.monitor_poll_task = None


app = create_application()
