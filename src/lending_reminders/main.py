from __future__ import annotations

import logging

from fastapi import FastAPI

from .api import router
from .config import get_settings

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if settings.reminder_store_backend == "inmemory":
        logger.warning("reminder history is kept in memory; set REMINDER_STORE_BACKEND=postgres to persist it")

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.include_router(router)
    return app


app = create_app()
