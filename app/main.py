from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api import router
from logging_config import configure_logging
from services.worker import build_default_worker
from settings import get_settings


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    worker = build_default_worker()
    worker.start()
    try:
        yield
    finally:
        worker.shutdown(timeout=get_settings().stop_timeout_seconds)
        build_default_worker.cache_clear()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Room Telemetry Worker",
        description="Reconciles raw room telemetry into live ACH state in the background.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app

app = create_app()
