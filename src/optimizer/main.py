"""FastAPI application entry point."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import AppConfig
from .dependencies import include_routers, start_background_tasks, stop_background_tasks
from .logging import configure_logging


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    await start_background_tasks(app)
    try:
        yield
    finally:
        await stop_background_tasks(app)


def create_app(config: AppConfig | None = None, **overrides: object) -> FastAPI:
    """Build FastAPI instance with configured dependencies.

    ``overrides`` are forwarded to :func:`include_routers` (``database``,
    ``backend``, ``destination``) so tests can inject doubles.
    """
    configure_logging()
    cfg = config or AppConfig.build_default()
    app = FastAPI(title="Image Optimizer", lifespan=_lifespan)
    include_routers(app, cfg, **overrides)  # type: ignore[arg-type]
    return app
