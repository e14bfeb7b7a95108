"""Dependency wiring helpers."""

from __future__ import annotations

import asyncio
import contextlib

from fastapi import FastAPI

from .approval.approval_gate import ApprovalGate
from .config import AppConfig, Database, build_database
from .dispatch.dispatch_backends import (
    DestinationClient,
    HttpDestinationClient,
    HttpProcessingBackend,
    ProcessingBackend,
)
from .dispatch.dispatcher import Dispatcher
from .dispatch.retry import RetryManager, RetryPolicy
from .jobs.jobs_api import router as jobs_router
from .jobs.jobs_builder import AllowListAuthorizer
from .jobs.jobs_repository import JobRepository
from .jobs.jobs_service import JobService
from .lifecycle import run_periodic_dispatch
from .polling.job_sources import RepositoryJobSource
from .polling.reconciliation import ReconciliationPoller


def build_job_service(
    config: AppConfig,
    database: Database,
    *,
    backend: ProcessingBackend | None = None,
    destination: DestinationClient | None = None,
) -> JobService:
    """Assemble the job service and its collaborators from configuration."""
    repository = JobRepository(
        database.session_factory,
        approval_window_seconds=config.approval_window_seconds,
    )
    dispatcher = Dispatcher(
        repository=repository,
        backend=backend
        or HttpProcessingBackend(
            endpoint=config.processing_backend_url,
            callback_url=config.processing_callback_url,
            api_key=config.processing_backend_api_key,
            timeout_seconds=config.http_timeout_seconds,
        ),
        destination=destination
        or HttpDestinationClient(
            endpoint=config.destination_url,
            api_key=config.destination_api_key,
            timeout_seconds=config.http_timeout_seconds,
        ),
        batch_size=config.dispatch_batch_size,
        concurrency=config.dispatch_concurrency,
    )
    retry_manager = RetryManager(
        repository=repository,
        policy=RetryPolicy(
            max_attempts=config.retry_max_attempts,
            backoff_base_seconds=config.retry_backoff_base_seconds,
        ),
    )
    return JobService(
        repository=repository,
        dispatcher=dispatcher,
        retry_manager=retry_manager,
        approval_gate=ApprovalGate(repository),
        authorizer=AllowListAuthorizer(frozenset(config.allowed_owner_refs)),
        presets=dict(config.presets),
        supported_models=list(config.supported_models),
        default_model=config.default_ai_model,
    )


def include_routers(
    app: FastAPI,
    config: AppConfig,
    *,
    database: Database | None = None,
    backend: ProcessingBackend | None = None,
    destination: DestinationClient | None = None,
) -> None:
    """Mount module routers and attach services."""
    db = database or build_database(config.database_url)
    job_service = build_job_service(config, db, backend=backend, destination=destination)

    app.state.config = config
    app.state.database = db
    app.state.job_repo = job_service.repository
    app.state.job_service = job_service
    app.state.approval_gate = job_service.approval_gate
    app.state.poller = ReconciliationPoller(
        RepositoryJobSource(job_service.repository),
        interval_seconds=config.poll_interval_seconds,
        gate=job_service.approval_gate,
    )

    app.include_router(jobs_router)


async def start_background_tasks(app: FastAPI) -> None:
    """Start the periodic dispatch loop unless disabled by configuration."""
    config: AppConfig = app.state.config
    if not config.dispatch_loop_enabled:
        app.state.dispatch_task = None
        app.state.dispatch_shutdown_event = None
        return
    shutdown_event = asyncio.Event()
    job_service: JobService = app.state.job_service
    app.state.dispatch_shutdown_event = shutdown_event
    app.state.dispatch_task = asyncio.create_task(
        run_periodic_dispatch(
            job_service=job_service,
            approval_gate=job_service.approval_gate,
            shutdown_event=shutdown_event,
            interval_seconds=config.dispatch_loop_interval_seconds,
        ),
        name="optimizer-dispatch-loop",
    )


async def stop_background_tasks(app: FastAPI) -> None:
    shutdown_event = getattr(app.state, "dispatch_shutdown_event", None)
    if shutdown_event is not None:
        shutdown_event.set()
    task: asyncio.Task[None] | None = getattr(app.state, "dispatch_task", None)
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    app.state.dispatch_task = None
    app.state.dispatch_shutdown_event = None
    await app.state.poller.close()


__all__ = [
    "build_job_service",
    "include_routers",
    "start_background_tasks",
    "stop_background_tasks",
]
