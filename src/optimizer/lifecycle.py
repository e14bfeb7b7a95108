"""Lifecycle helpers wiring background tasks for FastAPI startup."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from .approval.approval_gate import ApprovalGate
from .domain.clock import utcnow
from .jobs.jobs_errors import InvalidTransitionError
from .jobs.jobs_models import JobStatus
from .jobs.jobs_service import JobService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchCycleResult:
    dispatched: list[str] = field(default_factory=list)
    pushed: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)


async def dispatch_cycle_once(
    *,
    job_service: JobService,
    approval_gate: ApprovalGate,
    now: datetime | None = None,
) -> DispatchCycleResult:
    """Run one pass: expire overdue approvals, dispatch active jobs, push approved ones."""

    current = now or utcnow()
    result = DispatchCycleResult()
    repository = job_service.repository

    result.expired = await asyncio.to_thread(approval_gate.expire_overdue, now=current)

    active = await asyncio.to_thread(
        repository.list_job_ids, (JobStatus.PENDING, JobStatus.PROCESSING)
    )
    for job_id in active:
        try:
            report = await job_service.dispatch(job_id)
        except InvalidTransitionError:
            logger.debug("lifecycle.dispatch.skipped", extra={"job_id": job_id})
            continue
        if report.submitted_count:
            result.dispatched.append(job_id)

    approved = await asyncio.to_thread(repository.list_job_ids, (JobStatus.APPROVED,))
    approved += await asyncio.to_thread(repository.list_redelivery_job_ids)
    for job_id in approved:
        try:
            await job_service.push(job_id)
        except InvalidTransitionError:
            logger.debug("lifecycle.push.skipped", extra={"job_id": job_id})
            continue
        result.pushed.append(job_id)
    return result


async def run_periodic_dispatch(
    *,
    job_service: JobService,
    approval_gate: ApprovalGate,
    shutdown_event: asyncio.Event,
    interval_seconds: float = 10.0,
    clock: Callable[[], datetime] | None = None,
) -> None:
    """Execute dispatch cycles until ``shutdown_event`` is signalled."""

    interval = max(0.01, float(interval_seconds))
    tick = clock or utcnow
    try:
        while not shutdown_event.is_set():
            try:
                result = await dispatch_cycle_once(
                    job_service=job_service,
                    approval_gate=approval_gate,
                    now=tick(),
                )
            except Exception:  # pragma: no cover - defensive logging
                logger.exception("Dispatch cycle failed")
            else:
                if result.dispatched or result.pushed or result.expired:
                    logger.info(
                        "Dispatched %s jobs, pushed %s jobs and expired %s jobs",
                        len(result.dispatched),
                        len(result.pushed),
                        len(result.expired),
                    )
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
    except asyncio.CancelledError:  # pragma: no cover - shutdown path
        raise


__all__ = ["DispatchCycleResult", "dispatch_cycle_once", "run_periodic_dispatch"]
