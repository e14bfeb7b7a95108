"""Batch dispatcher coordinating submissions and deliveries."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from ..domain.clock import utcnow
from ..jobs.jobs_errors import SubmissionError
from ..jobs.jobs_models import Item
from ..jobs.jobs_repository import JobRepository
from ..logging import bind_job_context, clear_job_context
from .dispatch_backends import DestinationClient, ProcessingBackend, SubmissionRequest

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchReport:
    """Submission outcome per item of one batch."""

    job_id: str
    accepted: list[str] = field(default_factory=list)
    rejected: dict[str, str] = field(default_factory=dict)

    @property
    def submitted_count(self) -> int:
        return len(self.accepted) + len(self.rejected)


@dataclass(slots=True)
class PushReport:
    pushed_count: int = 0
    failed_count: int = 0
    errors: list[str] = field(default_factory=list)


class Dispatcher:
    """Submit queued items in bounded batches and push approved results.

    Submissions are fire-and-forget: only the backend's acceptance is awaited.
    Completion arrives through the store and is observed by polling.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        backend: ProcessingBackend,
        destination: DestinationClient,
        batch_size: int = 10,
        concurrency: int = 5,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.repository = repository
        self.backend = backend
        self.destination = destination
        self.batch_size = batch_size
        self._concurrency = max(1, concurrency)
        self._clock = clock or utcnow
        self._logger = logging.getLogger(__name__)

    @staticmethod
    async def _run_sync(func: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        """Execute ``func`` in a worker thread to avoid blocking the event loop."""

        return await asyncio.to_thread(func, *args, **kwargs)

    async def _bounded(self, calls: Iterable[Callable[[], Awaitable[None]]]) -> None:
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _guarded(call: Callable[[], Awaitable[None]]) -> None:
            async with semaphore:
                await call()

        await asyncio.gather(*(_guarded(call) for call in calls))

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------
    async def dispatch_batch(self, job_id: str) -> DispatchReport:
        """Claim up to ``batch_size`` queued items and submit them concurrently."""

        bind_job_context(job_id=job_id)
        try:
            batch = await self._run_sync(
                self.repository.claim_for_dispatch,
                job_id,
                limit=self.batch_size,
                now=self._clock(),
            )
            report = DispatchReport(job_id=job_id)
            if not batch.items:
                return report

            def _submit(item: Item) -> Callable[[], Awaitable[None]]:
                async def _call() -> None:
                    request = SubmissionRequest(
                        job_id=job_id,
                        item_id=item.id,
                        attempt_number=item.attempt_number,
                        source_ref=item.source_ref,
                        prompt=batch.prompt,
                        ai_model=batch.ai_model,
                    )
                    await self._submit_one(request, report)

                return _call

            await self._bounded(_submit(item) for item in batch.items)
            self._logger.info(
                "dispatch.batch.submitted",
                extra={
                    "job_id": job_id,
                    "accepted": len(report.accepted),
                    "rejected": len(report.rejected),
                },
            )
            return report
        finally:
            clear_job_context()

    async def _submit_one(self, request: SubmissionRequest, report: DispatchReport) -> None:
        try:
            receipt = await self.backend.submit(request)
        except SubmissionError as exc:
            await self._reject(request, str(exc), report)
            return
        except Exception as exc:  # pragma: no cover - unexpected driver failure
            self._logger.exception(
                "dispatch.submit.unexpected_error",
                extra={"job_id": request.job_id, "item_id": request.item_id},
            )
            await self._reject(request, f"Unexpected submission error: {exc}", report)
            return
        await self._run_sync(
            self.repository.mark_submission,
            request.item_id,
            provider_reference=receipt.provider_reference,
            now=self._clock(),
        )
        report.accepted.append(request.item_id)

    async def _reject(self, request: SubmissionRequest, message: str, report: DispatchReport) -> None:
        self._logger.warning(
            "dispatch.submit.rejected",
            extra={"job_id": request.job_id, "item_id": request.item_id, "error": message},
        )
        await self._run_sync(
            self.repository.record_processing_result,
            request.item_id,
            succeeded=False,
            error_message=message,
            attempt_number=request.attempt_number,
            now=self._clock(),
        )
        report.rejected[request.item_id] = message

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    async def push_approved(self, job_id: str) -> PushReport:
        """Deliver every approved item of the job to its destination."""

        bind_job_context(job_id=job_id)
        try:
            snapshot = await self._run_sync(self.repository.get_job, job_id)
            owner_ref = snapshot.job.owner_ref
            items = await self._run_sync(self.repository.begin_push, job_id, now=self._clock())
            report = PushReport()

            def _push(item: Item) -> Callable[[], Awaitable[None]]:
                async def _call() -> None:
                    await self._push_one(owner_ref, item, report)

                return _call

            await self._bounded(_push(item) for item in items)
            await self._run_sync(
                self.repository.finish_push,
                job_id,
                pushed=report.pushed_count,
                failed=report.failed_count,
                errors=report.errors,
                now=self._clock(),
            )
            self._logger.info(
                "dispatch.push.finished",
                extra={
                    "job_id": job_id,
                    "pushed": report.pushed_count,
                    "failed": report.failed_count,
                },
            )
            return report
        finally:
            clear_job_context()

    async def _push_one(self, owner_ref: str, item: Item, report: PushReport) -> None:
        try:
            await self.destination.push(owner_ref, item)
        except SubmissionError as exc:
            message = str(exc)
        except Exception as exc:  # pragma: no cover - unexpected driver failure
            self._logger.exception(
                "dispatch.push.unexpected_error",
                extra={"job_id": item.job_id, "item_id": item.id},
            )
            message = f"Unexpected delivery error: {exc}"
        else:
            await self._run_sync(
                self.repository.record_push_result, item.id, succeeded=True, now=self._clock()
            )
            report.pushed_count += 1
            return
        await self._run_sync(
            self.repository.record_push_result,
            item.id,
            succeeded=False,
            error_message=message,
            now=self._clock(),
        )
        report.failed_count += 1
        report.errors.append(message)


__all__ = ["DispatchReport", "Dispatcher", "PushReport"]
