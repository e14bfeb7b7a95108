"""Service facade tying the selector, builder, store and dispatcher together."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from ..approval.approval_gate import ApprovalGate
from ..config import DEFAULT_AI_MODEL
from ..dispatch.dispatcher import Dispatcher, DispatchReport, PushReport
from ..dispatch.retry import RetryManager
from ..domain.deadlines import ApprovalDeadline
from ..selection import CatalogItem, Selection, SelectionResult, compute_selection
from .jobs_builder import OwnerAuthorizer, build_job
from .jobs_errors import InvalidTransitionError
from .jobs_models import Item, Job, JobConfig, JobSnapshot, JobStatus, QueueSummary
from .jobs_repository import JobRepository, RetryReport

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers job lifecycle events to users (email, chat, ...)."""

    def job_status_changed(self, job: Job, previous: JobStatus | None) -> None:  # pragma: no cover
        ...


@dataclass(slots=True)
class LoggingNotifier:
    """Default notifier writing one structured log line per transition."""

    log: logging.Logger = field(default_factory=lambda: logger)

    def job_status_changed(self, job: Job, previous: JobStatus | None) -> None:
        self.log.info(
            "jobs.notify.status_changed",
            extra={
                "job_id": job.id,
                "owner_ref": job.owner_ref,
                "from": previous.value if previous else None,
                "to": job.status.value,
                "failed_count": job.failed_count,
            },
        )


@dataclass(slots=True)
class CreatedJob:
    job: Job
    selection: SelectionResult


@dataclass(slots=True)
class JobService:
    """Coordinates job creation, operator actions and delivery."""

    repository: JobRepository
    dispatcher: Dispatcher
    retry_manager: RetryManager
    approval_gate: ApprovalGate
    authorizer: OwnerAuthorizer
    presets: Mapping[str, str] = field(default_factory=dict)
    supported_models: Collection[str] = field(default_factory=lambda: [DEFAULT_AI_MODEL])
    default_model: str = DEFAULT_AI_MODEL
    notifier: Notifier = field(default_factory=LoggingNotifier)

    def _emit(self, previous: JobStatus | None, job: Job) -> None:
        if previous is not job.status:
            self.notifier.job_status_changed(job, previous)

    def _current_job(self, job_id: str) -> Job:
        return self.repository.get_job(job_id).job

    def _status_of(self, job_id: str) -> JobStatus:
        return self._current_job(job_id).status

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------
    def create_job(
        self,
        *,
        owner_ref: str,
        catalog: Sequence[CatalogItem],
        selection: Selection,
        config: JobConfig,
    ) -> CreatedJob:
        """Resolve the selection, validate it and persist a pending job."""

        result = compute_selection(catalog, selection)
        submission = build_job(
            result,
            config,
            owner_ref=owner_ref,
            authorizer=self.authorizer,
            presets=self.presets,
            supported_models=self.supported_models,
            default_model=self.default_model,
        )
        job = self.repository.create_job(submission)
        self._emit(None, job)
        return CreatedJob(job=job, selection=result)

    def get_job(self, job_id: str) -> tuple[JobSnapshot, ApprovalDeadline | None]:
        snapshot = self.repository.get_job(job_id)
        return snapshot, self.approval_gate.countdown(snapshot)

    def list_jobs(
        self,
        *,
        owner_ref: str | None = None,
        statuses: Iterable[JobStatus | str] | None = None,
        limit: int = 50,
    ) -> list[Job]:
        return self.repository.list_jobs(owner_ref=owner_ref, statuses=statuses, limit=limit)

    def list_queue(
        self, owner_ref: str, *, statuses: Iterable[JobStatus | str] | None = None
    ) -> QueueSummary:
        return self.repository.list_queue(owner_ref, statuses=statuses)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------
    def approve_job(self, job_id: str) -> JobSnapshot:
        previous = self._status_of(job_id)
        try:
            snapshot = self.repository.approve_job(job_id)
        except InvalidTransitionError:
            # an overdue approval cancels the job before refusing
            self._emit(previous, self._current_job(job_id))
            raise
        self._emit(previous, snapshot.job)
        return snapshot

    def cancel_job(self, job_id: str) -> JobSnapshot:
        previous = self._status_of(job_id)
        snapshot = self.repository.cancel_job(job_id)
        self._emit(previous, snapshot.job)
        return snapshot

    def pause_job(self, job_id: str) -> JobSnapshot:
        previous = self._status_of(job_id)
        snapshot = self.repository.pause_job(job_id)
        self._emit(previous, snapshot.job)
        return snapshot

    def resume_job(self, job_id: str) -> JobSnapshot:
        previous = self._status_of(job_id)
        snapshot = self.repository.resume_job(job_id)
        self._emit(previous, snapshot.job)
        return snapshot

    def expire_job(self, job_id: str) -> JobSnapshot:
        """Run the approval gate for one job right away."""

        snapshot = self.repository.get_job(job_id)
        decision = self.approval_gate.check(snapshot)
        self._emit(snapshot.job.status, decision.snapshot.job)
        return decision.snapshot

    def discard_job(self, job_id: str) -> int:
        """Delete the job and everything recorded for it."""

        return self.repository.discard_job(job_id)

    def retry_item(self, item_id: str) -> Item:
        job_id = self.repository.get_item(item_id).job_id
        previous = self._status_of(job_id)
        item = self.retry_manager.retry_item(item_id)
        self._emit(previous, self._current_job(job_id))
        return item

    def retry_all_failed(self, job_id: str) -> RetryReport:
        previous = self._status_of(job_id)
        report = self.retry_manager.retry_all_failed(job_id)
        self._emit(previous, self.repository.get_job(job_id).job)
        return report

    def record_processing_result(
        self,
        item_id: str,
        *,
        succeeded: bool,
        result_ref: str | None = None,
        error_message: str | None = None,
        attempt_number: int | None = None,
    ) -> JobSnapshot:
        item = self.repository.get_item(item_id)
        previous = self._status_of(item.job_id)
        snapshot = self.repository.record_processing_result(
            item_id,
            succeeded=succeeded,
            result_ref=result_ref,
            error_message=error_message,
            attempt_number=attempt_number,
        )
        self._emit(previous, snapshot.job)
        return snapshot

    # ------------------------------------------------------------------
    # Dispatch and delivery
    # ------------------------------------------------------------------
    async def dispatch(self, job_id: str) -> DispatchReport:
        previous = await asyncio.to_thread(self._status_of, job_id)
        report = await self.dispatcher.dispatch_batch(job_id)
        self._emit(previous, await asyncio.to_thread(self._current_job, job_id))
        return report

    async def push(self, job_id: str) -> PushReport:
        previous = await asyncio.to_thread(self._status_of, job_id)
        report = await self.dispatcher.push_approved(job_id)
        self._emit(previous, await asyncio.to_thread(self._current_job, job_id))
        return report


__all__ = ["CreatedJob", "JobService", "LoggingNotifier", "Notifier"]
