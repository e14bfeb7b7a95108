"""Persistence layer for optimization jobs, their items and dispatch records.

The repository is the single source of truth for job and item status. Job
counters are never accepted from callers: they are recomputed from item rows
on every write and on every read. Writes that touch a job lock its row first
(``SELECT ... FOR UPDATE`` on PostgreSQL) so concurrent operator actions are
serialised.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..db.db_models import DispatchRecordModel, JobItemModel, OptimizationJobModel
from ..domain.clock import utcnow
from ..domain.deadlines import calculate_approval_expires_at
from ..domain.state_machine import (
    derive_counters,
    ensure_item_transition,
    ensure_job_transition,
    evaluate_processing_completion,
    evaluate_push_completion,
)
from ..exceptions import ensure_found, handle_sqlalchemy_errors
from ..selection.selection_service import is_vector_source
from .jobs_errors import (
    InvalidTransitionError,
    ItemNotFoundError,
    JobNotFoundError,
    RetryNotPermittedError,
)
from .jobs_models import (
    ApprovalMode,
    AttemptOutcome,
    BatchDispatch,
    Item,
    ItemStatus,
    Job,
    JobSnapshot,
    JobStats,
    JobStatus,
    JobSubmission,
    PresetType,
    QueueRecord,
    QueueSummary,
    TriggerType,
)

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from ..dispatch.retry import RetryPolicy

logger = logging.getLogger(__name__)

NO_SUCCESS_ERROR = "No images were processed successfully"
UNSUPPORTED_FORMAT_ERROR = "Unsupported image format"
RETRYABLE_JOB_STATUSES = frozenset(
    {
        JobStatus.PENDING,
        JobStatus.PROCESSING,
        JobStatus.PAUSED,
        JobStatus.AWAITING_APPROVAL,
        JobStatus.FAILED,
    }
)
DELIVERY_RETRY_JOB_STATUSES = frozenset(
    {JobStatus.APPROVED, JobStatus.COMPLETED, JobStatus.FAILED}
)
PROCESSING_RETRY_AFTER_APPROVAL_ERROR = "Processing failures cannot be retried after approval"


@dataclass(slots=True)
class RetryReport:
    """Outcome of a bulk retry: requeued items and the ones held back."""

    job_id: str
    requeued: list[str] = field(default_factory=list)
    held_back: dict[str, str] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.requeued)


def _to_job(model: OptimizationJobModel, stats: JobStats | None = None) -> Job:
    job = Job(
        id=model.id,
        owner_ref=model.owner_ref,
        status=JobStatus(model.status),
        item_count=model.item_count,
        processed_count=model.processed_count,
        pushed_count=model.pushed_count,
        failed_count=model.failed_count,
        created_at=model.created_at,
        updated_at=model.updated_at,
        ai_model=model.ai_model,
        approval_mode=ApprovalMode(model.approval_mode),
        trigger_type=TriggerType(model.trigger_type),
        group_count=model.group_count,
        preset_type=PresetType(model.preset_type) if model.preset_type else None,
        preset_id=model.preset_id,
        custom_prompt=model.custom_prompt,
        prompt=model.prompt,
        expires_at=model.expires_at,
        approved_at=model.approved_at,
        completed_at=model.completed_at,
        last_error=model.last_error,
    )
    if stats is not None:
        counters = derive_counters(stats)
        job.item_count = counters.item_count
        job.processed_count = counters.processed_count
        job.pushed_count = counters.pushed_count
        job.failed_count = counters.failed_count
    return job


def _to_item(model: JobItemModel) -> Item:
    return Item(
        id=model.id,
        job_id=model.job_id,
        group_ref=model.group_ref,
        image_ref=model.image_ref,
        source_ref=model.source_ref,
        status=ItemStatus(model.status),
        position=model.position,
        title=model.title,
        attempt_number=model.attempt_number,
        provider_reference=model.provider_reference,
        result_ref=model.result_ref,
        error_message=model.error_message,
        push_attempts=model.push_attempts,
        pushed_at=model.pushed_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _to_record(model: DispatchRecordModel) -> QueueRecord:
    return QueueRecord(
        item_id=model.item_id,
        attempt_number=model.attempt_number,
        dispatched_at=model.dispatched_at,
        outcome=AttemptOutcome(model.outcome),
        completed_at=model.completed_at,
        error_message=model.error_message,
    )


class JobRepository:
    """Manage optimization_job, job_item and dispatch_record rows."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        approval_window_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._approval_window_seconds = approval_window_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _now(self, now: datetime | None) -> datetime:
        return now or self._clock()

    @staticmethod
    def _load_job(session: Session, job_id: str, *, lock: bool = False) -> OptimizationJobModel:
        model = session.get(OptimizationJobModel, job_id, with_for_update=lock)
        return ensure_found(model, entity="Job", identifier=job_id, error=JobNotFoundError)

    @staticmethod
    def _load_item(session: Session, item_id: str, *, lock: bool = False) -> JobItemModel:
        model = session.get(JobItemModel, item_id, with_for_update=lock)
        return ensure_found(model, entity="Item", identifier=item_id, error=ItemNotFoundError)

    @staticmethod
    def _items(session: Session, job_id: str) -> list[JobItemModel]:
        stmt = (
            select(JobItemModel)
            .where(JobItemModel.job_id == job_id)
            .order_by(JobItemModel.sequence)
        )
        return list(session.scalars(stmt))

    @staticmethod
    def _refresh_counters(job: OptimizationJobModel, items: Iterable[JobItemModel]) -> JobStats:
        stats = JobStats.from_statuses(item.status for item in items)
        counters = derive_counters(stats)
        job.item_count = counters.item_count
        job.processed_count = counters.processed_count
        job.pushed_count = counters.pushed_count
        job.failed_count = counters.failed_count
        return stats

    @staticmethod
    def _set_status(job: OptimizationJobModel, target: JobStatus, now: datetime) -> None:
        previous = job.status
        job.status = ensure_job_transition(previous, target).value
        job.updated_at = now
        if previous == JobStatus.AWAITING_APPROVAL and target is not JobStatus.AWAITING_APPROVAL:
            job.expires_at = None
        if target is JobStatus.COMPLETED:
            job.completed_at = now
        logger.info(
            "jobs.status.changed",
            extra={"job_id": job.id, "from": previous, "to": target.value},
        )

    @staticmethod
    def _set_item_status(item: JobItemModel, target: ItemStatus, now: datetime) -> None:
        item.status = ensure_item_transition(item.status, target).value
        item.updated_at = now

    def _approve(self, job: OptimizationJobModel, items: Iterable[JobItemModel], now: datetime) -> None:
        self._set_status(job, JobStatus.APPROVED, now)
        job.approved_at = now
        for item in items:
            if item.status == ItemStatus.READY:
                self._set_item_status(item, ItemStatus.APPROVED, now)

    def _settle(
        self,
        job: OptimizationJobModel,
        items: list[JobItemModel],
        now: datetime,
    ) -> JobStats:
        """Recompute counters and move a processing job on once its items settle."""

        stats = self._refresh_counters(job, items)
        target = evaluate_processing_completion(job.status, job.approval_mode, stats)
        if target is JobStatus.AWAITING_APPROVAL:
            self._set_status(job, target, now)
            job.expires_at = calculate_approval_expires_at(
                now, window_seconds=self._approval_window_seconds
            )
        elif target is JobStatus.APPROVED:
            self._approve(job, items, now)
        elif target is JobStatus.FAILED:
            self._set_status(job, target, now)
            job.last_error = NO_SUCCESS_ERROR
        return self._refresh_counters(job, items)

    def _snapshot(self, session: Session, job: OptimizationJobModel) -> JobSnapshot:
        items = self._items(session, job.id)
        stats = JobStats.from_statuses(item.status for item in items)
        return JobSnapshot(
            job=_to_job(job, stats),
            items=[_to_item(item) for item in items],
            stats=stats,
        )

    def _stats_for(self, session: Session, job_ids: list[str]) -> dict[str, JobStats]:
        if not job_ids:
            return {}
        stmt = (
            select(JobItemModel.job_id, JobItemModel.status, func.count())
            .where(JobItemModel.job_id.in_(job_ids))
            .group_by(JobItemModel.job_id, JobItemModel.status)
        )
        statuses: dict[str, list[str]] = defaultdict(list)
        for job_id, status, count in session.execute(stmt):
            statuses[job_id].extend([status] * int(count))
        return {job_id: JobStats.from_statuses(statuses.get(job_id, [])) for job_id in job_ids}

    @staticmethod
    def _latest_record(
        session: Session, item_id: str, attempt_number: int | None = None
    ) -> DispatchRecordModel | None:
        stmt = select(DispatchRecordModel).where(DispatchRecordModel.item_id == item_id)
        if attempt_number is not None:
            stmt = stmt.where(DispatchRecordModel.attempt_number == attempt_number)
        stmt = stmt.order_by(DispatchRecordModel.dispatched_at.desc(), DispatchRecordModel.id.desc())
        return session.scalars(stmt.limit(1)).first()

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------
    def create_job(self, submission: JobSubmission, *, now: datetime | None = None) -> Job:
        """Persist ``submission`` as a pending job with queued items."""

        current = self._now(now)
        job_id = uuid.uuid4().hex
        with handle_sqlalchemy_errors(entity="job"), self._session_factory() as session:
            job = OptimizationJobModel(
                id=job_id,
                owner_ref=submission.owner_ref,
                status=JobStatus.PENDING.value,
                group_count=submission.group_count,
                preset_type=submission.preset_type.value,
                preset_id=submission.preset_id,
                custom_prompt=submission.custom_prompt,
                prompt=submission.prompt,
                ai_model=submission.ai_model,
                approval_mode=submission.approval_mode.value,
                trigger_type=submission.trigger_type.value,
                created_at=current,
                updated_at=current,
            )
            items = [
                JobItemModel(
                    id=uuid.uuid4().hex,
                    job_id=job_id,
                    sequence=index,
                    group_ref=spec.group_ref,
                    image_ref=spec.image_ref,
                    title=spec.title,
                    position=spec.position,
                    source_ref=spec.source_ref,
                    status=ItemStatus.QUEUED.value,
                    attempt_number=1,
                    created_at=current,
                    updated_at=current,
                )
                for index, spec in enumerate(submission.items)
            ]
            stats = self._refresh_counters(job, items)
            session.add(job)
            session.add_all(items)
            session.commit()
            logger.info(
                "jobs.created",
                extra={
                    "job_id": job_id,
                    "owner_ref": submission.owner_ref,
                    "item_count": stats.total,
                    "approval_mode": submission.approval_mode.value,
                },
            )
            return _to_job(job, stats)

    def get_job(self, job_id: str) -> JobSnapshot:
        """Return the job, its items and counters aggregated from the items."""

        with self._session_factory() as session:
            job = self._load_job(session, job_id)
            return self._snapshot(session, job)

    def get_item(self, item_id: str) -> Item:
        with self._session_factory() as session:
            return _to_item(self._load_item(session, item_id))

    def list_jobs(
        self,
        *,
        owner_ref: str | None = None,
        statuses: Iterable[JobStatus | str] | None = None,
        limit: int = 50,
    ) -> list[Job]:
        with self._session_factory() as session:
            stmt = select(OptimizationJobModel)
            if owner_ref is not None:
                stmt = stmt.where(OptimizationJobModel.owner_ref == owner_ref)
            if statuses is not None:
                values = [JobStatus(status).value for status in statuses]
                stmt = stmt.where(OptimizationJobModel.status.in_(values))
            stmt = stmt.order_by(OptimizationJobModel.created_at.desc()).limit(limit)
            models = list(session.scalars(stmt))
            stats = self._stats_for(session, [model.id for model in models])
            return [_to_job(model, stats[model.id]) for model in models]

    def list_queue(
        self,
        owner_ref: str,
        *,
        statuses: Iterable[JobStatus | str] | None = None,
    ) -> QueueSummary:
        """Jobs of ``owner_ref`` with item counts summarised by item status."""

        with self._session_factory() as session:
            stmt = select(OptimizationJobModel).where(OptimizationJobModel.owner_ref == owner_ref)
            if statuses is not None:
                values = [JobStatus(status).value for status in statuses]
                stmt = stmt.where(OptimizationJobModel.status.in_(values))
            stmt = stmt.order_by(OptimizationJobModel.created_at.desc())
            models = list(session.scalars(stmt))
            stats = self._stats_for(session, [model.id for model in models])
            counts: dict[str, int] = {status.value: 0 for status in ItemStatus}
            for job_stats in stats.values():
                for status, value in job_stats.as_dict().items():
                    counts[status] += value
            return QueueSummary(
                jobs=[_to_job(model, stats[model.id]) for model in models],
                counts_by_status=counts,
            )

    def list_job_ids(self, statuses: Iterable[JobStatus | str]) -> list[str]:
        values = [JobStatus(status).value for status in statuses]
        with self._session_factory() as session:
            stmt = (
                select(OptimizationJobModel.id)
                .where(OptimizationJobModel.status.in_(values))
                .order_by(OptimizationJobModel.created_at)
            )
            return list(session.scalars(stmt))

    def list_redelivery_job_ids(self) -> list[str]:
        """Completed jobs holding approved items queued for another delivery."""

        with self._session_factory() as session:
            retried = select(JobItemModel.job_id).where(
                JobItemModel.status == ItemStatus.APPROVED.value
            )
            stmt = (
                select(OptimizationJobModel.id)
                .where(
                    OptimizationJobModel.status == JobStatus.COMPLETED.value,
                    OptimizationJobModel.id.in_(retried),
                )
                .order_by(OptimizationJobModel.created_at)
            )
            return list(session.scalars(stmt))

    def list_attempts(self, item_id: str) -> list[QueueRecord]:
        with self._session_factory() as session:
            stmt = (
                select(DispatchRecordModel)
                .where(DispatchRecordModel.item_id == item_id)
                .order_by(DispatchRecordModel.dispatched_at, DispatchRecordModel.id)
            )
            return [_to_record(model) for model in session.scalars(stmt)]

    def last_attempt(self, item_id: str) -> QueueRecord | None:
        with self._session_factory() as session:
            record = self._latest_record(session, item_id)
            return _to_record(record) if record is not None else None

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def claim_for_dispatch(
        self, job_id: str, *, limit: int = 10, now: datetime | None = None
    ) -> BatchDispatch:
        """Move up to ``limit`` queued items to processing and log the attempts.

        Items whose source became unsupported since selection are skipped
        instead of being dispatched.
        """

        current = self._now(now)
        with handle_sqlalchemy_errors(entity="job"), self._session_factory() as session:
            job = self._load_job(session, job_id, lock=True)
            if job.status not in (JobStatus.PENDING, JobStatus.PROCESSING):
                raise InvalidTransitionError("job", job.status, JobStatus.PROCESSING.value)
            stmt = (
                select(JobItemModel)
                .where(
                    JobItemModel.job_id == job_id,
                    JobItemModel.status == ItemStatus.QUEUED.value,
                )
                .order_by(JobItemModel.sequence)
                .limit(limit)
                .with_for_update()
            )
            claimed: list[JobItemModel] = []
            skipped = 0
            for item in session.scalars(stmt):
                if is_vector_source(item.source_ref):
                    self._set_item_status(item, ItemStatus.SKIPPED, current)
                    item.error_message = UNSUPPORTED_FORMAT_ERROR
                    skipped += 1
                    continue
                self._set_item_status(item, ItemStatus.PROCESSING, current)
                item.provider_reference = None
                session.add(
                    DispatchRecordModel(
                        item_id=item.id,
                        attempt_number=item.attempt_number,
                        outcome=AttemptOutcome.IN_FLIGHT.value,
                        dispatched_at=current,
                    )
                )
                claimed.append(item)
            if (claimed or skipped) and job.status == JobStatus.PENDING:
                self._set_status(job, JobStatus.PROCESSING, current)
            session.flush()
            self._settle(job, self._items(session, job_id), current)
            session.commit()
            return BatchDispatch(
                job_id=job_id,
                items=[_to_item(item) for item in claimed],
                prompt=job.prompt,
                ai_model=job.ai_model,
            )

    def mark_submission(
        self, item_id: str, *, provider_reference: str | None, now: datetime | None = None
    ) -> None:
        """Store the backend task reference of an accepted submission."""

        current = self._now(now)
        with handle_sqlalchemy_errors(entity="item"), self._session_factory() as session:
            item = self._load_item(session, item_id, lock=True)
            if item.status != ItemStatus.PROCESSING:
                return
            item.provider_reference = provider_reference
            item.updated_at = current
            session.commit()

    def record_processing_result(
        self,
        item_id: str,
        *,
        succeeded: bool,
        result_ref: str | None = None,
        error_message: str | None = None,
        attempt_number: int | None = None,
        now: datetime | None = None,
    ) -> JobSnapshot:
        """Apply a completion signal written by the processing backend.

        Signals for an older attempt, for an item that is no longer processing,
        or for a cancelled job are discarded: only the dispatch record outcome
        is written.
        """

        current = self._now(now)
        outcome = AttemptOutcome.SUCCESS if succeeded else AttemptOutcome.FAILURE
        with handle_sqlalchemy_errors(entity="item"), self._session_factory() as session:
            item = self._load_item(session, item_id)
            job = self._load_job(session, item.job_id, lock=True)
            item = self._load_item(session, item_id, lock=True)
            attempt = attempt_number if attempt_number is not None else item.attempt_number

            record = self._latest_record(session, item_id, attempt)
            if record is not None and record.outcome == AttemptOutcome.IN_FLIGHT:
                record.outcome = outcome.value
                record.completed_at = current
                record.error_message = None if succeeded else error_message

            discard_reason: str | None = None
            if job.status == JobStatus.CANCELLED:
                discard_reason = "job_cancelled"
            elif attempt != item.attempt_number:
                discard_reason = "stale_attempt"
            elif item.status != ItemStatus.PROCESSING:
                discard_reason = "item_not_processing"

            if discard_reason is not None:
                logger.info(
                    "jobs.result.discarded",
                    extra={"job_id": job.id, "item_id": item_id, "reason": discard_reason},
                )
                session.commit()
                return self._snapshot(session, job)

            if succeeded:
                self._set_item_status(item, ItemStatus.READY, current)
                item.result_ref = result_ref
                item.error_message = None
            else:
                self._set_item_status(item, ItemStatus.FAILED, current)
                item.error_message = error_message or "Processing failed"
            session.flush()
            self._settle(job, self._items(session, job.id), current)
            session.commit()
            logger.info(
                "jobs.result.recorded",
                extra={"job_id": job.id, "item_id": item_id, "outcome": outcome.value},
            )
            return self._snapshot(session, job)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------
    def approve_job(self, job_id: str, *, now: datetime | None = None) -> JobSnapshot:
        """Approve every ready item of the job in one transaction.

        Approving a job that is already approved (or further along) is a no-op.
        A job whose approval window has passed is cancelled instead and the
        approval is refused.
        """

        current = self._now(now)
        with handle_sqlalchemy_errors(entity="job"), self._session_factory() as session:
            job = self._load_job(session, job_id, lock=True)
            if job.status in (JobStatus.APPROVED, JobStatus.PUSHING, JobStatus.COMPLETED):
                return self._snapshot(session, job)
            if job.status != JobStatus.AWAITING_APPROVAL:
                raise InvalidTransitionError("job", job.status, JobStatus.APPROVED.value)
            items = self._items(session, job_id)
            if self._expire(job, items, current):
                session.commit()
                raise InvalidTransitionError(
                    "job", JobStatus.CANCELLED.value, JobStatus.APPROVED.value
                )
            self._approve(job, items, current)
            self._refresh_counters(job, items)
            session.commit()
            return self._snapshot(session, job)

    def _expire(
        self, job: OptimizationJobModel, items: Iterable[JobItemModel], now: datetime
    ) -> bool:
        if (
            job.status != JobStatus.AWAITING_APPROVAL
            or job.expires_at is None
            or job.expires_at > now
        ):
            return False
        self._set_status(job, JobStatus.CANCELLED, now)
        self._refresh_counters(job, items)
        logger.info("jobs.approval.expired", extra={"job_id": job.id})
        return True

    def expire_job(self, job_id: str, *, now: datetime | None = None) -> JobSnapshot:
        """Cancel an awaiting_approval job whose approval window has passed."""

        current = self._now(now)
        with handle_sqlalchemy_errors(entity="job"), self._session_factory() as session:
            job = self._load_job(session, job_id, lock=True)
            if self._expire(job, self._items(session, job_id), current):
                session.commit()
            return self._snapshot(session, job)

    def expire_overdue(self, *, now: datetime | None = None) -> list[str]:
        current = self._now(now)
        with self._session_factory() as session:
            stmt = select(OptimizationJobModel.id).where(
                OptimizationJobModel.status == JobStatus.AWAITING_APPROVAL.value,
                OptimizationJobModel.expires_at <= current,
            )
            candidates = list(session.scalars(stmt))
        expired: list[str] = []
        for job_id in candidates:
            snapshot = self.expire_job(job_id, now=current)
            if snapshot.job.status is JobStatus.CANCELLED:
                expired.append(job_id)
        return expired

    def cancel_job(self, job_id: str, *, now: datetime | None = None) -> JobSnapshot:
        """Cancel the job; in-flight items are left to finish and be discarded."""

        current = self._now(now)
        with handle_sqlalchemy_errors(entity="job"), self._session_factory() as session:
            job = self._load_job(session, job_id, lock=True)
            if job.status == JobStatus.CANCELLED:
                return self._snapshot(session, job)
            self._set_status(job, JobStatus.CANCELLED, current)
            self._refresh_counters(job, self._items(session, job_id))
            session.commit()
            return self._snapshot(session, job)

    def pause_job(self, job_id: str, *, now: datetime | None = None) -> JobSnapshot:
        current = self._now(now)
        with handle_sqlalchemy_errors(entity="job"), self._session_factory() as session:
            job = self._load_job(session, job_id, lock=True)
            if job.status == JobStatus.PAUSED:
                return self._snapshot(session, job)
            if job.status not in (JobStatus.PENDING, JobStatus.PROCESSING):
                raise InvalidTransitionError("job", job.status, JobStatus.PAUSED.value)
            self._set_status(job, JobStatus.PAUSED, current)
            session.commit()
            return self._snapshot(session, job)

    def resume_job(self, job_id: str, *, now: datetime | None = None) -> JobSnapshot:
        """Resume a paused job; it returns to pending if nothing was dispatched yet."""

        current = self._now(now)
        with handle_sqlalchemy_errors(entity="job"), self._session_factory() as session:
            job = self._load_job(session, job_id, lock=True)
            if job.status != JobStatus.PAUSED:
                raise InvalidTransitionError("job", job.status, JobStatus.PROCESSING.value)
            items = self._items(session, job_id)
            dispatched = any(item.status != ItemStatus.QUEUED for item in items)
            target = JobStatus.PROCESSING if dispatched else JobStatus.PENDING
            self._set_status(job, target, current)
            self._settle(job, items, current)
            session.commit()
            return self._snapshot(session, job)

    def discard_job(self, job_id: str) -> int:
        """Delete the job with its items and dispatch records; return the item count.

        A job in the middle of a push run cannot be discarded.
        """

        with handle_sqlalchemy_errors(entity="job"), self._session_factory() as session:
            job = self._load_job(session, job_id, lock=True)
            if job.status == JobStatus.PUSHING:
                raise InvalidTransitionError("job", job.status, "discarded")
            item_count = len(job.items)
            results = sum(1 for item in job.items if item.result_ref)
            session.delete(job)
            session.commit()
            logger.info(
                "jobs.discarded",
                extra={"job_id": job_id, "items": item_count, "results_dropped": results},
            )
            return item_count

    def fail_job(self, job_id: str, reason: str, *, now: datetime | None = None) -> JobSnapshot:
        current = self._now(now)
        with handle_sqlalchemy_errors(entity="job"), self._session_factory() as session:
            job = self._load_job(session, job_id, lock=True)
            self._set_status(job, JobStatus.FAILED, current)
            job.last_error = reason
            self._refresh_counters(job, self._items(session, job_id))
            session.commit()
            return self._snapshot(session, job)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    def begin_push(self, job_id: str, *, now: datetime | None = None) -> list[Item]:
        """Move an approved job to pushing and return the items to deliver.

        A completed job holding retried delivery failures keeps its status;
        only those items are delivered again.
        """

        current = self._now(now)
        with handle_sqlalchemy_errors(entity="job"), self._session_factory() as session:
            job = self._load_job(session, job_id, lock=True)
            items = self._items(session, job_id)
            if job.status == JobStatus.APPROVED:
                self._set_status(job, JobStatus.PUSHING, current)
            elif job.status == JobStatus.COMPLETED and any(
                item.status == ItemStatus.APPROVED for item in items
            ):
                logger.info("jobs.push.redelivery", extra={"job_id": job_id})
            elif job.status != JobStatus.PUSHING:
                raise InvalidTransitionError("job", job.status, JobStatus.PUSHING.value)
            to_push: list[JobItemModel] = []
            for item in items:
                if item.status == ItemStatus.APPROVED:
                    self._set_item_status(item, ItemStatus.PUSHING, current)
                    item.push_attempts += 1
                    to_push.append(item)
            self._refresh_counters(job, items)
            session.commit()
            return [_to_item(item) for item in to_push]

    def record_push_result(
        self,
        item_id: str,
        *,
        succeeded: bool,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> Item:
        """Apply one delivery outcome; results for a cancelled job are discarded."""

        current = self._now(now)
        with handle_sqlalchemy_errors(entity="item"), self._session_factory() as session:
            item = self._load_item(session, item_id)
            job = self._load_job(session, item.job_id, lock=True)
            item = self._load_item(session, item_id, lock=True)
            discard_reason: str | None = None
            if job.status == JobStatus.CANCELLED:
                discard_reason = "job_cancelled"
            elif item.status != ItemStatus.PUSHING:
                discard_reason = "item_not_pushing"
            if discard_reason is not None:
                logger.info(
                    "jobs.push.discarded",
                    extra={"job_id": job.id, "item_id": item_id, "reason": discard_reason},
                )
                return _to_item(item)
            if succeeded:
                self._set_item_status(item, ItemStatus.PUSHED, current)
                item.pushed_at = current
                item.error_message = None
            else:
                self._set_item_status(item, ItemStatus.FAILED, current)
                item.error_message = error_message or "Delivery failed"
            session.commit()
            return _to_item(item)

    def finish_push(
        self,
        job_id: str,
        *,
        pushed: int,
        failed: int,
        errors: Iterable[str] = (),
        now: datetime | None = None,
    ) -> JobSnapshot:
        """Close a push run: completed unless every delivery in it failed."""

        current = self._now(now)
        with handle_sqlalchemy_errors(entity="job"), self._session_factory() as session:
            job = self._load_job(session, job_id, lock=True)
            items = self._items(session, job_id)
            if job.status == JobStatus.PUSHING:
                target = evaluate_push_completion(pushed, failed)
                self._set_status(job, target, current)
                if target is JobStatus.FAILED:
                    job.last_error = "; ".join(list(errors)[:3]) or "Delivery failed"
            self._refresh_counters(job, items)
            session.commit()
            return self._snapshot(session, job)

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------
    def _requeue(
        self,
        job: OptimizationJobModel,
        item: JobItemModel,
        now: datetime,
    ) -> None:
        self._set_item_status(item, ItemStatus.QUEUED, now)
        item.error_message = None
        item.attempt_number += 1
        item.provider_reference = None
        item.result_ref = None
        if job.status in (JobStatus.AWAITING_APPROVAL, JobStatus.FAILED):
            self._set_status(job, JobStatus.PROCESSING, now)
            job.last_error = None

    def _requeue_delivery(
        self,
        job: OptimizationJobModel,
        item: JobItemModel,
        now: datetime,
    ) -> None:
        """Send a delivery failure back to approved, keeping its processed result."""

        self._set_item_status(item, ItemStatus.APPROVED, now)
        item.error_message = None
        if job.status == JobStatus.FAILED:
            self._set_status(job, JobStatus.APPROVED, now)
            job.last_error = None

    @staticmethod
    def _ensure_retryable_job(job: OptimizationJobModel) -> None:
        if job.status not in RETRYABLE_JOB_STATUSES:
            raise InvalidTransitionError("job", job.status, JobStatus.PROCESSING.value)

    @staticmethod
    def _is_delivery_failure(item: JobItemModel) -> bool:
        return item.push_attempts > 0

    def _retry_refusal(
        self,
        session: Session,
        job: OptimizationJobModel,
        item: JobItemModel,
        policy: "RetryPolicy | None",
        now: datetime,
    ) -> str | None:
        """Why the failed ``item`` may not be retried now, or ``None``.

        Raises :class:`InvalidTransitionError` when the job's status forbids
        the retry altogether.
        """

        if self._is_delivery_failure(item):
            if job.status not in DELIVERY_RETRY_JOB_STATUSES:
                raise InvalidTransitionError("job", job.status, JobStatus.APPROVED.value)
            return policy.delivery_refusal_reason(_to_item(item)) if policy is not None else None
        if job.approved_at is not None and job.status != JobStatus.CANCELLED:
            return PROCESSING_RETRY_AFTER_APPROVAL_ERROR
        self._ensure_retryable_job(job)
        if policy is None:
            return None
        record = self._latest_record(session, item.id)
        return policy.refusal_reason(_to_item(item), _to_record(record) if record else None, now=now)

    def _retry(self, job: OptimizationJobModel, item: JobItemModel, now: datetime) -> None:
        if self._is_delivery_failure(item):
            self._requeue_delivery(job, item, now)
        else:
            self._requeue(job, item, now)

    def retry_item(
        self,
        item_id: str,
        *,
        policy: "RetryPolicy | None" = None,
        now: datetime | None = None,
    ) -> Item:
        """Retry a failed item; retrying an already queued item is a no-op.

        Processing failures go back to queued with a new attempt number.
        Delivery failures go back to approved and are pushed again, in place
        when the job already completed.
        """

        current = self._now(now)
        with handle_sqlalchemy_errors(entity="item"), self._session_factory() as session:
            item = self._load_item(session, item_id)
            job = self._load_job(session, item.job_id, lock=True)
            item = self._load_item(session, item_id, lock=True)
            if item.status == ItemStatus.QUEUED:
                return _to_item(item)
            if item.status != ItemStatus.FAILED:
                raise RetryNotPermittedError(
                    f"Item '{item_id}' is {item.status}; only failed items can be retried"
                )
            refusal = self._retry_refusal(session, job, item, policy, current)
            if refusal is not None:
                raise RetryNotPermittedError(refusal)
            delivery = self._is_delivery_failure(item)
            self._retry(job, item, current)
            self._refresh_counters(job, self._items(session, job.id))
            session.commit()
            logger.info(
                "jobs.retry.item",
                extra={
                    "job_id": job.id,
                    "item_id": item_id,
                    "attempt": item.attempt_number,
                    "delivery": delivery,
                },
            )
            return _to_item(item)

    def retry_all_failed(
        self,
        job_id: str,
        *,
        policy: "RetryPolicy | None" = None,
        now: datetime | None = None,
    ) -> RetryReport:
        """Requeue every permitted failed item of the job in one transaction."""

        current = self._now(now)
        report = RetryReport(job_id=job_id)
        with handle_sqlalchemy_errors(entity="job"), self._session_factory() as session:
            job = self._load_job(session, job_id, lock=True)
            items = self._items(session, job_id)
            failed = [item for item in items if item.status == ItemStatus.FAILED]
            if not failed:
                return report
            for item in failed:
                refusal = self._retry_refusal(session, job, item, policy, current)
                if refusal is not None:
                    report.held_back[item.id] = refusal
                    continue
                self._retry(job, item, current)
                report.requeued.append(item.id)
            self._refresh_counters(job, items)
            session.commit()
            logger.info(
                "jobs.retry.bulk",
                extra={
                    "job_id": job_id,
                    "requeued": report.count,
                    "held_back": len(report.held_back),
                },
            )
            return report


__all__ = ["JobRepository", "RetryReport"]
