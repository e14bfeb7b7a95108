"""Lifecycle rules for optimization jobs and their items.

Transitions are expressed as adjacency tables. The job store consults them
before every write, so an undefined edge surfaces as
:class:`~src.optimizer.jobs.jobs_errors.InvalidTransitionError` instead of a
silently inconsistent row.

A failed item that already reached delivery is retried by going back to
``approved`` rather than ``queued``: its processed result is kept. Completed
jobs have no outgoing edge; such items are redelivered in place.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from ..jobs.jobs_errors import InvalidTransitionError
from ..jobs.jobs_models import ApprovalMode, ItemStatus, JobStats, JobStatus

JOB_TRANSITIONS: Mapping[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset(
        {JobStatus.PROCESSING, JobStatus.PAUSED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.PROCESSING: frozenset(
        {
            JobStatus.PAUSED,
            JobStatus.AWAITING_APPROVAL,
            JobStatus.APPROVED,
            JobStatus.FAILED,
            JobStatus.CANCELLED,
        }
    ),
    JobStatus.PAUSED: frozenset(
        {JobStatus.PROCESSING, JobStatus.PENDING, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.AWAITING_APPROVAL: frozenset(
        {JobStatus.APPROVED, JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.APPROVED: frozenset({JobStatus.PUSHING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.PUSHING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.FAILED: frozenset({JobStatus.PROCESSING, JobStatus.APPROVED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

ITEM_TRANSITIONS: Mapping[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.QUEUED: frozenset({ItemStatus.PROCESSING, ItemStatus.SKIPPED}),
    ItemStatus.PROCESSING: frozenset({ItemStatus.READY, ItemStatus.FAILED}),
    ItemStatus.READY: frozenset({ItemStatus.APPROVED, ItemStatus.PUSHING}),
    ItemStatus.APPROVED: frozenset({ItemStatus.PUSHING}),
    ItemStatus.PUSHING: frozenset({ItemStatus.PUSHED, ItemStatus.FAILED}),
    ItemStatus.FAILED: frozenset({ItemStatus.QUEUED, ItemStatus.APPROVED}),
    ItemStatus.PUSHED: frozenset(),
    ItemStatus.SKIPPED: frozenset(),
}

PUSHABLE_ITEM_STATUSES = frozenset({ItemStatus.READY, ItemStatus.APPROVED})


def can_transition_job(current: JobStatus | str, target: JobStatus | str) -> bool:
    return JobStatus(target) in JOB_TRANSITIONS[JobStatus(current)]


def can_transition_item(current: ItemStatus | str, target: ItemStatus | str) -> bool:
    return ItemStatus(target) in ITEM_TRANSITIONS[ItemStatus(current)]


def ensure_job_transition(current: JobStatus | str, target: JobStatus | str) -> JobStatus:
    """Return ``target`` as :class:`JobStatus` or raise if the edge is undefined."""

    if not can_transition_job(current, target):
        raise InvalidTransitionError("job", str(current), str(target))
    return JobStatus(target)


def ensure_item_transition(current: ItemStatus | str, target: ItemStatus | str) -> ItemStatus:
    if not can_transition_item(current, target):
        raise InvalidTransitionError("item", str(current), str(target))
    return ItemStatus(target)


@dataclass(slots=True, frozen=True)
class Counters:
    """Job counters recomputed from item rows."""

    item_count: int
    processed_count: int
    pushed_count: int
    failed_count: int


def derive_counters(stats: JobStats) -> Counters:
    return Counters(
        item_count=stats.total,
        processed_count=stats.processed,
        pushed_count=stats.pushed,
        failed_count=stats.failed,
    )


def evaluate_processing_completion(
    status: JobStatus | str,
    approval_mode: ApprovalMode | str,
    stats: JobStats,
) -> JobStatus | None:
    """Decide where a processing job goes once its items settle.

    Returns ``None`` while any item is still queued or processing, or when the
    job is not in ``processing``. A job whose items all ended failed or
    skipped cannot make further progress and fails.
    """

    if JobStatus(status) is not JobStatus.PROCESSING:
        return None
    if stats.outstanding > 0:
        return None
    if stats.ready == 0:
        return JobStatus.FAILED
    if ApprovalMode(approval_mode) is ApprovalMode.AUTO:
        return JobStatus.APPROVED
    return JobStatus.AWAITING_APPROVAL


def evaluate_push_completion(pushed: int, failed: int) -> JobStatus:
    """Final status of a push run: completed unless every delivery failed."""

    if failed == 0 or pushed > 0:
        return JobStatus.COMPLETED
    return JobStatus.FAILED


__all__ = [
    "Counters",
    "ITEM_TRANSITIONS",
    "JOB_TRANSITIONS",
    "PUSHABLE_ITEM_STATUSES",
    "can_transition_item",
    "can_transition_job",
    "derive_counters",
    "ensure_item_transition",
    "ensure_job_transition",
    "evaluate_processing_completion",
    "evaluate_push_completion",
]
