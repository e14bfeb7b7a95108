"""Data structures for optimization jobs and their items."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Iterable


class JobStatus(StrEnum):
    """Lifecycle statuses of an optimization job."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    PUSHING = "pushing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ItemStatus(StrEnum):
    """Lifecycle statuses of a single image inside a job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    READY = "ready"
    APPROVED = "approved"
    PUSHING = "pushing"
    PUSHED = "pushed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ApprovalMode(StrEnum):
    PREVIEW = "preview"
    AUTO = "auto"


class TriggerType(StrEnum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


class PresetType(StrEnum):
    TEMPLATE = "template"
    CUSTOM = "custom"


class AttemptOutcome(StrEnum):
    """Outcome of a single dispatched processing attempt."""

    IN_FLIGHT = "in_flight"
    SUCCESS = "success"
    FAILURE = "failure"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})
OUTSTANDING_ITEM_STATUSES = frozenset({ItemStatus.QUEUED, ItemStatus.PROCESSING})


@dataclass(slots=True)
class Job:
    """Persisted optimization job with counters derived from its items."""

    id: str
    owner_ref: str
    status: JobStatus
    item_count: int
    processed_count: int
    pushed_count: int
    failed_count: int
    created_at: datetime
    updated_at: datetime
    ai_model: str
    approval_mode: ApprovalMode = ApprovalMode.PREVIEW
    trigger_type: TriggerType = TriggerType.MANUAL
    group_count: int = 0
    preset_type: PresetType | None = None
    preset_id: str | None = None
    custom_prompt: str | None = None
    prompt: str | None = None
    expires_at: datetime | None = None
    approved_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass(slots=True)
class Item:
    """One image of a catalog item tracked through processing and delivery."""

    id: str
    job_id: str
    group_ref: str
    image_ref: str
    source_ref: str
    status: ItemStatus
    position: int = 1
    title: str | None = None
    attempt_number: int = 1
    provider_reference: str | None = None
    result_ref: str | None = None
    error_message: str | None = None
    push_attempts: int = 0
    pushed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class QueueRecord:
    """Append-only log entry for one dispatched attempt of an item."""

    item_id: str
    attempt_number: int
    dispatched_at: datetime
    outcome: AttemptOutcome
    completed_at: datetime | None = None
    error_message: str | None = None


@dataclass(slots=True)
class ItemSpec:
    """Item payload accepted by the store when a job is created."""

    group_ref: str
    image_ref: str
    source_ref: str
    position: int
    title: str | None = None


@dataclass(slots=True)
class JobConfig:
    """User supplied processing configuration of a job."""

    preset_id: str | None = None
    custom_prompt: str | None = None
    ai_model: str | None = None
    approval_mode: ApprovalMode = ApprovalMode.PREVIEW
    trigger_type: TriggerType = TriggerType.MANUAL


@dataclass(slots=True)
class JobSubmission:
    """Validated job ready to be persisted by the store."""

    owner_ref: str
    ai_model: str
    prompt: str
    preset_type: PresetType
    approval_mode: ApprovalMode
    trigger_type: TriggerType
    group_count: int
    items: list[ItemSpec] = field(default_factory=list)
    preset_id: str | None = None
    custom_prompt: str | None = None


@dataclass(slots=True)
class JobStats:
    """Per-status item counters aggregated from item rows."""

    total: int = 0
    queued: int = 0
    processing: int = 0
    ready: int = 0
    approved: int = 0
    pushing: int = 0
    pushed: int = 0
    failed: int = 0
    skipped: int = 0

    @classmethod
    def from_statuses(cls, statuses: Iterable[ItemStatus | str]) -> "JobStats":
        stats = cls()
        for raw in statuses:
            status = ItemStatus(raw)
            setattr(stats, status.value, getattr(stats, status.value) + 1)
            stats.total += 1
        return stats

    @property
    def outstanding(self) -> int:
        return self.queued + self.processing

    @property
    def processed(self) -> int:
        return self.total - self.outstanding

    def as_dict(self) -> dict[str, int]:
        return {status.value: getattr(self, status.value) for status in ItemStatus}


@dataclass(slots=True)
class JobSnapshot:
    """Full re-read of a job: the job row, its items and per-status stats."""

    job: Job
    items: list[Item]
    stats: JobStats


@dataclass(slots=True)
class QueueSummary:
    """Jobs of an owner grouped by status for the queue view."""

    jobs: list[Job]
    counts_by_status: dict[str, int]

    @property
    def active_count(self) -> int:
        return sum(1 for job in self.jobs if not job.is_terminal)


@dataclass(slots=True)
class BatchDispatch:
    """Items claimed for one dispatch invocation."""

    job_id: str
    items: list[Item]
    prompt: str | None
    ai_model: str


__all__ = [
    "ApprovalMode",
    "AttemptOutcome",
    "BatchDispatch",
    "Item",
    "ItemSpec",
    "ItemStatus",
    "Job",
    "JobConfig",
    "JobSnapshot",
    "JobStats",
    "JobStatus",
    "JobSubmission",
    "OUTSTANDING_ITEM_STATUSES",
    "PresetType",
    "QueueRecord",
    "QueueSummary",
    "TERMINAL_JOB_STATUSES",
    "TriggerType",
]
