"""Pydantic schemas for the jobs API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from ..domain.deadlines import ApprovalDeadline
from ..selection import CatalogImage, CatalogItem, Selection, SelectionMode
from .jobs_models import (
    ApprovalMode,
    Item,
    ItemStatus,
    Job,
    JobConfig,
    JobSnapshot,
    JobStats,
    JobStatus,
    PresetType,
    QueueSummary,
    TriggerType,
)


class CatalogImagePayload(BaseModel):
    id: str = Field(..., min_length=1)
    src: str = Field(..., min_length=1)
    position: int = Field(default=1, ge=1)
    alt: str | None = None
    unsupported_format: bool = False
    already_processed: bool = False


class CatalogItemPayload(BaseModel):
    id: str = Field(..., min_length=1)
    title: str = ""
    images: list[CatalogImagePayload] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)

    def to_domain(self) -> CatalogItem:
        return CatalogItem(
            id=self.id,
            title=self.title,
            images=tuple(
                CatalogImage(
                    id=image.id,
                    source_ref=image.src,
                    position=image.position,
                    alt=image.alt,
                    unsupported_format=image.unsupported_format,
                    already_processed=image.already_processed,
                )
                for image in self.images
            ),
            tags=tuple(self.tags),
        )


class SelectionPayload(BaseModel):
    selected_items: list[str] = Field(default_factory=list)
    mode: SelectionMode = SelectionMode.ALL
    manual_images: dict[str, list[str]] = Field(default_factory=dict)
    include_tags: list[str] = Field(default_factory=list)
    exclude_tags: list[str] = Field(default_factory=list)
    exclude_model_images: bool = False

    def to_domain(self) -> Selection:
        manual = (
            {item: frozenset(images) for item, images in self.manual_images.items() if images}
            if self.mode is SelectionMode.MANUAL
            else {}
        )
        return Selection(
            selected_items=frozenset(self.selected_items),
            mode=self.mode,
            manual_images=manual,
            include_tags=tuple(self.include_tags),
            exclude_tags=tuple(self.exclude_tags),
            exclude_model_images=self.exclude_model_images,
        )


class JobConfigPayload(BaseModel):
    preset_id: str | None = None
    custom_prompt: str | None = None
    ai_model: str | None = None
    approval_mode: ApprovalMode = ApprovalMode.PREVIEW
    trigger_type: TriggerType = TriggerType.MANUAL

    def to_domain(self) -> JobConfig:
        return JobConfig(
            preset_id=self.preset_id,
            custom_prompt=self.custom_prompt,
            ai_model=self.ai_model,
            approval_mode=self.approval_mode,
            trigger_type=self.trigger_type,
        )


class CreateJobRequest(BaseModel):
    owner_ref: str = Field(..., min_length=1)
    catalog: list[CatalogItemPayload] = Field(default_factory=list)
    selection: SelectionPayload = Field(default_factory=SelectionPayload)
    config: JobConfigPayload = Field(default_factory=JobConfigPayload)


class JobPayload(BaseModel):
    id: str
    owner_ref: str
    status: JobStatus
    item_count: int
    processed_count: int
    pushed_count: int
    failed_count: int
    group_count: int = 0
    ai_model: str
    approval_mode: ApprovalMode = ApprovalMode.PREVIEW
    trigger_type: TriggerType = TriggerType.MANUAL
    preset_type: PresetType | None = None
    preset_id: str | None = None
    custom_prompt: str | None = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None = None
    approved_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None

    @classmethod
    def from_domain(cls, job: Job) -> "JobPayload":
        return cls(
            id=job.id,
            owner_ref=job.owner_ref,
            status=job.status,
            item_count=job.item_count,
            processed_count=job.processed_count,
            pushed_count=job.pushed_count,
            failed_count=job.failed_count,
            group_count=job.group_count,
            ai_model=job.ai_model,
            approval_mode=job.approval_mode,
            trigger_type=job.trigger_type,
            preset_type=job.preset_type,
            preset_id=job.preset_id,
            custom_prompt=job.custom_prompt,
            created_at=job.created_at,
            updated_at=job.updated_at,
            expires_at=job.expires_at,
            approved_at=job.approved_at,
            completed_at=job.completed_at,
            last_error=job.last_error,
        )

    def to_domain(self) -> Job:
        return Job(
            id=self.id,
            owner_ref=self.owner_ref,
            status=self.status,
            item_count=self.item_count,
            processed_count=self.processed_count,
            pushed_count=self.pushed_count,
            failed_count=self.failed_count,
            created_at=self.created_at,
            updated_at=self.updated_at,
            ai_model=self.ai_model,
            approval_mode=self.approval_mode,
            trigger_type=self.trigger_type,
            group_count=self.group_count,
            preset_type=self.preset_type,
            preset_id=self.preset_id,
            custom_prompt=self.custom_prompt,
            expires_at=self.expires_at,
            approved_at=self.approved_at,
            completed_at=self.completed_at,
            last_error=self.last_error,
        )


class ItemPayload(BaseModel):
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

    @classmethod
    def from_domain(cls, item: Item) -> "ItemPayload":
        return cls(
            id=item.id,
            job_id=item.job_id,
            group_ref=item.group_ref,
            image_ref=item.image_ref,
            source_ref=item.source_ref,
            status=item.status,
            position=item.position,
            title=item.title,
            attempt_number=item.attempt_number,
            provider_reference=item.provider_reference,
            result_ref=item.result_ref,
            error_message=item.error_message,
            push_attempts=item.push_attempts,
            pushed_at=item.pushed_at,
        )

    def to_domain(self) -> Item:
        return Item(
            id=self.id,
            job_id=self.job_id,
            group_ref=self.group_ref,
            image_ref=self.image_ref,
            source_ref=self.source_ref,
            status=self.status,
            position=self.position,
            title=self.title,
            attempt_number=self.attempt_number,
            provider_reference=self.provider_reference,
            result_ref=self.result_ref,
            error_message=self.error_message,
            push_attempts=self.push_attempts,
            pushed_at=self.pushed_at,
        )


class DeadlinePayload(BaseModel):
    expires_at: datetime
    remaining_ms: int
    is_expired: bool

    @classmethod
    def from_domain(cls, deadline: ApprovalDeadline) -> "DeadlinePayload":
        return cls(
            expires_at=deadline.expires_at,
            remaining_ms=deadline.remaining_ms,
            is_expired=deadline.is_expired,
        )


class JobDetailResponse(BaseModel):
    job: JobPayload
    items: list[ItemPayload]
    stats: dict[str, int]
    deadline: DeadlinePayload | None = None

    @classmethod
    def from_snapshot(
        cls, snapshot: JobSnapshot, deadline: ApprovalDeadline | None = None
    ) -> "JobDetailResponse":
        return cls(
            job=JobPayload.from_domain(snapshot.job),
            items=[ItemPayload.from_domain(item) for item in snapshot.items],
            stats=snapshot.stats.as_dict(),
            deadline=DeadlinePayload.from_domain(deadline) if deadline else None,
        )

    def to_snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            job=self.job.to_domain(),
            items=[item.to_domain() for item in self.items],
            stats=JobStats.from_statuses(item.status for item in self.items),
        )


class CreateJobResponse(BaseModel):
    job: JobPayload
    excluded_counts: dict[str, int] = Field(default_factory=dict)


class JobListResponse(BaseModel):
    jobs: list[JobPayload]


class QueueResponse(BaseModel):
    owner_ref: str
    jobs: list[JobPayload]
    counts_by_status: dict[str, int]
    active_count: int

    @classmethod
    def from_summary(cls, owner_ref: str, summary: QueueSummary) -> "QueueResponse":
        return cls(
            owner_ref=owner_ref,
            jobs=[JobPayload.from_domain(job) for job in summary.jobs],
            counts_by_status=summary.counts_by_status,
            active_count=summary.active_count,
        )

    def to_summary(self) -> QueueSummary:
        return QueueSummary(
            jobs=[job.to_domain() for job in self.jobs],
            counts_by_status=dict(self.counts_by_status),
        )


class DispatchResponse(BaseModel):
    job_id: str
    accepted: list[str]
    rejected: dict[str, str]


class PushResponse(BaseModel):
    pushed_count: int
    failed_count: int


class RetryAllResponse(BaseModel):
    count: int
    held_back: dict[str, str] = Field(default_factory=dict)


class ProcessingCallbackRequest(BaseModel):
    """Completion signal posted by the processing backend for one item."""

    item_id: str = Field(..., min_length=1)
    success: bool
    result_ref: str | None = None
    error_message: str | None = None
    attempt_number: int | None = Field(default=None, ge=1)


__all__ = [
    "CatalogImagePayload",
    "CatalogItemPayload",
    "CreateJobRequest",
    "CreateJobResponse",
    "DeadlinePayload",
    "DispatchResponse",
    "ItemPayload",
    "JobConfigPayload",
    "JobDetailResponse",
    "JobListResponse",
    "JobPayload",
    "ProcessingCallbackRequest",
    "PushResponse",
    "QueueResponse",
    "RetryAllResponse",
    "SelectionPayload",
]
