"""SQLAlchemy ORM models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ..domain.clock import utcnow


class Base(DeclarativeBase):
    """Base declarative class."""


class OptimizationJobModel(Base):
    __tablename__ = "optimization_job"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_ref: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    group_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pushed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    preset_type: Mapped[str | None] = mapped_column(String(32))
    preset_id: Mapped[str | None] = mapped_column(String(128))
    custom_prompt: Mapped[str | None] = mapped_column(Text)
    prompt: Mapped[str | None] = mapped_column(Text)
    ai_model: Mapped[str] = mapped_column(String(64), nullable=False)
    approval_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="preview")
    trigger_type: Mapped[str] = mapped_column(String(16), nullable=False, default="manual")
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)

    items: Mapped[list["JobItemModel"]] = relationship(
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="JobItemModel.sequence",
    )


class JobItemModel(Base):
    __tablename__ = "job_item"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    job_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("optimization_job.id"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    group_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    image_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    title: Mapped[str | None] = mapped_column(String(512))
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    source_ref: Mapped[str] = mapped_column(String(1024), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    provider_reference: Mapped[str | None] = mapped_column(String(128))
    result_ref: Mapped[str | None] = mapped_column(String(1024))
    error_message: Mapped[str | None] = mapped_column(Text)
    push_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pushed_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    job: Mapped[OptimizationJobModel] = relationship(back_populates="items")
    dispatches: Mapped[list["DispatchRecordModel"]] = relationship(
        back_populates="item",
        cascade="all, delete-orphan",
    )


class DispatchRecordModel(Base):
    __tablename__ = "dispatch_record"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("job_item.id"), nullable=False, index=True
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # in_flight|success|failure
    dispatched_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    error_message: Mapped[str | None] = mapped_column(Text)

    item: Mapped[JobItemModel] = relationship(back_populates="dispatches")


__all__ = [
    "Base",
    "DispatchRecordModel",
    "JobItemModel",
    "OptimizationJobModel",
]
