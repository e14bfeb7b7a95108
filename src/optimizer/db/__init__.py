"""Database models and schema helpers for the job store."""

from .db_models import Base, DispatchRecordModel, JobItemModel, OptimizationJobModel

__all__ = [
    "Base",
    "DispatchRecordModel",
    "JobItemModel",
    "OptimizationJobModel",
]
