"""Reconciliation polling of job and queue state."""

from .job_sources import HttpJobSource, JobSource, JobsApiClient, RepositoryJobSource
from .reconciliation import ReconciliationPoller, Subscription

__all__ = [
    "HttpJobSource",
    "JobSource",
    "JobsApiClient",
    "ReconciliationPoller",
    "RepositoryJobSource",
    "Subscription",
]
