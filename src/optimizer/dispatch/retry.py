"""Operator-initiated retry of failed items."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ..domain.clock import utcnow
from ..jobs.jobs_models import Item, QueueRecord
from ..jobs.jobs_repository import JobRepository, RetryReport

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Attempt cap and exponential backoff measured from the last dispatch.

    ``max_attempts`` counts the first attempt, so the default of 3 allows
    two retries.
    """

    max_attempts: int = 3
    backoff_base_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_base_seconds < 0:
            raise ValueError("backoff_base_seconds must be non-negative")

    def backoff_for(self, attempt_number: int) -> timedelta:
        return timedelta(seconds=self.backoff_base_seconds * 2 ** max(attempt_number - 1, 0))

    def next_allowed_at(self, last_attempt: QueueRecord | None) -> datetime | None:
        if last_attempt is None:
            return None
        return last_attempt.dispatched_at + self.backoff_for(last_attempt.attempt_number)

    def refusal_reason(
        self, item: Item, last_attempt: QueueRecord | None, *, now: datetime
    ) -> str | None:
        """Return why ``item`` may not be retried at ``now``, or ``None``."""

        if item.attempt_number >= self.max_attempts:
            return f"Retry limit reached ({item.attempt_number}/{self.max_attempts} attempts)"
        allowed_at = self.next_allowed_at(last_attempt)
        if allowed_at is not None and now < allowed_at:
            return f"Retry allowed after {allowed_at.isoformat()}"
        return None

    def delivery_refusal_reason(self, item: Item) -> str | None:
        """Delivery retries are capped by push attempts, without backoff."""

        if item.push_attempts >= self.max_attempts:
            return f"Delivery retry limit reached ({item.push_attempts}/{self.max_attempts} pushes)"
        return None


@dataclass(slots=True)
class RetryManager:
    """Apply :class:`RetryPolicy` to single and bulk retries."""

    repository: JobRepository
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    clock: Callable[[], datetime] = utcnow

    def retry_item(self, item_id: str) -> Item:
        item = self.repository.retry_item(item_id, policy=self.policy, now=self.clock())
        logger.info(
            "dispatch.retry.item",
            extra={"item_id": item_id, "attempt_number": item.attempt_number},
        )
        return item

    def retry_all_failed(self, job_id: str) -> RetryReport:
        report = self.repository.retry_all_failed(job_id, policy=self.policy, now=self.clock())
        if report.held_back:
            logger.warning(
                "dispatch.retry.held_back",
                extra={"job_id": job_id, "held_back": sorted(report.held_back)},
            )
        return report


__all__ = ["RetryManager", "RetryPolicy"]
