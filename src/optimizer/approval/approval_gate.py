"""Approval gate evaluated on every reconciliation tick."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from ..domain.clock import as_naive_utc, utcnow
from ..domain.deadlines import ApprovalDeadline, calculate_deadline_info
from ..jobs.jobs_models import JobSnapshot, JobStatus
from ..jobs.jobs_repository import JobRepository

logger = logging.getLogger(__name__)


class GateAction(StrEnum):
    NONE = "none"
    WAITING = "waiting"
    EXPIRED = "expired"


@dataclass(slots=True)
class GateDecision:
    """What the gate did for a snapshot, plus the countdown when waiting."""

    action: GateAction
    snapshot: JobSnapshot
    deadline: ApprovalDeadline | None = None


class ApprovalGate:
    """Expire jobs left in ``awaiting_approval`` past their deadline.

    Approval itself is an all-or-nothing operator action handled by the store;
    the gate never approves on its own.
    """

    def __init__(
        self,
        repository: JobRepository,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or utcnow

    def countdown(self, snapshot: JobSnapshot, *, now: datetime | None = None) -> ApprovalDeadline | None:
        job = snapshot.job
        if job.status is not JobStatus.AWAITING_APPROVAL or job.expires_at is None:
            return None
        return calculate_deadline_info(job.expires_at, now=as_naive_utc(now or self._clock()))

    def check(self, snapshot: JobSnapshot, *, now: datetime | None = None) -> GateDecision:
        """Cancel the job when its approval window has passed.

        The returned decision carries the store's snapshot after the write so
        callers never rely on a locally assumed status.
        """

        current = as_naive_utc(now or self._clock())
        deadline = self.countdown(snapshot, now=current)
        if deadline is None:
            return GateDecision(action=GateAction.NONE, snapshot=snapshot)
        if not deadline.is_expired:
            return GateDecision(action=GateAction.WAITING, snapshot=snapshot, deadline=deadline)

        refreshed = self._repository.expire_job(snapshot.job.id, now=current)
        logger.info(
            "approval.gate.expired",
            extra={"job_id": snapshot.job.id, "status": refreshed.job.status.value},
        )
        return GateDecision(action=GateAction.EXPIRED, snapshot=refreshed, deadline=deadline)

    def expire_overdue(self, *, now: datetime | None = None) -> list[str]:
        return self._repository.expire_overdue(now=as_naive_utc(now or self._clock()))


__all__ = ["ApprovalGate", "GateAction", "GateDecision"]
