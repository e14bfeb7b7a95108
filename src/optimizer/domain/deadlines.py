"""Approval window helpers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(slots=True)
class ApprovalDeadline:
    """Countdown snapshot shown next to a job waiting for approval."""

    expires_at: datetime
    remaining_ms: int
    is_expired: bool


def calculate_approval_expires_at(entered_at: datetime, *, window_seconds: int) -> datetime:
    """Return ``expires_at`` for a job entering ``awaiting_approval``."""

    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    return entered_at + timedelta(seconds=window_seconds)


def calculate_deadline_info(expires_at: datetime, *, now: datetime) -> ApprovalDeadline:
    """Build an :class:`ApprovalDeadline` snapshot for polling clients."""

    if expires_at.tzinfo is not None and now.tzinfo is None:
        now = now.replace(tzinfo=expires_at.tzinfo)
    elif expires_at.tzinfo is None and now.tzinfo is not None:
        expires_at = expires_at.replace(tzinfo=now.tzinfo)

    delta = expires_at - now
    remaining_ms = max(int(delta.total_seconds() * 1000), 0)
    return ApprovalDeadline(
        expires_at=expires_at,
        remaining_ms=remaining_ms,
        is_expired=expires_at <= now,
    )


__all__ = [
    "ApprovalDeadline",
    "calculate_approval_expires_at",
    "calculate_deadline_info",
]
