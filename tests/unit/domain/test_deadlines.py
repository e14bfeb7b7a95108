from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.optimizer.domain.clock import as_naive_utc
from src.optimizer.domain.deadlines import (
    calculate_approval_expires_at,
    calculate_deadline_info,
)

pytestmark = pytest.mark.unit


def test_expires_at_adds_window() -> None:
    entered = datetime(2026, 1, 5, 12, 0, 0)

    assert calculate_approval_expires_at(entered, window_seconds=3600) == datetime(
        2026, 1, 5, 13, 0, 0
    )


def test_window_must_be_positive() -> None:
    with pytest.raises(ValueError):
        calculate_approval_expires_at(datetime(2026, 1, 5), window_seconds=0)


def test_deadline_reports_remaining_time() -> None:
    expires_at = datetime(2026, 1, 5, 13, 0, 0)
    now = expires_at - timedelta(seconds=90)

    info = calculate_deadline_info(expires_at, now=now)

    assert info.remaining_ms == 90_000
    assert info.is_expired is False


def test_deadline_is_expired_at_the_boundary() -> None:
    expires_at = datetime(2026, 1, 5, 13, 0, 0)

    info = calculate_deadline_info(expires_at, now=expires_at)

    assert info.remaining_ms == 0
    assert info.is_expired is True


def test_deadline_never_reports_negative_time() -> None:
    expires_at = datetime(2026, 1, 5, 13, 0, 0)

    info = calculate_deadline_info(expires_at, now=expires_at + timedelta(hours=2))

    assert info.remaining_ms == 0
    assert info.is_expired is True


def test_naive_and_aware_values_are_compared_consistently() -> None:
    expires_at = datetime(2026, 1, 5, 13, 0, 0, tzinfo=timezone.utc)
    now = datetime(2026, 1, 5, 12, 59, 0)

    info = calculate_deadline_info(expires_at, now=now)

    assert info.remaining_ms == 60_000


def test_as_naive_utc_converts_offsets() -> None:
    aware = datetime(2026, 1, 5, 15, 0, 0, tzinfo=timezone(timedelta(hours=3)))

    assert as_naive_utc(aware) == datetime(2026, 1, 5, 12, 0, 0)
    assert as_naive_utc(datetime(2026, 1, 5)) == datetime(2026, 1, 5)
