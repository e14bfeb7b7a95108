from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from src.optimizer.dispatch.retry import RetryManager, RetryPolicy
from src.optimizer.jobs.jobs_errors import RetryNotPermittedError
from src.optimizer.jobs.jobs_models import AttemptOutcome, Item, ItemStatus, JobStatus, QueueRecord
from tests.helpers.builders import make_submission, process_job

pytestmark = pytest.mark.unit

NOW = datetime(2026, 1, 5, 12, 0, 0)


def _item(attempt_number: int) -> Item:
    return Item(
        id="item-1",
        job_id="job-1",
        group_ref="product-1",
        image_ref="image-1",
        source_ref="https://cdn.shop.test/1.jpg",
        status=ItemStatus.FAILED,
        attempt_number=attempt_number,
    )


def _record(attempt_number: int, dispatched_at: datetime) -> QueueRecord:
    return QueueRecord(
        item_id="item-1",
        attempt_number=attempt_number,
        dispatched_at=dispatched_at,
        outcome=AttemptOutcome.FAILURE,
    )


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [({"max_attempts": 0}, "max_attempts"), ({"backoff_base_seconds": -1}, "backoff")],
)
def test_policy_rejects_invalid_settings(kwargs, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        RetryPolicy(**kwargs)


def test_backoff_doubles_per_attempt() -> None:
    policy = RetryPolicy(backoff_base_seconds=10)

    assert policy.backoff_for(1) == timedelta(seconds=10)
    assert policy.backoff_for(2) == timedelta(seconds=20)
    assert policy.backoff_for(3) == timedelta(seconds=40)


def test_policy_allows_retry_without_history() -> None:
    policy = RetryPolicy(backoff_base_seconds=30)

    assert policy.refusal_reason(_item(1), None, now=NOW) is None


def test_policy_refuses_at_attempt_cap() -> None:
    policy = RetryPolicy(max_attempts=3)

    reason = policy.refusal_reason(_item(3), _record(3, NOW - timedelta(hours=1)), now=NOW)

    assert reason is not None
    assert "3/3" in reason


def test_policy_refuses_inside_backoff_window() -> None:
    policy = RetryPolicy(backoff_base_seconds=30)
    record = _record(2, NOW - timedelta(seconds=59))

    assert policy.refusal_reason(_item(2), record, now=NOW) is not None
    assert policy.refusal_reason(_item(2), record, now=NOW + timedelta(seconds=1)) is None


def test_delivery_retries_are_capped_by_push_attempts() -> None:
    policy = RetryPolicy(max_attempts=2, backoff_base_seconds=30)
    item = _item(1)

    item.push_attempts = 1
    assert policy.delivery_refusal_reason(item) is None

    item.push_attempts = 2
    reason = policy.delivery_refusal_reason(item)
    assert reason is not None
    assert "2/2" in reason


def test_manager_uses_policy_for_single_retry(repository, clock) -> None:
    manager = RetryManager(repository, RetryPolicy(max_attempts=1), clock.now)
    job = repository.create_job(make_submission(1))
    item = process_job(repository, job.id, ready=0, failed=1).items[0]

    with pytest.raises(RetryNotPermittedError):
        manager.retry_item(item.id)


def test_manager_reports_held_back_items(repository, clock) -> None:
    manager = RetryManager(repository, RetryPolicy(max_attempts=2), clock.now)
    job = repository.create_job(make_submission(3))
    snapshot = process_job(repository, job.id, ready=1, failed=2)
    first_failed = next(item for item in snapshot.items if item.status is ItemStatus.FAILED)
    manager.retry_item(first_failed.id)
    process_job(repository, job.id, ready=0, failed=1)

    report = manager.retry_all_failed(job.id)

    assert report.count == 1
    assert list(report.held_back) == [first_failed.id]
    assert repository.get_job(job.id).job.status is JobStatus.PROCESSING
