from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import replace

import pytest

from src.optimizer.approval import ApprovalGate
from src.optimizer.jobs.jobs_models import JobSnapshot, JobStatus, QueueSummary
from src.optimizer.polling import ReconciliationPoller, RepositoryJobSource
from src.optimizer.polling.reconciliation import WatchKey
from tests.helpers.builders import make_submission, process_job
from tests.helpers.clock import APPROVAL_WINDOW_SECONDS

pytestmark = pytest.mark.unit


class FakeJobSource:
    """In-memory source whose snapshots the test swaps between ticks."""

    def __init__(self) -> None:
        self.jobs: dict[str, JobSnapshot] = {}
        self.queues: dict[str, QueueSummary] = {}
        self.job_fetches = 0
        self.queue_fetches: list[tuple[str, tuple[str, ...] | None]] = []
        self.fail_next = 0

    async def fetch_job(self, job_id: str) -> JobSnapshot:
        self.job_fetches += 1
        if self.fail_next:
            self.fail_next -= 1
            raise RuntimeError("store unavailable")
        return self.jobs[job_id]

    async def fetch_queue(self, owner_ref: str, *, statuses=None) -> QueueSummary:
        self.queue_fetches.append((owner_ref, tuple(statuses) if statuses else None))
        return self.queues.get(owner_ref, QueueSummary(jobs=[], counts_by_status={}))


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def snapshot(repository) -> JobSnapshot:
    job = repository.create_job(make_submission(2))
    return repository.get_job(job.id)


@pytest.mark.asyncio
async def test_observers_of_one_job_share_a_single_poll(snapshot) -> None:
    source = FakeJobSource()
    source.jobs[snapshot.job.id] = snapshot
    poller = ReconciliationPoller(source, interval_seconds=60)
    key = WatchKey("job", snapshot.job.id)

    first = poller.watch_job(snapshot.job.id)
    second = poller.watch_job(snapshot.job.id)
    await _wait_for(lambda: poller.tick_count(key) == 1)

    assert poller.active_keys == [key]
    assert poller.subscriber_count(key) == 2
    assert source.job_fetches == 1

    await first.close()
    assert poller.is_watching(key)
    await second.close()
    assert not poller.is_watching(key)
    assert poller.active_keys == []


@pytest.mark.asyncio
async def test_polling_stops_when_unobserved(snapshot) -> None:
    source = FakeJobSource()
    source.jobs[snapshot.job.id] = snapshot
    poller = ReconciliationPoller(source, interval_seconds=0.01)

    async with poller.watch_job(snapshot.job.id):
        await _wait_for(lambda: source.job_fetches >= 3)
    fetches = source.job_fetches
    await asyncio.sleep(0.05)

    assert source.job_fetches == fetches


@pytest.mark.asyncio
async def test_each_tick_replaces_snapshot_with_full_read(snapshot) -> None:
    source = FakeJobSource()
    source.jobs[snapshot.job.id] = snapshot
    received: list[JobSnapshot] = []
    poller = ReconciliationPoller(source, interval_seconds=60)
    key = WatchKey("job", snapshot.job.id)

    subscription = poller.watch_job(snapshot.job.id, received.append)
    await _wait_for(lambda: poller.tick_count(key) == 1)
    updated = replace(snapshot, job=replace(snapshot.job, status=JobStatus.PROCESSING))
    source.jobs[snapshot.job.id] = updated
    await poller.poll_once(key)

    assert subscription.snapshot is updated
    assert received == [snapshot, updated]
    await poller.close()


@pytest.mark.asyncio
async def test_async_listeners_are_awaited(snapshot) -> None:
    source = FakeJobSource()
    source.jobs[snapshot.job.id] = snapshot
    seen: list[str] = []

    async def listener(current: JobSnapshot) -> None:
        seen.append(current.job.id)

    poller = ReconciliationPoller(source, interval_seconds=60)
    poller.watch_job(snapshot.job.id, listener)
    await _wait_for(lambda: seen == [snapshot.job.id])
    await poller.close()


@pytest.mark.asyncio
async def test_failed_ticks_do_not_stop_polling(snapshot) -> None:
    source = FakeJobSource()
    source.jobs[snapshot.job.id] = snapshot
    source.fail_next = 2
    poller = ReconciliationPoller(source, interval_seconds=0.01)
    key = WatchKey("job", snapshot.job.id)

    subscription = poller.watch_job(snapshot.job.id)
    await _wait_for(lambda: poller.tick_count(key) >= 1)

    assert source.job_fetches >= 3
    assert subscription.snapshot is snapshot
    await subscription.close()


@pytest.mark.asyncio
async def test_failed_read_keeps_last_snapshot(snapshot) -> None:
    source = FakeJobSource()
    source.jobs[snapshot.job.id] = snapshot
    poller = ReconciliationPoller(source, interval_seconds=60)
    key = WatchKey("job", snapshot.job.id)

    subscription = poller.watch_job(snapshot.job.id)
    await _wait_for(lambda: poller.tick_count(key) == 1)
    source.fail_next = 1
    with pytest.raises(RuntimeError):
        await poller.poll_once(key)

    assert subscription.snapshot is snapshot
    assert poller.tick_count(key) == 1
    await subscription.close()


@pytest.mark.asyncio
async def test_queue_views_are_keyed_by_status_filter() -> None:
    source = FakeJobSource()
    poller = ReconciliationPoller(source, interval_seconds=60)

    poller.watch_queue("shop-1")
    poller.watch_queue("shop-1", statuses=(JobStatus.AWAITING_APPROVAL,))
    await _wait_for(lambda: len(source.queue_fetches) == 2)

    assert len(poller.active_keys) == 2
    assert sorted(source.queue_fetches, key=str) == [
        ("shop-1", ("awaiting_approval",)),
        ("shop-1", None),
    ]
    await poller.close()
    assert poller.active_keys == []


@pytest.mark.asyncio
async def test_expired_approval_is_cancelled_by_the_next_tick(repository, clock) -> None:
    job = repository.create_job(make_submission(2))
    process_job(repository, job.id, ready=2, failed=0)
    clock.advance(APPROVAL_WINDOW_SECONDS)
    poller = ReconciliationPoller(
        RepositoryJobSource(repository),
        interval_seconds=60,
        gate=ApprovalGate(repository, clock=clock.now),
    )
    statuses: list[JobStatus] = []

    async with poller.watch_job(job.id, lambda current: statuses.append(current.job.status)):
        await _wait_for(lambda: bool(statuses))

    assert statuses == [JobStatus.CANCELLED]
    assert repository.get_job(job.id).job.status is JobStatus.CANCELLED


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ReconciliationPoller(FakeJobSource(), interval_seconds=0)
