from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest

from src.optimizer.config import AppConfig, build_database
from src.optimizer.dependencies import build_job_service
from src.optimizer.domain.clock import utcnow
from src.optimizer.jobs.jobs_models import ApprovalMode, ItemStatus, JobConfig, JobStatus
from src.optimizer.lifecycle import dispatch_cycle_once
from src.optimizer.main import create_app
from src.optimizer.polling import HttpJobSource, JobsApiClient, ReconciliationPoller
from src.optimizer.selection import Selection, SelectionMode
from tests.helpers.builders import catalog_item
from tests.mocks.backends import MockDestinationClient, MockProcessingBackend, RecordingNotifier


def _config(**overrides) -> AppConfig:
    values = {
        "dispatch_loop_enabled": False,
        "dispatch_batch_size": 2,
        "dispatch_concurrency": 1,
        "presets": {"white-bg": "Pure white background"},
    }
    values.update(overrides)
    return AppConfig(**values)


@pytest.fixture
def database():
    db = build_database("sqlite://")
    yield db
    db.engine.dispose()


@pytest.fixture
def destination() -> MockDestinationClient:
    return MockDestinationClient()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(database, destination, notifier):
    job_service = build_job_service(
        _config(),
        database,
        backend=MockProcessingBackend(),
        destination=destination,
    )
    job_service.notifier = notifier
    return job_service


def _create_job(service, approval_mode: ApprovalMode = ApprovalMode.PREVIEW):
    catalog = [catalog_item("a", 2), catalog_item("b", 3, svg_positions=(3,)), catalog_item("c", 1)]
    selection = Selection.empty().select_all(["a", "b", "c"]).with_mode(SelectionMode.ALL)
    created = service.create_job(
        owner_ref="shop-1",
        catalog=catalog,
        selection=selection,
        config=JobConfig(preset_id="white-bg", approval_mode=approval_mode),
    )
    return created.job


def _complete_processing(service, job_id: str, *, fail: set[str] = frozenset()) -> None:
    snapshot = service.repository.get_job(job_id)
    for item in snapshot.items:
        if item.status is not ItemStatus.PROCESSING:
            continue
        service.record_processing_result(
            item.id,
            succeeded=item.image_ref not in fail,
            result_ref=f"https://results.test/{item.image_ref}.png",
            error_message="Model timeout" if item.image_ref in fail else None,
        )


@pytest.mark.integration
@pytest.mark.asyncio
async def test_preview_job_runs_from_selection_to_delivery(service, destination, notifier) -> None:
    job = _create_job(service)
    assert job.item_count == 5

    first = await dispatch_cycle_once(job_service=service, approval_gate=service.approval_gate)
    assert first.dispatched == [job.id]
    _complete_processing(service, job.id)
    assert service.repository.get_job(job.id).stats.queued == 3

    await dispatch_cycle_once(job_service=service, approval_gate=service.approval_gate)
    _complete_processing(service, job.id, fail={"b-img2"})
    await dispatch_cycle_once(job_service=service, approval_gate=service.approval_gate)
    _complete_processing(service, job.id)

    snapshot, deadline = service.get_job(job.id)
    assert snapshot.job.status is JobStatus.AWAITING_APPROVAL
    assert snapshot.stats.ready == 4
    assert snapshot.stats.failed == 1
    assert deadline is not None and not deadline.is_expired

    idle = await dispatch_cycle_once(job_service=service, approval_gate=service.approval_gate)
    assert idle.dispatched == [] and idle.pushed == []

    service.approve_job(job.id)
    delivered = await dispatch_cycle_once(job_service=service, approval_gate=service.approval_gate)

    assert delivered.pushed == [job.id]
    final = service.repository.get_job(job.id)
    assert final.job.status is JobStatus.COMPLETED
    assert final.job.pushed_count == 4
    assert final.job.failed_count == 1
    assert len(destination.pushed) == 4
    assert [event[2] for event in notifier.events] == [
        JobStatus.PENDING,
        JobStatus.PROCESSING,
        JobStatus.AWAITING_APPROVAL,
        JobStatus.APPROVED,
        JobStatus.COMPLETED,
    ]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_auto_approved_job_is_pushed_without_operator(service, destination) -> None:
    job = _create_job(service, approval_mode=ApprovalMode.AUTO)

    for _ in range(3):
        await dispatch_cycle_once(job_service=service, approval_gate=service.approval_gate)
        _complete_processing(service, job.id)

    assert service.repository.get_job(job.id).job.status is JobStatus.APPROVED
    result = await dispatch_cycle_once(job_service=service, approval_gate=service.approval_gate)

    assert result.pushed == [job.id]
    assert service.repository.get_job(job.id).job.status is JobStatus.COMPLETED
    assert len(destination.pushed) == 5


@pytest.mark.integration
@pytest.mark.asyncio
async def test_failed_delivery_is_redelivered_after_retry(service, destination, notifier) -> None:
    job = _create_job(service, approval_mode=ApprovalMode.AUTO)
    for _ in range(3):
        await dispatch_cycle_once(job_service=service, approval_gate=service.approval_gate)
        _complete_processing(service, job.id)
    unreachable = service.repository.get_job(job.id).items[0].id
    destination.fail_items.add(unreachable)

    await dispatch_cycle_once(job_service=service, approval_gate=service.approval_gate)
    assert service.repository.get_job(job.id).job.status is JobStatus.COMPLETED
    assert service.repository.get_job(job.id).job.failed_count == 1

    destination.fail_items.clear()
    retried = service.retry_item(unreachable)
    assert retried.status is ItemStatus.APPROVED
    result = await dispatch_cycle_once(job_service=service, approval_gate=service.approval_gate)

    final = service.repository.get_job(job.id)
    assert result.pushed == [job.id]
    assert final.job.status is JobStatus.COMPLETED
    assert final.job.pushed_count == 5
    assert final.job.failed_count == 0
    assert destination.pushed[-1] == ("shop-1", unreachable)
    assert [event[2] for event in notifier.events].count(JobStatus.COMPLETED) == 1

@pytest.mark.integration
@pytest.mark.asyncio
async def test_unapproved_job_expires_after_window(service, destination) -> None:
    job = _create_job(service)
    for _ in range(3):
        await dispatch_cycle_once(job_service=service, approval_gate=service.approval_gate)
        _complete_processing(service, job.id)

    later = utcnow() + timedelta(seconds=_config().approval_window_seconds + 1)
    result = await dispatch_cycle_once(
        job_service=service, approval_gate=service.approval_gate, now=later
    )

    assert result.expired == [job.id]
    assert service.repository.get_job(job.id).job.status is JobStatus.CANCELLED
    assert destination.pushed == []


@pytest.mark.integration
@pytest.mark.asyncio
async def test_http_job_source_reads_through_the_api(database) -> None:
    app = create_app(
        _config(),
        database=database,
        backend=MockProcessingBackend(),
        destination=MockDestinationClient(),
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://optimizer.test") as http:
        response = await http.post(
            "/api/jobs",
            json={
                "owner_ref": "shop-1",
                "catalog": [
                    {
                        "id": "p-1",
                        "images": [
                            {"id": "p-1-a", "src": "https://cdn.shop.test/a.jpg", "position": 1},
                            {"id": "p-1-b", "src": "https://cdn.shop.test/b.jpg", "position": 2},
                        ],
                    }
                ],
                "selection": {"selected_items": ["p-1"], "mode": "primary_only"},
                "config": {"custom_prompt": "Soft studio light"},
            },
        )
        assert response.status_code == 201
        job_id = response.json()["job"]["id"]

        source = HttpJobSource(JobsApiClient(http))
        snapshot = await source.fetch_job(job_id)
        summary = await source.fetch_queue("shop-1", statuses=["pending"])

        assert snapshot.job.status is JobStatus.PENDING
        assert snapshot.job.custom_prompt == "Soft studio light"
        assert [item.image_ref for item in snapshot.items] == ["p-1-a"]
        assert snapshot.stats.queued == 1
        assert [job.id for job in summary.jobs] == [job_id]
        assert summary.counts_by_status["queued"] == 1

        seen: list[JobStatus] = []
        poller = ReconciliationPoller(source, interval_seconds=60)
        async with poller.watch_job(job_id, lambda current: seen.append(current.job.status)):
            while not seen:
                await asyncio.sleep(0.01)
            cancelled = await JobsApiClient(http).cancel_job(job_id)
            await poller.poll_once(poller.active_keys[0])

        assert cancelled.job.status is JobStatus.CANCELLED
        assert seen[-1] is JobStatus.CANCELLED
