"""Where the poller reads job state from: the local store or the HTTP API."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from httpx import AsyncClient

from ..jobs.jobs_models import JobSnapshot, JobStatus, QueueSummary
from ..jobs.jobs_repository import JobRepository
from ..jobs.jobs_schemas import (
    JobDetailResponse,
    PushResponse,
    QueueResponse,
    RetryAllResponse,
)


class JobSource(Protocol):
    async def fetch_job(self, job_id: str) -> JobSnapshot:  # pragma: no cover - protocol
        ...

    async def fetch_queue(
        self, owner_ref: str, *, statuses: Iterable[str] | None = None
    ) -> QueueSummary:  # pragma: no cover - protocol
        ...


@dataclass(slots=True)
class RepositoryJobSource:
    """Read snapshots straight from :class:`JobRepository` in a worker thread."""

    repository: JobRepository

    async def fetch_job(self, job_id: str) -> JobSnapshot:
        return await asyncio.to_thread(self.repository.get_job, job_id)

    async def fetch_queue(
        self, owner_ref: str, *, statuses: Iterable[str] | None = None
    ) -> QueueSummary:
        return await asyncio.to_thread(self.repository.list_queue, owner_ref, statuses=statuses)


@dataclass(slots=True)
class JobsApiClient:
    """Convenience wrapper around :class:`httpx.AsyncClient` with typed responses."""

    http: AsyncClient

    async def get_job(self, job_id: str) -> JobDetailResponse:
        response = await self.http.get(f"/api/jobs/{job_id}")
        response.raise_for_status()
        return JobDetailResponse.model_validate(response.json())

    async def list_queue(
        self, owner_ref: str, statuses: Iterable[str] | None = None
    ) -> QueueResponse:
        params: list[tuple[str, str]] = [("owner_ref", owner_ref)]
        for status in statuses or ():
            params.append(("status", JobStatus(status).value))
        response = await self.http.get("/api/queue", params=params)
        response.raise_for_status()
        return QueueResponse.model_validate(response.json())

    async def approve_job(self, job_id: str) -> JobDetailResponse:
        response = await self.http.post(f"/api/jobs/{job_id}/approve")
        response.raise_for_status()
        return JobDetailResponse.model_validate(response.json())

    async def cancel_job(self, job_id: str) -> JobDetailResponse:
        response = await self.http.post(f"/api/jobs/{job_id}/cancel")
        response.raise_for_status()
        return JobDetailResponse.model_validate(response.json())

    async def push_job(self, job_id: str) -> PushResponse:
        response = await self.http.post(f"/api/jobs/{job_id}/push")
        response.raise_for_status()
        return PushResponse.model_validate(response.json())

    async def retry_failed(self, job_id: str) -> RetryAllResponse:
        response = await self.http.post(f"/api/jobs/{job_id}/retry-failed")
        response.raise_for_status()
        return RetryAllResponse.model_validate(response.json())


@dataclass(slots=True)
class HttpJobSource:
    """Poll a remote engine through its HTTP API."""

    client: JobsApiClient

    async def fetch_job(self, job_id: str) -> JobSnapshot:
        detail = await self.client.get_job(job_id)
        return detail.to_snapshot()

    async def fetch_queue(
        self, owner_ref: str, *, statuses: Iterable[str] | None = None
    ) -> QueueSummary:
        response = await self.client.list_queue(owner_ref, statuses)
        return response.to_summary()


__all__ = ["HttpJobSource", "JobSource", "JobsApiClient", "RepositoryJobSource"]
