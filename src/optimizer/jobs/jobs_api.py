"""HTTP routes for optimization jobs."""

from __future__ import annotations

import logging
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from ..exceptions import AppError, NotFoundError
from .jobs_errors import (
    ErrorKind,
    InvalidTransitionError,
    JobValidationError,
    RetryNotPermittedError,
)
from .jobs_models import JobStatus
from .jobs_schemas import (
    CreateJobRequest,
    CreateJobResponse,
    DispatchResponse,
    ItemPayload,
    JobDetailResponse,
    JobListResponse,
    JobPayload,
    ProcessingCallbackRequest,
    PushResponse,
    QueueResponse,
    RetryAllResponse,
)
from .jobs_service import JobService

router = APIRouter(prefix="/api", tags=["jobs"])
logger = logging.getLogger(__name__)


def get_job_service(request: Request) -> JobService:
    """Fetch job service from application state."""
    try:
        return request.app.state.job_service  # type: ignore[attr-defined]
    except AttributeError as exc:  # pragma: no cover - defensive path
        raise RuntimeError("JobService is not configured") from exc


def _error(status_code: int, failure_reason: str, details: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"status": "error", "failure_reason": failure_reason, "details": details},
    )


def _raise_http(exc: AppError) -> NoReturn:
    if isinstance(exc, JobValidationError):
        code = (
            status.HTTP_403_FORBIDDEN
            if exc.kind is ErrorKind.UNAUTHORIZED
            else status.HTTP_400_BAD_REQUEST
        )
        raise _error(code, exc.kind.value, exc.message) from exc
    if isinstance(exc, NotFoundError):
        raise _error(status.HTTP_404_NOT_FOUND, "not_found", str(exc)) from exc
    if isinstance(exc, InvalidTransitionError):
        raise _error(status.HTTP_409_CONFLICT, "invalid_transition", str(exc)) from exc
    if isinstance(exc, RetryNotPermittedError):
        raise _error(status.HTTP_409_CONFLICT, "retry_not_permitted", str(exc)) from exc
    logger.exception("jobs.api.unexpected_error")
    raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", str(exc)) from exc


def _detail(service: JobService, job_id: str) -> JobDetailResponse:
    snapshot, deadline = service.get_job(job_id)
    return JobDetailResponse.from_snapshot(snapshot, deadline)


@router.post("/jobs", response_model=CreateJobResponse, status_code=status.HTTP_201_CREATED)
def create_job(
    payload: CreateJobRequest,
    service: JobService = Depends(get_job_service),
) -> CreateJobResponse:
    """Resolve the selection into images and create a pending job."""
    try:
        created = service.create_job(
            owner_ref=payload.owner_ref,
            catalog=[item.to_domain() for item in payload.catalog],
            selection=payload.selection.to_domain(),
            config=payload.config.to_domain(),
        )
    except AppError as exc:
        logger.warning(
            "jobs.api.create_rejected",
            extra={"owner_ref": payload.owner_ref, "error": str(exc)},
        )
        _raise_http(exc)
    return CreateJobResponse(
        job=JobPayload.from_domain(created.job),
        excluded_counts={
            reason.value: count for reason, count in created.selection.excluded_counts().items()
        },
    )


@router.get("/jobs", response_model=JobListResponse)
def list_jobs(
    owner_ref: str | None = Query(default=None),
    status_filter: list[JobStatus] | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    service: JobService = Depends(get_job_service),
) -> JobListResponse:
    jobs = service.list_jobs(owner_ref=owner_ref, statuses=status_filter, limit=limit)
    return JobListResponse(jobs=[JobPayload.from_domain(job) for job in jobs])


@router.get("/jobs/{job_id}", response_model=JobDetailResponse)
def get_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobDetailResponse:
    """Return the job with its items, per-status stats and approval countdown."""
    try:
        return _detail(service, job_id)
    except AppError as exc:
        _raise_http(exc)


@router.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
def discard_job(job_id: str, service: JobService = Depends(get_job_service)) -> Response:
    """Delete the job, its items and their dispatch history."""
    try:
        service.discard_job(job_id)
    except AppError as exc:
        _raise_http(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/queue", response_model=QueueResponse)
def list_queue(
    owner_ref: str = Query(..., min_length=1),
    status_filter: list[JobStatus] | None = Query(default=None, alias="status"),
    service: JobService = Depends(get_job_service),
) -> QueueResponse:
    summary = service.list_queue(owner_ref, statuses=status_filter)
    return QueueResponse.from_summary(owner_ref, summary)


@router.post("/jobs/{job_id}/dispatch", response_model=DispatchResponse)
async def dispatch_job(
    job_id: str, service: JobService = Depends(get_job_service)
) -> DispatchResponse:
    """Submit the next batch of queued items to the processing backend."""
    try:
        report = await service.dispatch(job_id)
    except AppError as exc:
        _raise_http(exc)
    return DispatchResponse(job_id=job_id, accepted=report.accepted, rejected=report.rejected)


@router.post("/jobs/{job_id}/approve", response_model=JobDetailResponse)
def approve_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobDetailResponse:
    try:
        service.approve_job(job_id)
        return _detail(service, job_id)
    except AppError as exc:
        _raise_http(exc)


@router.post("/jobs/{job_id}/cancel", response_model=JobDetailResponse)
def cancel_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobDetailResponse:
    try:
        service.cancel_job(job_id)
        return _detail(service, job_id)
    except AppError as exc:
        _raise_http(exc)


@router.post("/jobs/{job_id}/pause", response_model=JobDetailResponse)
def pause_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobDetailResponse:
    try:
        service.pause_job(job_id)
        return _detail(service, job_id)
    except AppError as exc:
        _raise_http(exc)


@router.post("/jobs/{job_id}/resume", response_model=JobDetailResponse)
def resume_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobDetailResponse:
    try:
        service.resume_job(job_id)
        return _detail(service, job_id)
    except AppError as exc:
        _raise_http(exc)


@router.post("/jobs/{job_id}/expire", response_model=JobDetailResponse)
def expire_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobDetailResponse:
    """Apply the approval deadline now instead of waiting for the next tick."""
    try:
        service.expire_job(job_id)
        return _detail(service, job_id)
    except AppError as exc:
        _raise_http(exc)


@router.post("/jobs/{job_id}/push", response_model=PushResponse)
async def push_job(job_id: str, service: JobService = Depends(get_job_service)) -> PushResponse:
    """Deliver every approved item of the job to its destination."""
    try:
        report = await service.push(job_id)
    except AppError as exc:
        _raise_http(exc)
    return PushResponse(pushed_count=report.pushed_count, failed_count=report.failed_count)


@router.post("/jobs/{job_id}/retry-failed", response_model=RetryAllResponse)
def retry_all_failed(
    job_id: str, service: JobService = Depends(get_job_service)
) -> RetryAllResponse:
    try:
        report = service.retry_all_failed(job_id)
    except AppError as exc:
        _raise_http(exc)
    return RetryAllResponse(count=report.count, held_back=report.held_back)


@router.post("/items/{item_id}/retry", response_model=ItemPayload)
def retry_item(item_id: str, service: JobService = Depends(get_job_service)) -> ItemPayload:
    try:
        item = service.retry_item(item_id)
    except AppError as exc:
        _raise_http(exc)
    return ItemPayload.from_domain(item)


@router.post("/callbacks/processing", response_model=JobDetailResponse)
def processing_callback(
    payload: ProcessingCallbackRequest,
    service: JobService = Depends(get_job_service),
) -> JobDetailResponse:
    """Completion signal written by the processing backend."""
    try:
        snapshot = service.record_processing_result(
            payload.item_id,
            succeeded=payload.success,
            result_ref=payload.result_ref,
            error_message=payload.error_message,
            attempt_number=payload.attempt_number,
        )
    except AppError as exc:
        _raise_http(exc)
    return JobDetailResponse.from_snapshot(snapshot)


__all__ = ["get_job_service", "router"]
