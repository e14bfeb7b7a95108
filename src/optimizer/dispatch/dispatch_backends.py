"""Collaborator interfaces for processing and delivery, with HTTP drivers."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..jobs.jobs_errors import SubmissionError
from ..jobs.jobs_models import Item

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmissionRequest:
    """Everything the processing backend needs to transform one image."""

    job_id: str
    item_id: str
    attempt_number: int
    source_ref: str
    prompt: str | None
    ai_model: str


@dataclass(slots=True)
class SubmissionReceipt:
    """Acceptance of a submission; completion is reported later via callback."""

    item_id: str
    provider_reference: str | None = None


class ProcessingBackend(ABC):
    """Accepts image transformation tasks without waiting for their result."""

    @abstractmethod
    async def submit(self, request: SubmissionRequest) -> SubmissionReceipt:
        """Submit ``request``; raise :class:`SubmissionError` when rejected."""


class DestinationClient(ABC):
    """Delivers processed images to the owner's destination."""

    @abstractmethod
    async def push(self, owner_ref: str, item: Item) -> None:
        """Deliver ``item``; raise :class:`SubmissionError` on failure."""


def extract_task_reference(body: Any) -> str | None:
    """Pull the backend task id from ``data.taskId``, ``data.id`` or ``id``."""

    if not isinstance(body, dict):
        return None
    data = body.get("data")
    if isinstance(data, dict):
        for key in ("taskId", "id"):
            if data.get(key):
                return str(data[key])
    if body.get("id"):
        return str(body["id"])
    return None


@dataclass(slots=True)
class HttpProcessingBackend(ProcessingBackend):
    """Submit tasks to an HTTP processing API that calls back on completion."""

    endpoint: str
    callback_url: str
    api_key: str = ""
    timeout_seconds: float = 15.0
    log: logging.Logger = field(default_factory=lambda: logger)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def submit(self, request: SubmissionRequest) -> SubmissionReceipt:
        payload = {
            "model": request.ai_model,
            "prompt": request.prompt,
            "image_url": request.source_ref,
            "callBackUrl": self.callback_url,
            "metadata": {
                "job_id": request.job_id,
                "item_id": request.item_id,
                "attempt_number": request.attempt_number,
            },
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(self.endpoint, json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise SubmissionError(f"Processing backend unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise SubmissionError(
                f"Processing backend rejected submission with status {response.status_code}"
            )
        try:
            body = response.json()
        except ValueError:
            body = None
        reference = extract_task_reference(body)
        self.log.info(
            "dispatch.backend.accepted",
            extra={"item_id": request.item_id, "provider_reference": reference},
        )
        return SubmissionReceipt(item_id=request.item_id, provider_reference=reference)


@dataclass(slots=True)
class HttpDestinationClient(DestinationClient):
    """Upload optimised images to the destination integration."""

    endpoint: str
    api_key: str = ""
    timeout_seconds: float = 15.0

    async def push(self, owner_ref: str, item: Item) -> None:
        if not item.result_ref:
            raise SubmissionError(f"Item '{item.id}' has no processed result to deliver")
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {
            "owner_ref": owner_ref,
            "product_id": item.group_ref,
            "image_id": item.image_ref,
            "position": item.position,
            "src": item.result_ref,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(self.endpoint, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise SubmissionError(f"Destination unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise SubmissionError(f"Destination rejected image with status {response.status_code}")


__all__ = [
    "DestinationClient",
    "HttpDestinationClient",
    "HttpProcessingBackend",
    "ProcessingBackend",
    "SubmissionReceipt",
    "SubmissionRequest",
    "extract_task_reference",
]
