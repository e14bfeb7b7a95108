"""Periodic authoritative re-read of observed jobs and queues.

Each observed key (a job id, or an owner's queue) is backed by exactly one
polling task no matter how many views subscribe to it. Every tick replaces
the key's snapshot with a full re-read from the source; nothing is diffed.
The task stops as soon as the last subscriber leaves.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Union

from ..approval.approval_gate import ApprovalGate
from ..jobs.jobs_models import JobSnapshot, JobStatus, QueueSummary
from .job_sources import JobSource

logger = logging.getLogger(__name__)

Snapshot = Union[JobSnapshot, QueueSummary]
Listener = Callable[[Any], Any]


@dataclass(frozen=True, slots=True)
class WatchKey:
    kind: str
    identifier: str
    statuses: tuple[str, ...] = ()


@dataclass(slots=True)
class _Watch:
    key: WatchKey
    listeners: dict[int, Listener] = field(default_factory=dict)
    snapshot: Snapshot | None = None
    task: asyncio.Task[None] | None = None
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    ticks: int = 0


class Subscription:
    """Handle returned to an observer; closing it releases the shared poll."""

    def __init__(self, poller: "ReconciliationPoller", key: WatchKey, token: int) -> None:
        self._poller = poller
        self.key = key
        self._token = token
        self._closed = False

    @property
    def snapshot(self) -> Snapshot | None:
        return self._poller.snapshot(self.key)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._poller._release(self.key, self._token)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class ReconciliationPoller:
    """Share one poll task per observed job or queue view."""

    def __init__(
        self,
        source: JobSource,
        *,
        interval_seconds: float = 5.0,
        gate: ApprovalGate | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._source = source
        self._interval = float(interval_seconds)
        self._gate = gate
        self._watches: dict[WatchKey, _Watch] = {}
        self._next_token = 0

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------
    def watch_job(self, job_id: str, listener: Listener | None = None) -> Subscription:
        return self._subscribe(WatchKey("job", job_id), listener)

    def watch_queue(
        self,
        owner_ref: str,
        listener: Listener | None = None,
        *,
        statuses: tuple[JobStatus | str, ...] = (),
    ) -> Subscription:
        key = WatchKey("queue", owner_ref, tuple(JobStatus(status).value for status in statuses))
        return self._subscribe(key, listener)

    def _subscribe(self, key: WatchKey, listener: Listener | None) -> Subscription:
        watch = self._watches.get(key)
        if watch is None:
            watch = _Watch(key=key)
            self._watches[key] = watch
            watch.task = asyncio.create_task(self._run(watch), name=f"poll:{key.kind}:{key.identifier}")
            logger.info("polling.watch.started", extra={"kind": key.kind, "key": key.identifier})
        self._next_token += 1
        token = self._next_token
        watch.listeners[token] = listener if listener is not None else (lambda _snapshot: None)
        return Subscription(self, key, token)

    async def _release(self, key: WatchKey, token: int) -> None:
        watch = self._watches.get(key)
        if watch is None:
            return
        watch.listeners.pop(token, None)
        if watch.listeners:
            return
        self._watches.pop(key, None)
        await self._stop_watch(watch)
        logger.info("polling.watch.stopped", extra={"kind": key.kind, "key": key.identifier})

    @staticmethod
    async def _stop_watch(watch: _Watch) -> None:
        watch.stop.set()
        if watch.task is not None:
            watch.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watch.task

    async def close(self) -> None:
        watches = list(self._watches.values())
        self._watches.clear()
        for watch in watches:
            await self._stop_watch(watch)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def snapshot(self, key: WatchKey) -> Snapshot | None:
        watch = self._watches.get(key)
        return watch.snapshot if watch is not None else None

    def is_watching(self, key: WatchKey) -> bool:
        return key in self._watches

    def subscriber_count(self, key: WatchKey) -> int:
        watch = self._watches.get(key)
        return len(watch.listeners) if watch is not None else 0

    def tick_count(self, key: WatchKey) -> int:
        watch = self._watches.get(key)
        return watch.ticks if watch is not None else 0

    @property
    def active_keys(self) -> list[WatchKey]:
        return list(self._watches)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    async def _fetch(self, key: WatchKey) -> Snapshot:
        if key.kind == "job":
            snapshot = await self._source.fetch_job(key.identifier)
            if self._gate is not None and snapshot.job.status is JobStatus.AWAITING_APPROVAL:
                decision = await asyncio.to_thread(self._gate.check, snapshot)
                snapshot = decision.snapshot
            return snapshot
        return await self._source.fetch_queue(key.identifier, statuses=key.statuses or None)

    async def poll_once(self, key: WatchKey) -> Snapshot:
        """Re-read ``key`` immediately, replacing its snapshot and notifying listeners."""

        snapshot = await self._fetch(key)
        watch = self._watches.get(key)
        if watch is not None:
            watch.snapshot = snapshot
            watch.ticks += 1
            await self._notify(watch, snapshot)
        return snapshot

    async def _notify(self, watch: _Watch, snapshot: Snapshot) -> None:
        for listener in list(watch.listeners.values()):
            result = listener(snapshot)
            if inspect.isawaitable(result):
                await result

    async def _run(self, watch: _Watch) -> None:
        key = watch.key
        while not watch.stop.is_set():
            try:
                await self.poll_once(key)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "polling.tick.failed", extra={"kind": key.kind, "key": key.identifier}
                )
            try:
                await asyncio.wait_for(watch.stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue


__all__ = ["ReconciliationPoller", "Subscription", "WatchKey"]
