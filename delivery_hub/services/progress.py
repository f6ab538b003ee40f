from __future__ import annotations
import asyncio
import time
from collections import OrderedDict, defaultdict
from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass
from typing import Callable

from delivery_hub.core.config import settings


@dataclass(frozen=True)
class ProgressEvent:
    """
    Progress of a long-running operation, keyed by batch id.

    Same payload for stream subscribers and for the `details.progress` of the
    operation's log entry (polling fallback).
    """
    batch_id: str
    operation_type: str
    phase: str  # started|processing|retrying|finished|failed
    current: int = 0
    total: int = 0
    current_city_name: str | None = None
    retry_attempt: int | None = None
    retry_max: int | None = None
    message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in ("finished", "failed")

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


class ProgressHub:
    """
    In-process fan-out of progress events.

    Subscribers get the latest event first, so a client that reconnects with a
    batch id picks up where the operation is now. Finished batches are kept
    for `finished_ttl_seconds`, and at most `max_batches` batches are kept in
    total (oldest first out). After that the operation log's
    `details.progress` is the only record.
    """

    def __init__(
        self,
        *,
        queue_size: int = 256,
        finished_ttl_seconds: float = 600.0,
        max_batches: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._queue_size = queue_size
        self._finished_ttl = finished_ttl_seconds
        self._max_batches = max(1, max_batches)
        self._clock = clock
        self._latest: OrderedDict[str, ProgressEvent] = OrderedDict()
        self._finished_at: dict[str, float] = {}
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def __len__(self) -> int:
        return len(self._latest)

    def _forget(self, batch_id: str) -> None:
        self._latest.pop(batch_id, None)
        self._finished_at.pop(batch_id, None)

    def _expired(self, batch_id: str) -> bool:
        at = self._finished_at.get(batch_id)
        return at is not None and self._clock() - at >= self._finished_ttl

    def _evict(self) -> None:
        for batch_id in [b for b in self._finished_at if self._expired(b)]:
            self._forget(batch_id)
        while len(self._latest) > self._max_batches:
            self._forget(next(iter(self._latest)))

    def latest(self, batch_id: str) -> ProgressEvent | None:
        if self._expired(batch_id):
            self._forget(batch_id)
            return None
        return self._latest.get(batch_id)

    def publish(self, event: ProgressEvent) -> None:
        self._latest[event.batch_id] = event
        self._latest.move_to_end(event.batch_id)
        if event.is_terminal:
            self._finished_at[event.batch_id] = self._clock()
        else:
            self._finished_at.pop(event.batch_id, None)
        self._evict()

        for q in list(self._subscribers.get(event.batch_id, ())):
            if q.full():
                # slow consumer: drop its oldest event, keep the newest
                q.get_nowait()
            q.put_nowait(event)

    async def subscribe(self, batch_id: str, *, idle_timeout: float | None = None) -> AsyncIterator[ProgressEvent]:
        q: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[batch_id].add(q)
        try:
            latest = self.latest(batch_id)
            if latest is not None:
                yield latest
                if latest.is_terminal:
                    return
            while True:
                try:
                    event = await asyncio.wait_for(q.get(), timeout=idle_timeout)
                except asyncio.TimeoutError:
                    return
                yield event
                if event.is_terminal:
                    return
        finally:
            self._subscribers[batch_id].discard(q)
            if not self._subscribers[batch_id]:
                self._subscribers.pop(batch_id, None)


progress_hub = ProgressHub(
    finished_ttl_seconds=settings.progress_finished_ttl_seconds,
    max_batches=settings.progress_max_batches,
)
