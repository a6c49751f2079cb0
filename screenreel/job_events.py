"""Server-Sent Events fan-out for transcode job updates.

Transcode callbacks fire on the event loop that runs the job, but cancellation
can also arrive from other threads (``cancel_all`` on shutdown, the CLI), so
publishing is thread-safe and delivery is handed to the subscribers' loop.
"""

from __future__ import annotations

import asyncio
import copy
import json
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Optional

JOB_CREATED = "job_created"
JOB_PROGRESS = "job_progress"
JOB_CANCELLED = "job_cancelled"
JOB_COMPLETED = "job_completed"
JOB_FAILED = "job_failed"
RECORDINGS_CHANGED = "recordings_changed"


@dataclass(frozen=True)
class JobEvent:
    seq: int
    type: str
    payload: Any
    timestamp: float

    @property
    def id(self) -> str:
        return str(self.seq)

    def encode(self) -> bytes:
        """One SSE frame; raises TypeError/ValueError for unserialisable payloads."""
        data = json.dumps(self.payload, separators=(",", ":"), ensure_ascii=False)
        lines = [f"id: {self.id}", f"event: {self.type}"]
        lines.extend(f"data: {line}" for line in data.splitlines() or [""])
        return ("\n".join(lines) + "\n\n").encode("utf-8")


# queue item: an event, or None once the bus is closed
QueueItem = Optional[JobEvent]


class JobEventBus:
    """Fans job events out to SSE clients.

    Every subscriber owns a bounded queue and loses its oldest events when it
    falls behind. The last ``history_limit`` events are retained so a client
    reconnecting with ``Last-Event-ID`` picks up where it left off.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        max_queue_size: int = 128,
        history_limit: int = 256,
    ) -> None:
        if max_queue_size <= 0 or history_limit <= 0:
            raise ValueError("max_queue_size and history_limit must be positive")
        self._loop = loop
        self._max_queue_size = max_queue_size
        self._history: deque[JobEvent] = deque(maxlen=history_limit)
        self._queues: set[asyncio.Queue[QueueItem]] = set()
        self._seq = 0
        self._lock = threading.Lock()

    def set_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._loop = loop

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._queues)

    async def subscribe(self, *, last_event_id: str | None = None) -> asyncio.Queue[QueueItem]:
        self.set_loop(asyncio.get_running_loop())
        queue: asyncio.Queue[QueueItem] = asyncio.Queue(maxsize=self._max_queue_size)
        after = _parse_event_id(last_event_id)
        with self._lock:
            self._queues.add(queue)
            backlog = [event for event in self._history if after is None or event.seq > after]
        for event in backlog:
            _put_dropping_oldest(queue, event)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[QueueItem]) -> None:
        with self._lock:
            self._queues.discard(queue)

    def publish(self, event_type: str, payload: Any) -> JobEvent:
        if not event_type or not isinstance(event_type, str):
            raise ValueError("event_type must be a non-empty string")
        if isinstance(payload, (dict, list)):
            payload = copy.deepcopy(payload)
        with self._lock:
            self._seq += 1
            event = JobEvent(self._seq, event_type, payload, time.time())
            self._history.append(event)
            loop = self._loop
            queues = list(self._queues)
        self._deliver(loop, queues, event)
        return event

    def close(self) -> None:
        """Wake every subscriber with ``None`` so their streams can end."""
        with self._lock:
            loop = self._loop
            queues = list(self._queues)
        self._deliver(loop, queues, None)

    @staticmethod
    def _deliver(
        loop: asyncio.AbstractEventLoop | None,
        queues: list[asyncio.Queue[QueueItem]],
        item: QueueItem,
    ) -> None:
        if not queues:
            return

        def _fan_out() -> None:
            for queue in queues:
                _put_dropping_oldest(queue, item)

        if loop is None or loop.is_closed():
            _fan_out()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            _fan_out()
        else:
            loop.call_soon_threadsafe(_fan_out)


def _put_dropping_oldest(queue: asyncio.Queue[QueueItem], item: QueueItem) -> None:
    if queue.full():
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
    try:
        queue.put_nowait(item)
    except asyncio.QueueFull:
        pass


def _parse_event_id(candidate: str | None) -> int | None:
    try:
        return int(candidate) if candidate else None
    except ValueError:
        return None
