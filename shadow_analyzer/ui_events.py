"""Server-Sent Events publisher for the analyzer's web view."""

from __future__ import annotations

import asyncio
import copy
import threading
import time
from typing import Any, Dict, Set


class UiEventBus:
    """In-process publisher that fans out UI events to SSE clients.

    Only the newest event of each type is retained; new subscribers get
    those first, mirroring the mailbox "freshest state only" contract.
    """

    def __init__(self, *, max_queue_size: int = 16) -> None:
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive")
        self._max_queue_size = max_queue_size
        self._latest: Dict[str, dict[str, Any]] = {}
        self._subscribers: Set[asyncio.Queue] = set()
        self._seq = 0
        self._lock = threading.Lock()

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        with self._lock:
            self._subscribers.add(queue)
            backlog = sorted(self._latest.values(), key=lambda event: event["seq"])
        for event in backlog:
            self._enqueue_nowait(queue, event)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers.discard(queue)

    def publish(self, event_type: str, payload: Any) -> dict[str, Any]:
        """Deliver an event; must be called on the loop that owns the queues."""
        if not event_type or not isinstance(event_type, str):
            raise ValueError("event_type must be a non-empty string")
        with self._lock:
            self._seq += 1
            event = {
                "id": str(self._seq),
                "seq": self._seq,
                "type": event_type,
                "timestamp": time.time(),
                "payload": copy.deepcopy(payload) if isinstance(payload, (dict, list)) else payload,
            }
            self._latest[event_type] = event
            subscribers = list(self._subscribers)
        for queue in subscribers:
            self._enqueue_nowait(queue, event)
        return event

    def latest(self, event_type: str) -> Any:
        with self._lock:
            event = self._latest.get(event_type)
        return None if event is None else event["payload"]

    def _enqueue_nowait(self, queue: asyncio.Queue, event: dict[str, Any]) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Slow consumer; drop newest event for this subscriber.
                pass


__all__ = ["UiEventBus"]
