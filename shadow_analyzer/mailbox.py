"""Single-slot, last-write-wins handoff between worker threads and the UI."""

from __future__ import annotations

import threading
from typing import Callable, Generic, TypeVar

T = TypeVar("T")

FALLBACK_DEVICE = "__fallback__"

_EMPTY = object()


class Mailbox(Generic[T]):
    """Capacity-1 coalescing channel with an associated wake callback.

    ``publish()`` overwrites any undelivered value. The wake callback runs
    once per empty-to-full transition, so publishing twice before a consume
    wakes the consumer once and it only ever sees the newest value.
    """

    def __init__(self, name: str = "mailbox", *, wake: Callable[[], None] | None = None) -> None:
        self.name = name
        self._cond = threading.Condition()
        self._value: object = _EMPTY
        self._wake = wake
        self._published = 0
        self._coalesced = 0

    def set_wake(self, wake: Callable[[], None] | None) -> None:
        with self._cond:
            self._wake = wake
            pending = self._value is not _EMPTY
        if wake is not None and pending:
            wake()

    def publish(self, value: T) -> None:
        with self._cond:
            was_empty = self._value is _EMPTY
            if not was_empty:
                self._coalesced += 1
            self._value = value
            self._published += 1
            wake = self._wake
            self._cond.notify_all()
        if was_empty and wake is not None:
            wake()

    def take(self) -> T | None:
        with self._cond:
            return self._take_locked()

    def wait(self, timeout: float | None = None) -> T | None:
        with self._cond:
            self._cond.wait_for(lambda: self._value is not _EMPTY, timeout=timeout)
            return self._take_locked()

    def peek(self) -> T | None:
        with self._cond:
            return None if self._value is _EMPTY else self._value  # type: ignore[return-value]

    def _take_locked(self) -> T | None:
        if self._value is _EMPTY:
            return None
        value = self._value
        self._value = _EMPTY
        return value  # type: ignore[return-value]

    @property
    def stats(self) -> dict[str, int]:
        with self._cond:
            return {"published": self._published, "coalesced": self._coalesced}


class DeviceSelection:
    """The user's microphone choice, written by the UI and read per cycle."""

    def __init__(self, device_id: str | None = None) -> None:
        self._lock = threading.Lock()
        self._device_id = _normalize_device(device_id)

    def set(self, device_id: str | None) -> None:
        with self._lock:
            self._device_id = _normalize_device(device_id)

    def get(self) -> str | None:
        """Return the explicit device id, or ``None`` for the fallback."""
        with self._lock:
            return self._device_id


def _normalize_device(device_id: str | None) -> str | None:
    if device_id is None:
        return None
    value = str(device_id).strip()
    if not value or value == FALLBACK_DEVICE:
        return None
    return value


__all__ = ["DeviceSelection", "FALLBACK_DEVICE", "Mailbox"]
