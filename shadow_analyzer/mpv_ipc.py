"""
mpv JSON IPC client.

One reader thread owns the socket's read side:
- replies are matched to waiting callers through a request_id -> Future map,
  so any thread may issue correlated requests concurrently;
- everything else is an event and is queued, in arrival order, for the
  controller loop.

End of stream fails every pending request with ConnectionLost and ends the
event stream; nothing outside this client is torn down.
"""

from __future__ import annotations

import itertools
import json
import logging
import queue
import socket
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from typing import Any, Callable, Iterator

DEFAULT_RETRY_INTERVAL = 0.3
DEFAULT_REQUEST_TIMEOUT = 5.0

_EOF = object()


class ConnectionLost(Exception):
    """The media player closed the IPC channel."""


class ProtocolError(Exception):
    """A line from the media player could not be parsed."""


class CommandError(Exception):
    """The media player rejected a command."""

    def __init__(self, command: list[Any], error: str) -> None:
        super().__init__(f"{command[0] if command else '?'} failed: {error}")
        self.command = command
        self.error = error


def unix_connector(path: str) -> Callable[[], socket.socket]:
    def _connect() -> socket.socket:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(path)
        except OSError:
            sock.close()
            raise
        return sock

    return _connect


def parse_line(line: bytes | str) -> dict[str, Any]:
    try:
        message = json.loads(line)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"unparseable line: {line!r}") from exc
    if not isinstance(message, dict):
        raise ProtocolError(f"unexpected message type: {type(message).__name__}")
    return message


class MpvIpcClient:
    def __init__(
        self,
        connector: Callable[[], socket.socket],
        *,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        request_timeout: float | None = DEFAULT_REQUEST_TIMEOUT,
        logger: logging.Logger | None = None,
    ) -> None:
        self._connector = connector
        self._retry_interval = retry_interval
        self._request_timeout = request_timeout
        self._log = logger or logging.getLogger("mpv_ipc")

        self._sock: socket.socket | None = None
        self._write_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending: dict[int, Future] = {}
        self._ids = itertools.count(1)
        self._events: "queue.Queue[object]" = queue.Queue()
        self._reader: threading.Thread | None = None
        self._closed = threading.Event()

    @classmethod
    def for_socket_path(cls, path: str, **kwargs: Any) -> "MpvIpcClient":
        return cls(unix_connector(path), **kwargs)

    # --- Connection lifecycle ---
    def open(self) -> None:
        """Connect, retrying forever with a fixed backoff."""
        if self._sock is not None:
            return
        attempts = 0
        while True:
            try:
                sock = self._connector()
                break
            except OSError as exc:
                attempts += 1
                if attempts == 1:
                    self._log.info("waiting for mpv IPC server ...")
                self._log.debug("connect attempt %d failed: %s", attempts, exc)
                time.sleep(self._retry_interval)
        self._sock = sock
        # a fresh queue drops the end marker left by a previous connection
        self._events = queue.Queue()
        self._closed.clear()
        self._reader = threading.Thread(target=self._read_loop, name="mpv_ipc_reader", daemon=True)
        self._reader.start()
        self._log.info("connected to mpv after %d retries", attempts)

    def close(self) -> None:
        sock = self._sock
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()
        if self._reader is not None:
            self._reader.join(timeout=2.0)
        self._sock = None
        self._reader = None

    @property
    def connected(self) -> bool:
        return self._sock is not None and not self._closed.is_set()

    # --- Reader side ---
    def _read_loop(self) -> None:
        assert self._sock is not None
        rfile = self._sock.makefile("rb")
        try:
            for raw in rfile:
                self._dispatch(raw)
        except (OSError, ValueError) as exc:
            self._log.debug("reader stopped: %r", exc)
        finally:
            try:
                rfile.close()
            except OSError:
                pass
            self._shutdown_pending()

    def _dispatch(self, raw: bytes) -> None:
        line = raw.strip()
        if not line:
            return
        try:
            message = parse_line(line)
        except ProtocolError as exc:
            self._log.debug("skipping line: %s", exc)
            return

        if "event" not in message and "request_id" in message:
            request_id = message.get("request_id")
            with self._pending_lock:
                future = self._pending.pop(request_id, None) if isinstance(request_id, int) else None
            if future is not None:
                future.set_result(message)
            else:
                self._log.debug("dropping reply for unknown request_id %r", request_id)
            return
        if "event" in message:
            self._events.put(message)
            return
        self._log.debug("dropping unrecognised message %r", message)

    def _shutdown_pending(self) -> None:
        self._closed.set()
        with self._pending_lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(ConnectionLost("mpv closed pipe"))
        self._events.put(_EOF)
        self._log.warning("mpv IPC channel closed")

    # --- Event side ---
    def next_event(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Return the next event, ``None`` on timeout.

        Raises ConnectionLost once the channel has ended and the queue is drained.
        """
        try:
            item = self._events.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _EOF:
            # Keep the sentinel for any other consumer.
            self._events.put(_EOF)
            raise ConnectionLost("mpv closed pipe")
        return item  # type: ignore[return-value]

    def events(self) -> Iterator[dict[str, Any]]:
        while True:
            event = self.next_event()
            if event is not None:
                yield event

    # --- Writer side ---
    def send(self, command: list[Any], request_id: int | None = None) -> None:
        payload: dict[str, Any] = {"command": list(command)}
        if request_id is not None:
            payload["request_id"] = request_id
        data = (json.dumps(payload, separators=(",", ":")) + "\n").encode("utf-8")
        sock = self._sock
        if sock is None or self._closed.is_set():
            raise ConnectionLost("IPC channel is not open")
        with self._write_lock:
            try:
                sock.sendall(data)
            except OSError as exc:
                raise ConnectionLost(f"write failed: {exc}") from exc

    def command(self, *args: Any, timeout: float | None = None) -> Any:
        """Send ``args`` with a fresh request id and wait for its reply data."""
        request_id = next(self._ids)
        future: Future = Future()
        with self._pending_lock:
            self._pending[request_id] = future
        try:
            self.send(list(args), request_id=request_id)
        except ConnectionLost:
            with self._pending_lock:
                self._pending.pop(request_id, None)
            raise
        wait = self._request_timeout if timeout is None else timeout
        try:
            reply = future.result(timeout=wait)
        except FutureTimeout:
            with self._pending_lock:
                self._pending.pop(request_id, None)
            raise TimeoutError(f"no reply to request {request_id} within {wait}s") from None
        error = reply.get("error", "success")
        if error != "success":
            raise CommandError(list(args), str(error))
        return reply.get("data")

    def request(self, prop: str, *, timeout: float | None = None) -> Any:
        return self.command("get_property", prop, timeout=timeout)

    def set_property(self, prop: str, value: Any) -> None:
        self.send(["set_property", prop, value])

    def subscribe(self, event_name: str) -> None:
        self.send(["request_event", event_name, True])

    def observe(self, prop: str, slot_id: int) -> None:
        self.send(["observe_property", slot_id, prop])

    def unobserve(self, slot_id: int) -> None:
        self.send(["unobserve_property", slot_id])

    def show_text(self, message: str, duration_ms: int = 1200) -> None:
        self.send(["show-text", message, duration_ms])


__all__ = [
    "CommandError",
    "ConnectionLost",
    "MpvIpcClient",
    "ProtocolError",
    "parse_line",
    "unix_connector",
]
