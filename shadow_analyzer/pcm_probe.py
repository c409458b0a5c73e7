"""Leading-edge level probe for a raw f32le PCM stream produced by ffmpeg.

The probe performs exactly one bounded read on a worker thread so the caller
can impose a wall-clock timeout. It is not a continuous meter.
"""

from __future__ import annotations

import logging
import queue
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import BinaryIO

import numpy as np

DEFAULT_FRAMES = 4096  # per channel
DEFAULT_CHANNELS = 2
BYTES_PER_SAMPLE = 4
DEFAULT_TIMEOUT = 0.2

_log = logging.getLogger("pcm_probe")


class AnalysisError(Exception):
    """The stream ended or failed before yielding any samples."""


class AnalysisTimeout(AnalysisError):
    """No data arrived within the caller's deadline."""


@dataclass(frozen=True)
class PcmStats:
    latency_ms: int
    rms: float
    peak: float
    bytes_read: int


def compute_levels(data: bytes | bytearray | memoryview) -> tuple[float, float]:
    """Return ``(rms, peak)`` over all interleaved samples in ``data``.

    Channels are not separated; a trailing partial sample is ignored.
    """

    usable = len(data) - (len(data) % BYTES_PER_SAMPLE)
    if usable <= 0:
        return 0.0, 0.0
    samples = np.frombuffer(bytes(data[:usable]), dtype="<f4").astype(np.float64)
    rms = float(np.sqrt(np.mean(samples * samples)))
    peak = float(np.max(np.abs(samples)))
    return rms, peak


def _read_once(stream: BinaryIO, nbytes: int) -> bytes:
    reader = getattr(stream, "read1", None) or stream.read
    return reader(nbytes) or b""


def reap_process(proc: subprocess.Popen) -> None:
    if proc.poll() is None:
        try:
            proc.kill()
        except OSError as exc:
            _log.warning("kill() failed for pid %s: %r", proc.pid, exc)
    try:
        proc.wait(timeout=1.0)
    except subprocess.TimeoutExpired:
        _log.error("pid %s still not reaped after SIGKILL", proc.pid)


def probe_pcm_stream(
    proc: subprocess.Popen,
    *,
    frames: int = DEFAULT_FRAMES,
    channels: int = DEFAULT_CHANNELS,
    timeout: float = DEFAULT_TIMEOUT,
    started_at: float | None = None,
) -> PcmStats:
    """Read one chunk from ``proc.stdout`` and measure it.

    ``started_at`` is a ``time.monotonic()`` stamp taken before the producer
    was spawned; latency is measured from it to the first non-empty read.
    On timeout the producer is killed and reaped before ``AnalysisTimeout``
    is raised. A zero-byte read raises ``AnalysisError`` without killing.
    """

    stream = proc.stdout
    if stream is None:
        raise AnalysisError("producer has no stdout pipe")
    begin = time.monotonic() if started_at is None else started_at
    nbytes = frames * channels * BYTES_PER_SAMPLE
    results: "queue.Queue[tuple[str, object]]" = queue.Queue(maxsize=1)

    def _worker() -> None:
        try:
            chunk = _read_once(stream, nbytes)
        except (OSError, ValueError) as exc:
            results.put(("error", f"pcm pipe read error: {exc}"))
            return
        elapsed_ms = int((time.monotonic() - begin) * 1000)
        if not chunk:
            results.put(("error", "pcm pipe returned 0 bytes"))
            return
        results.put(("ok", (elapsed_ms, chunk)))

    threading.Thread(target=_worker, name="pcm_probe", daemon=True).start()

    try:
        kind, payload = results.get(timeout=timeout)
    except queue.Empty:
        reap_process(proc)
        raise AnalysisTimeout(f"no pcm data within {timeout * 1000:.0f} ms") from None

    if kind != "ok":
        raise AnalysisError(str(payload))

    latency_ms, chunk = payload  # type: ignore[misc]
    rms, peak = compute_levels(chunk)
    return PcmStats(latency_ms=latency_ms, rms=rms, peak=peak, bytes_read=len(chunk))


__all__ = [
    "AnalysisError",
    "AnalysisTimeout",
    "PcmStats",
    "compute_levels",
    "probe_pcm_stream",
    "reap_process",
]
