"""Tests for the leading-edge f32le PCM probe."""

from __future__ import annotations

import math
import struct
import subprocess
import sys

import pytest

from shadow_analyzer.pcm_probe import (
    AnalysisError,
    AnalysisTimeout,
    compute_levels,
    probe_pcm_stream,
    reap_process,
)

WRITE_THEN_IDLE = (
    "import struct, sys, time\n"
    "sys.stdout.buffer.write(struct.pack('<8192f', *([0.5] * 8192)))\n"
    "sys.stdout.flush()\n"
    "time.sleep(30)\n"
)
IDLE_ONLY = "import time\ntime.sleep(30)\n"
EXIT_IMMEDIATELY = "pass\n"


def _producer(script: str) -> subprocess.Popen:
    return subprocess.Popen(
        [sys.executable, "-c", script],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
    )


def test_compute_levels_over_interleaved_channels() -> None:
    data = struct.pack("<4f", 1.0, -1.0, 0.0, 0.0)
    rms, peak = compute_levels(data)
    assert rms == pytest.approx(math.sqrt(0.5))
    assert peak == pytest.approx(1.0)


def test_compute_levels_ignores_partial_sample() -> None:
    data = struct.pack("<2f", 0.5, -0.5) + b"\x01\x02"
    rms, peak = compute_levels(data)
    assert rms == pytest.approx(0.5)
    assert peak == pytest.approx(0.5)
    assert compute_levels(b"") == (0.0, 0.0)


def test_probe_measures_first_chunk() -> None:
    proc = _producer(WRITE_THEN_IDLE)
    try:
        stats = probe_pcm_stream(proc, timeout=10.0)
        assert stats.bytes_read > 0
        assert stats.latency_ms >= 0
        assert stats.rms == pytest.approx(0.5)
        assert stats.peak == pytest.approx(0.5)
        # a successful probe leaves the producer running
        assert proc.poll() is None
    finally:
        reap_process(proc)
        proc.stdout.close()
    assert proc.returncode is not None


def test_probe_timeout_kills_producer() -> None:
    proc = _producer(IDLE_ONLY)
    try:
        with pytest.raises(AnalysisTimeout):
            probe_pcm_stream(proc, timeout=0.2)
        assert proc.poll() is not None
    finally:
        reap_process(proc)
        proc.stdout.close()


def test_zero_byte_read_is_an_error_without_kill() -> None:
    proc = _producer(EXIT_IMMEDIATELY)
    try:
        with pytest.raises(AnalysisError) as excinfo:
            probe_pcm_stream(proc, timeout=10.0)
        assert not isinstance(excinfo.value, AnalysisTimeout)
        assert "0 bytes" in str(excinfo.value)
        assert proc.wait(timeout=5) == 0
    finally:
        proc.stdout.close()


def test_probe_requires_stdout_pipe() -> None:
    proc = subprocess.Popen([sys.executable, "-c", EXIT_IMMEDIATELY], stdout=subprocess.DEVNULL)
    try:
        with pytest.raises(AnalysisError, match="stdout"):
            probe_pcm_stream(proc)
    finally:
        proc.wait(timeout=5)
