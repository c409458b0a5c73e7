"""Tests for cut window arithmetic and snapshot payloads."""

from __future__ import annotations

import pytest

from shadow_analyzer.models import AnalysisSnapshot, CutWindow, SubtitleLine


@pytest.mark.parametrize(
    "line, duration, expected",
    [
        (SubtitleLine("a", 10.0, 12.0), 100.0, (9.9, 12.1)),
        (SubtitleLine("a", 0.05, 1.0), 100.0, (0.0, 1.1)),
        (SubtitleLine("a", 98.0, 99.95), 100.0, (97.9, 100.0)),
        (SubtitleLine("a", 10.0, 12.0), 0.0, (9.9, 12.1)),
        (SubtitleLine("a", 10.0, 12.0), None, (9.9, 12.1)),
    ],
)
def test_window_from_line(line, duration, expected) -> None:
    window = CutWindow.from_line(line, duration)
    assert (window.start, window.end) == pytest.approx(expected)
    assert window.is_valid


def test_window_past_duration_is_invalid() -> None:
    window = CutWindow.from_line(SubtitleLine("a", 10.0, 12.0), 5.0)
    assert not window.is_valid
    assert window.length == 0.0


def test_window_milliseconds_are_rounded() -> None:
    window = CutWindow(9.9, 12.1)
    assert (window.start_ms, window.end_ms) == (9900, 12100)
    assert window.length == pytest.approx(2.2)


def test_snapshot_payload_has_every_field() -> None:
    snapshot = AnalysisSnapshot(
        text=None,
        start=1.0,
        end=2.0,
        duration=10.0,
        track_index=None,
        clip_path="a.wav",
        latest_clip_path="latest.wav",
        rms=0.1,
    )
    payload = snapshot.to_payload()
    assert payload["text"] is None
    assert payload["rms"] == 0.1
    assert payload["mic_path"] is None
    assert set(payload) >= {"latency_ms", "peak", "latest_mic_path"}
