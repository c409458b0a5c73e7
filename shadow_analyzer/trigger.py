"""
Subtitle tracking and trigger handling on top of the mpv IPC client.

IDLE      no subtitle line seen yet
ARMED     a line is known, no cut is playing
WATCHING  the cut window is playing; time-pos is observed and playback
          pauses once it reaches the end threshold
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Callable, Protocol

from shadow_analyzer.clips import NO_SUBTITLE_MESSAGE, CutRequest
from shadow_analyzer.models import DEFAULT_PAD_SECONDS, CutWindow, SubtitleLine
from shadow_analyzer.mpv_ipc import CommandError, ConnectionLost

SUB_TEXT_SLOT = 1
TIME_POS_SLOT = 2
DEFAULT_TRIGGER_KEYWORD = "cut_current_sub"
DEFAULT_STOP_LEAD = 0.02


class ControlChannel(Protocol):
    def request(self, prop: str) -> Any: ...
    def set_property(self, prop: str, value: Any) -> None: ...
    def subscribe(self, event_name: str) -> None: ...
    def observe(self, prop: str, slot_id: int) -> None: ...
    def unobserve(self, slot_id: int) -> None: ...
    def show_text(self, message: str, duration_ms: int = ...) -> None: ...
    def next_event(self, timeout: float | None = None) -> dict[str, Any] | None: ...


class TriggerState(enum.Enum):
    IDLE = "idle"
    ARMED = "armed"
    WATCHING = "watching"


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def selected_audio_index(track_list: Any) -> int | None:
    """ffmpeg stream index of the selected audio track, if any."""

    if not isinstance(track_list, list):
        return None
    for track in track_list:
        if not isinstance(track, dict):
            continue
        if track.get("type") == "audio" and track.get("selected") is True:
            index = track.get("ff-index", track.get("track-index"))
            if isinstance(index, int) and not isinstance(index, bool):
                return index
            return None
    return None


class ShadowController:
    def __init__(
        self,
        client: ControlChannel,
        on_cut: Callable[[CutRequest], Any],
        *,
        keyword: str = DEFAULT_TRIGGER_KEYWORD,
        pad: float = DEFAULT_PAD_SECONDS,
        stop_lead: float = DEFAULT_STOP_LEAD,
        osd_duration_ms: int = 1200,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._on_cut = on_cut
        self._keyword = keyword
        self._pad = pad
        self._stop_lead = stop_lead
        self._osd_ms = osd_duration_ms
        self._log = logger or logging.getLogger("trigger")

        self.state = TriggerState.IDLE
        self.line: SubtitleLine | None = None
        self.threshold: float | None = None
        self._position_observed = False

    def start(self) -> None:
        self._client.subscribe("client-message")
        self._client.observe("sub-text", SUB_TEXT_SLOT)

    def run(self) -> None:
        """Consume events until the channel closes (raises ConnectionLost)."""
        self.start()
        while True:
            event = self._client.next_event()
            if event is not None:
                self.handle_event(event)

    # --- Event dispatch ---
    def handle_event(self, event: dict[str, Any]) -> None:
        kind = event.get("event")
        if kind == "client-message":
            args = event.get("args")
            if isinstance(args, list) and args and args[0] == self._keyword:
                self._log.info("trigger: %s", self._keyword)
                self.on_trigger()
            return
        if kind != "property-change":
            return
        name = event.get("name")
        if name == "sub-text":
            self.on_subtitle_text(event.get("data"))
        elif name == "time-pos":
            self.on_position(event.get("data"))

    def _get(self, prop: str) -> Any:
        try:
            return self._client.request(prop)
        except CommandError as exc:
            self._log.debug("get_property %s: %s", prop, exc)
        except TimeoutError as exc:
            self._log.warning("get_property %s: %s", prop, exc)
        return None

    # --- Subtitle tracking ---
    def on_subtitle_text(self, text: Any) -> None:
        if not isinstance(text, str) or not text:
            return
        start = _as_float(self._get("sub-start"))
        end = _as_float(self._get("sub-end"))
        if start is None or end is None or not end > start:
            return
        self.line = SubtitleLine(text=text, start=start, end=end)
        self._log.debug("subtitle %.3f-%.3f %r", start, end, text)
        if self.state is TriggerState.IDLE:
            self.state = TriggerState.ARMED

    # --- Trigger ---
    def on_trigger(self) -> None:
        line = self.line
        if line is None:
            self._log.info("trigger ignored: no subtitle line seen yet")
            return

        duration = _as_float(self._get("duration")) or 0.0
        window = CutWindow.from_line(line, duration, pad=self._pad)
        if not window.is_valid:
            self._log.info("trigger ignored: empty window %s", window)
            self._show(NO_SUBTITLE_MESSAGE)
            return

        media_path = self._get("path")
        track_index = selected_audio_index(self._get("track-list"))

        self._client.set_property("pause", True)
        self._client.set_property("time-pos", window.start)
        self.threshold = window.end - self._stop_lead
        if not self._position_observed:
            self._client.observe("time-pos", TIME_POS_SLOT)
            self._position_observed = True
        self._client.set_property("pause", False)
        self.state = TriggerState.WATCHING

        if not isinstance(media_path, str) or not media_path:
            self._log.warning("unknown media path; nothing to cut")
            return
        request = CutRequest(
            text=line.text,
            window=window,
            duration=duration,
            media_path=media_path,
            track_index=track_index,
        )
        try:
            self._on_cut(request)
        except ConnectionLost:
            raise
        except Exception:  # noqa: BLE001 - one failed cycle must not end the controller
            self._log.exception("cut cycle failed for %s", window)

    # --- Position watch ---
    def on_position(self, position: Any) -> None:
        if self.state is not TriggerState.WATCHING or self.threshold is None:
            return
        pos = _as_float(position)
        if pos is None or pos < self.threshold:
            return
        self._client.set_property("pause", True)
        self._client.unobserve(TIME_POS_SLOT)
        self._position_observed = False
        self.threshold = None
        self.state = TriggerState.ARMED
        self._log.debug("window end reached at %.3f", pos)

    def _show(self, message: str) -> None:
        self._client.show_text(message, self._osd_ms)


__all__ = [
    "ControlChannel",
    "ShadowController",
    "SUB_TEXT_SLOT",
    "TIME_POS_SLOT",
    "TriggerState",
    "selected_audio_index",
]
