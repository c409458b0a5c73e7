#!/usr/bin/env python3
"""
Clip/mic orchestration for one trigger cycle.

Per cycle:
- two detached ffmpeg writers cut the reference clip (unique + latest.wav);
- retention trims old clips;
- an ffmpeg recorder captures the user's take into latest_mic.wav, then the
  take is copied to a unique name and mic retention runs;
- an ffmpeg f32le pipe is probed for first-byte latency / RMS / peak.

Clip, mic and analysis are independent failure domains: each logs its own
failures and the others carry on. Results converge on the snapshot mailbox.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Sequence

from shadow_analyzer import ffmpeg_io
from shadow_analyzer.mailbox import DeviceSelection, Mailbox
from shadow_analyzer.models import (
    AnalysisSnapshot,
    LATEST_CLIP_NAME,
    LATEST_MIC_NAME,
    ClipArtifact,
    CutWindow,
    MicDevice,
    RetentionSet,
)
from shadow_analyzer.pcm_probe import (
    AnalysisError,
    AnalysisTimeout,
    probe_pcm_stream,
    reap_process,
)
from shadow_analyzer.retention import prune

WAV_HEADER_BYTES = 44
DEFAULT_KEEP = 5
NO_SUBTITLE_MESSAGE = "no active subtitle"

Popen = Callable[..., subprocess.Popen]


class ProcessSpawnFailure(Exception):
    """An external encoder/recorder could not be started."""


class ProcessExitFailure(Exception):
    """An external encoder/recorder exited with a non-zero status."""

    def __init__(self, label: str, returncode: int | None) -> None:
        super().__init__(f"{label} exited with rc={returncode}")
        self.label = label
        self.returncode = returncode


@dataclass(frozen=True)
class CutRequest:
    text: str | None
    window: CutWindow
    duration: float
    media_path: str
    track_index: int | None = None


@dataclass(frozen=True)
class CyclePlan:
    clip: ClipArtifact
    mic: ClipArtifact

    @classmethod
    def for_request(cls, out_dir: Path, request: CutRequest) -> "CyclePlan":
        base = Path(request.media_path).stem or "clip"
        stem = f"{base}_{request.window.start_ms}_{request.window.end_ms}"
        return cls(
            clip=ClipArtifact(out_dir / f"{stem}.wav", out_dir / LATEST_CLIP_NAME),
            mic=ClipArtifact(out_dir / f"{stem}_mic.wav", out_dir / LATEST_MIC_NAME),
        )


@dataclass
class CycleHandles:
    """Background work started by one cycle, mostly for tests and shutdown."""

    plan: CyclePlan
    threads: list[threading.Thread]
    device: MicDevice | None
    mic_ready: bool

    def join(self, timeout: float | None = None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self.threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)


class _SnapshotBuilder:
    """Merges per-cycle results; fields are only ever added."""

    def __init__(self, base: AnalysisSnapshot, mailbox: Mailbox[AnalysisSnapshot]) -> None:
        self._lock = threading.Lock()
        self._current = base
        self._mailbox = mailbox

    def publish(self, **fields: Any) -> AnalysisSnapshot:
        with self._lock:
            additions = {key: value for key, value in fields.items() if value is not None}
            self._current = replace(self._current, **additions)
            snapshot = self._current
            self._mailbox.publish(snapshot)
        return snapshot


def wait_for_file(
    path: Path,
    *,
    timeout: float = 0.15,
    poll: float = 0.025,
    min_size: int = WAV_HEADER_BYTES,
) -> bool:
    """Poll until ``path`` exists and holds more than a bare WAV header."""

    deadline = time.monotonic() + timeout
    while True:
        try:
            if path.stat().st_size > min_size:
                return True
        except OSError:
            pass
        if time.monotonic() >= deadline:
            return False
        time.sleep(poll)


def confirmation_message(request: CutRequest | None) -> str:
    if request is None or not request.window.is_valid:
        return NO_SUBTITLE_MESSAGE
    track = "default" if request.track_index is None else str(request.track_index)
    return f"cut {request.window.start:.3f}-{request.window.end:.3f} (track {track})"


class ClipOrchestrator:
    def __init__(
        self,
        out_dir: Path | str,
        *,
        mailbox: Mailbox[AnalysisSnapshot],
        selection: DeviceSelection,
        device_source: Callable[[], Sequence[MicDevice]] = list,
        notify: Callable[[str], None] | None = None,
        ffmpeg_binary: str = ffmpeg_io.DEFAULT_BINARY,
        sample_rate: int = ffmpeg_io.DEFAULT_SAMPLE_RATE,
        mic_input_format: str = "alsa",
        keep: int = DEFAULT_KEEP,
        mic_keep: int = DEFAULT_KEEP,
        analysis_timeout: float = 0.2,
        analysis_frames: int = 4096,
        ready_timeout: float = 0.15,
        ready_poll: float = 0.025,
        popen: Popen = subprocess.Popen,
        logger: logging.Logger | None = None,
    ) -> None:
        self.out_dir = Path(out_dir)
        self.mailbox = mailbox
        self.selection = selection
        self._device_source = device_source
        self._notify = notify
        self._ffmpeg = ffmpeg_binary
        self._sample_rate = sample_rate
        self._mic_format = mic_input_format
        self._keep = keep
        self._mic_keep = mic_keep
        self._analysis_timeout = analysis_timeout
        self._analysis_frames = analysis_frames
        self._ready_timeout = ready_timeout
        self._ready_poll = ready_poll
        self._popen = popen
        self._log = logger or logging.getLogger("clips")

    # --- Process helpers ---
    def _spawn(self, cmd: list[str], label: str, *, stdout: Any = subprocess.DEVNULL) -> subprocess.Popen:
        self._log.debug("Launching %s: %s", label, " ".join(cmd))
        try:
            return self._popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=subprocess.DEVNULL,
            )
        except (OSError, ValueError) as exc:
            raise ProcessSpawnFailure(f"{label}: {exc}") from exc

    @staticmethod
    def _check_exit(proc: subprocess.Popen, label: str) -> None:
        rc = proc.wait()
        if rc != 0:
            raise ProcessExitFailure(label, rc)

    def _supervise(self, proc: subprocess.Popen, label: str) -> threading.Thread:
        def _wait() -> None:
            try:
                self._check_exit(proc, label)
            except ProcessExitFailure as exc:
                self._log.warning("%s", exc)
            else:
                self._log.debug("%s finished rc=0", label)

        thread = threading.Thread(target=_wait, name=f"supervise_{label}", daemon=True)
        thread.start()
        return thread

    def _background(self, target: Callable[[], None], name: str) -> threading.Thread:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        return thread

    # --- Device resolution ---
    def resolve_device(self) -> MicDevice | None:
        selected = self.selection.get()
        devices = list(self._device_source())
        if selected:
            for device in devices:
                if device.id == selected:
                    return device
            return MicDevice(id=selected, name=selected)
        if devices:
            return devices[0]
        return None

    # --- Cycle ---
    def run_cycle(self, request: CutRequest) -> CycleHandles | None:
        """Start every sub-task for ``request`` and return without waiting."""

        if not request.window.is_valid:
            self._log.info("skipping cut: empty window %s", request.window)
            self._emit(NO_SUBTITLE_MESSAGE)
            return None

        self.out_dir.mkdir(parents=True, exist_ok=True)
        plan = CyclePlan.for_request(self.out_dir, request)
        base_args = ffmpeg_io.cut_input_args(request.media_path, request.window, request.track_index)
        threads: list[threading.Thread] = []

        for target, label in ((plan.clip.unique_path, "clip_writer"), (plan.clip.latest_path, "latest_writer")):
            cmd = ffmpeg_io.wav_writer_command(
                base_args, target, binary=self._ffmpeg, sample_rate=self._sample_rate
            )
            try:
                proc = self._spawn(cmd, label)
            except ProcessSpawnFailure as exc:
                self._log.error("ffmpeg wav spawn error: %s", exc)
                continue
            threads.append(self._supervise(proc, label))

        clip_rule = RetentionSet(
            directory=self.out_dir,
            keep_count=self._keep,
            excluded_paths=frozenset({plan.clip.unique_path, plan.clip.latest_path}),
            match="*.wav",
            ignore=("*_mic.wav",),
        )
        threads.append(self._background(lambda: prune(clip_rule), "clip_retention"))

        builder = _SnapshotBuilder(
            AnalysisSnapshot(
                text=request.text,
                start=request.window.start,
                end=request.window.end,
                duration=request.duration,
                track_index=request.track_index,
                clip_path=str(plan.clip.unique_path),
                latest_clip_path=str(plan.clip.latest_path),
            ),
            self.mailbox,
        )

        device = self.resolve_device()
        mic_proc: subprocess.Popen | None = None
        if device is None:
            self._log.info("no capture device available; skipping mic capture")
        else:
            mic_proc = self._start_recorder(device, request.window.length, plan)
            if mic_proc is not None:
                recorder = mic_proc
                threads.append(
                    self._background(lambda: self._finish_mic(recorder, plan, builder), "mic_recorder")
                )

        threads.append(self._background(lambda: self._run_analysis(base_args, builder), "pcm_analysis"))

        mic_ready = False
        if mic_proc is not None:
            mic_ready = wait_for_file(
                plan.mic.latest_path, timeout=self._ready_timeout, poll=self._ready_poll
            )
            if not mic_ready:
                self._log.debug("mic file not ready within %.0f ms", self._ready_timeout * 1000)

        self._emit(confirmation_message(request))
        return CycleHandles(plan=plan, threads=threads, device=device, mic_ready=mic_ready)

    def _emit(self, message: str) -> None:
        if self._notify is None:
            return
        try:
            self._notify(message)
        except Exception as exc:  # noqa: BLE001 - OSD feedback is best-effort
            self._log.debug("unable to show confirmation: %r", exc)

    # --- Mic ---
    def _start_recorder(self, device: MicDevice, seconds: float, plan: CyclePlan) -> subprocess.Popen | None:
        try:
            plan.mic.latest_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            self._log.warning("unable to clear %s: %s", plan.mic.latest_path, exc)
        cmd = ffmpeg_io.mic_recorder_command(
            device.id,
            seconds,
            plan.mic.latest_path,
            binary=self._ffmpeg,
            input_format=self._mic_format,
            sample_rate=self._sample_rate,
        )
        try:
            proc = self._spawn(cmd, "mic_recorder")
        except ProcessSpawnFailure as exc:
            self._log.error("mic recorder spawn error: %s", exc)
            return None
        self._log.info("recording %.2fs from %s", seconds, device.name)
        return proc

    def _finish_mic(self, proc: subprocess.Popen, plan: CyclePlan, builder: _SnapshotBuilder) -> None:
        try:
            self._check_exit(proc, "mic_recorder")
        except ProcessExitFailure as exc:
            self._log.warning("%s", exc)
            return

        mic_path: str | None = None
        try:
            shutil.copy2(plan.mic.latest_path, plan.mic.unique_path)
            mic_path = str(plan.mic.unique_path)
        except OSError as exc:
            self._log.warning("copy %s -> %s failed: %s", plan.mic.latest_path, plan.mic.unique_path, exc)

        prune(
            RetentionSet(
                directory=self.out_dir,
                keep_count=self._mic_keep,
                excluded_paths=frozenset({plan.mic.unique_path, plan.mic.latest_path}),
                match="*_mic.wav",
            )
        )
        builder.publish(mic_path=mic_path, latest_mic_path=str(plan.mic.latest_path))

    # --- Analysis ---
    def _wait_ended(self, proc: subprocess.Popen) -> None:
        try:
            rc = proc.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            self._log.warning("pcm_pipe still running after end of stream; killing")
            reap_process(proc)
            return
        if rc != 0:
            self._log.warning("%s", ProcessExitFailure("pcm_pipe", rc))

    def _run_analysis(self, base_args: list[str], builder: _SnapshotBuilder) -> None:
        cmd = ffmpeg_io.pcm_pipe_command(base_args, binary=self._ffmpeg, sample_rate=self._sample_rate)
        started = time.monotonic()
        try:
            proc = self._spawn(cmd, "pcm_pipe", stdout=subprocess.PIPE)
        except ProcessSpawnFailure as exc:
            self._log.error("ffmpeg pcm spawn error: %s", exc)
            return
        try:
            stats = probe_pcm_stream(
                proc,
                frames=self._analysis_frames,
                timeout=self._analysis_timeout,
                started_at=started,
            )
        except AnalysisTimeout as exc:
            # probe_pcm_stream already killed and reaped the producer
            self._log.warning("pcm analysis timeout: %s", exc)
            return
        except AnalysisError as exc:
            self._log.warning("pcm analysis error: %s", exc)
            self._wait_ended(proc)
            return
        else:
            # only the leading chunk is needed
            reap_process(proc)
        finally:
            if proc.stdout is not None:
                proc.stdout.close()

        self._log.info(
            "first-byte latency: %d ms; rms=%.4f peak=%.4f", stats.latency_ms, stats.rms, stats.peak
        )
        builder.publish(latency_ms=stats.latency_ms, rms=stats.rms, peak=stats.peak)


__all__ = [
    "ClipOrchestrator",
    "CutRequest",
    "CycleHandles",
    "CyclePlan",
    "LATEST_CLIP_NAME",
    "LATEST_MIC_NAME",
    "NO_SUBTITLE_MESSAGE",
    "ProcessExitFailure",
    "ProcessSpawnFailure",
    "confirmation_message",
    "wait_for_file",
]
