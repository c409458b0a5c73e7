"""Value types shared by the controller, orchestrator and presentation layer."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_PAD_SECONDS = 0.10
LATEST_CLIP_NAME = "latest.wav"
LATEST_MIC_NAME = "latest_mic.wav"


@dataclass(frozen=True)
class SubtitleLine:
    """The subtitle line currently on screen, in seconds."""

    text: str | None
    start: float
    end: float


@dataclass(frozen=True)
class CutWindow:
    start: float
    end: float

    @property
    def is_valid(self) -> bool:
        return self.start < self.end

    @property
    def length(self) -> float:
        return max(0.0, self.end - self.start)

    @property
    def start_ms(self) -> int:
        return int(round(self.start * 1000.0))

    @property
    def end_ms(self) -> int:
        return int(round(self.end * 1000.0))

    @classmethod
    def from_line(
        cls,
        line: SubtitleLine,
        duration: float | None,
        *,
        pad: float = DEFAULT_PAD_SECONDS,
    ) -> "CutWindow":
        """Pad ``line`` on both sides and clamp it to ``[0, duration]``.

        A missing or non-positive duration leaves the end unclamped.
        """

        start = max(0.0, line.start - pad)
        end = line.end + pad
        if duration is not None and duration > 0 and end > duration:
            end = duration
        return cls(start=start, end=end)


@dataclass(frozen=True)
class ClipArtifact:
    unique_path: Path
    latest_path: Path


@dataclass(frozen=True)
class RetentionSet:
    """Directory pruning rule: keep the newest ``keep_count`` matching files.

    ``match``/``ignore`` are fnmatch patterns applied to file names so that
    reference clips and microphone takes sharing a directory are counted
    separately. Files named exactly as one of ``protected_names`` are never
    counted or removed.
    """

    directory: Path
    keep_count: int
    excluded_paths: frozenset[Path] = field(default_factory=frozenset)
    match: str = "*.wav"
    ignore: tuple[str, ...] = ()
    protected_names: frozenset[str] = frozenset({LATEST_CLIP_NAME, LATEST_MIC_NAME})


@dataclass(frozen=True)
class MicDevice:
    id: str
    name: str

    def to_payload(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name}


@dataclass(frozen=True)
class AnalysisSnapshot:
    """What the presentation layer learns about one trigger cycle.

    Produced up to twice per cycle; later snapshots only ever add fields.
    """

    text: str | None
    start: float
    end: float
    duration: float
    track_index: int | None
    clip_path: str
    latest_clip_path: str
    mic_path: str | None = None
    latest_mic_path: str | None = None
    latency_ms: int | None = None
    rms: float | None = None
    peak: float | None = None

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


__all__ = [
    "AnalysisSnapshot",
    "ClipArtifact",
    "CutWindow",
    "DEFAULT_PAD_SECONDS",
    "LATEST_CLIP_NAME",
    "LATEST_MIC_NAME",
    "MicDevice",
    "RetentionSet",
    "SubtitleLine",
]
