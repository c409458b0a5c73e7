"""Compare the pitch contour of a reference clip with the user's take."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from typing import Any

from shadow_analyzer.pitch import F0Config, F0Result, estimate_f0
from shadow_analyzer.wav import read_wav_mono


@dataclass(frozen=True)
class TakeComparison:
    reference: F0Result
    take: F0Result
    offset_cents: float | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "reference": self.reference.to_payload(),
            "take": self.take.to_payload(),
            "offset_cents": self.offset_cents,
        }


def median_offset_cents(reference: F0Result, take: F0Result) -> float | None:
    if not reference.median_hz or not take.median_hz:
        return None
    return 1200.0 * math.log2(take.median_hz / reference.median_hz)


def analyze_file(path: os.PathLike[str] | str, config: F0Config | None = None) -> F0Result:
    cfg = config or F0Config()
    audio = read_wav_mono(path, target_rate=int(cfg.sample_rate))
    if audio.sample_rate != int(cfg.sample_rate):
        # Estimate at the rate the file actually has.
        cfg = F0Config.from_durations(
            audio.sample_rate,
            frame_ms=cfg.frame_size * 1000.0 / cfg.sample_rate,
            hop_ms=cfg.hop_size * 1000.0 / cfg.sample_rate,
            fmin_hz=cfg.fmin_hz,
            fmax_hz=cfg.fmax_hz,
            voicing_threshold=cfg.voicing_threshold,
        )
    return estimate_f0(audio.samples, cfg)


def compare_takes(
    reference: os.PathLike[str] | str,
    take: os.PathLike[str] | str,
    config: F0Config | None = None,
) -> TakeComparison:
    """Raises ``DecodeError`` when either file is not a readable PCM16 WAV."""

    ref_result = analyze_file(reference, config)
    take_result = analyze_file(take, config)
    return TakeComparison(
        reference=ref_result,
        take=take_result,
        offset_cents=median_offset_cents(ref_result, take_result),
    )


__all__ = ["TakeComparison", "analyze_file", "compare_takes", "median_offset_cents"]
