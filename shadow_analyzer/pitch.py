"""NSDF/MPM fundamental-frequency estimation for short offline clips."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

PARABOLA_EPSILON = 1e-12


@dataclass(frozen=True)
class F0Config:
    sample_rate: float = 24000.0
    frame_size: int = 960  # 40 ms
    hop_size: int = 240  # 10 ms
    fmin_hz: float = 70.0
    fmax_hz: float = 350.0
    voicing_threshold: float = 0.40

    @classmethod
    def from_durations(
        cls,
        sample_rate: float = 24000.0,
        *,
        frame_ms: float = 40.0,
        hop_ms: float = 10.0,
        fmin_hz: float = 70.0,
        fmax_hz: float = 350.0,
        voicing_threshold: float = 0.40,
    ) -> "F0Config":
        frame = int(frame_ms / 1000.0 * sample_rate)
        hop = int(hop_ms / 1000.0 * sample_rate)
        return cls(
            sample_rate=float(sample_rate),
            frame_size=max(1, frame),
            hop_size=max(1, hop),
            fmin_hz=float(fmin_hz),
            fmax_hz=float(fmax_hz),
            voicing_threshold=float(voicing_threshold),
        )

    def lag_bounds(self) -> tuple[int, int]:
        sr = max(self.sample_rate, 1.0)
        tau_min = max(int(math.floor(sr / max(self.fmax_hz, 1.0))), 2)
        tau_max = max(int(math.ceil(sr / max(self.fmin_hz, 1.0))), tau_min + 1)
        return tau_min, tau_max


@dataclass(frozen=True)
class F0Result:
    """Per-frame contour; ``f0_hz`` is 0.0 on unvoiced frames."""

    f0_hz: tuple[float, ...] = ()
    voiced: tuple[bool, ...] = ()
    median_hz: float | None = None
    voiced_ratio: float = 0.0

    @property
    def frame_count(self) -> int:
        return len(self.f0_hz)

    def to_payload(self) -> dict[str, object]:
        return {
            "f0_hz": [round(value, 2) for value in self.f0_hz],
            "voiced": list(self.voiced),
            "median_hz": self.median_hz,
            "voiced_ratio": self.voiced_ratio,
        }


def nsdf(frame: np.ndarray, tau_min: int, tau_max: int) -> np.ndarray:
    """Normalized square difference for every lag up to ``tau_max``.

    Entries below ``tau_min`` are left at zero. Values are stored as float32.
    """

    x = np.asarray(frame, dtype=np.float64)
    n = x.size
    out = np.zeros(tau_max + 1, dtype=np.float32)
    if n < 2:
        return out

    acf = np.correlate(x, x, mode="full")[n - 1:]
    energy = np.concatenate(([0.0], np.cumsum(x * x)))

    for tau in range(tau_min, tau_max + 1):
        limit = n - tau
        if limit < 2:
            continue
        # sum x[j]^2 over [0, limit) + sum x[j+tau]^2 over [tau, n)
        den = energy[limit] + (energy[n] - energy[tau])
        if den > 0.0:
            out[tau] = 2.0 * acf[tau] / den
    return out


def pick_peak(values: np.ndarray, tau_min: int, tau_max: int) -> tuple[int, float]:
    """Return the highest strict local maximum among interior lags.

    ``(0, -1.0)`` means no local maximum exists.
    """

    best_tau = 0
    best_val = -1.0
    for tau in range(tau_min + 1, tau_max):
        prev = values[tau - 1]
        cur = values[tau]
        nxt = values[tau + 1]
        if cur > prev and cur >= nxt and cur > best_val:
            best_val = float(cur)
            best_tau = tau
    return best_tau, best_val


def _refine_lag(values: np.ndarray, tau: int, tau_min: int, tau_max: int) -> float:
    left = float(values[tau - 1])
    centre = float(values[tau])
    right = float(values[tau + 1])
    denom = left - 2.0 * centre + right
    delta = 0.5 * (left - right) / denom if abs(denom) > PARABOLA_EPSILON else 0.0
    return min(max(tau + delta, float(tau_min)), float(tau_max))


def _median(values: Sequence[float]) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 1:
        return ordered[mid]
    return 0.5 * (ordered[mid - 1] + ordered[mid])


def estimate_f0(samples: Sequence[float] | np.ndarray, config: F0Config | None = None) -> F0Result:
    cfg = config or F0Config()
    signal = np.asarray(samples, dtype=np.float32)
    if signal.size == 0 or cfg.frame_size < 3:
        return F0Result()

    sr = max(float(cfg.sample_rate), 1.0)
    tau_min, tau_max = cfg.lag_bounds()
    threshold = min(max(cfg.voicing_threshold, 0.0), 1.0)
    frame_size = cfg.frame_size
    hop = max(cfg.hop_size, 1)

    f0_series: list[float] = []
    voiced_flags: list[bool] = []
    start = 0
    while start + frame_size <= signal.size:
        values = nsdf(signal[start:start + frame_size], tau_min, tau_max)
        best_tau, best_val = pick_peak(values, tau_min, tau_max)

        f0 = 0.0
        voiced = False
        if best_tau >= tau_min and best_val >= threshold:
            refined = _refine_lag(values, best_tau, tau_min, tau_max)
            freq = sr / max(refined, 1.0)
            if math.isfinite(freq) and freq > 0.0:
                f0 = freq
                voiced = True

        f0_series.append(f0)
        voiced_flags.append(voiced)
        start += hop

    voiced_values = [value for value, flag in zip(f0_series, voiced_flags) if flag]
    ratio = len(voiced_values) / len(voiced_flags) if voiced_flags else 0.0
    return F0Result(
        f0_hz=tuple(f0_series),
        voiced=tuple(voiced_flags),
        median_hz=_median(voiced_values),
        voiced_ratio=ratio,
    )


__all__ = ["F0Config", "F0Result", "estimate_f0", "nsdf", "pick_peak"]
