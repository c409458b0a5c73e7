"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

from pathlib import Path

from shadow_analyzer.models import CutWindow

DEFAULT_BINARY = "ffmpeg"
DEFAULT_SAMPLE_RATE = 48000
CLIP_CHANNELS = 2
MIC_CHANNELS = 1


def _common_flags(binary: str) -> list[str]:
    return [binary, "-hide_banner", "-nostdin", "-loglevel", "error"]


def cut_input_args(
    media_path: str,
    window: CutWindow,
    track_index: int | None = None,
) -> list[str]:
    """Return the time range, input and stream selector shared by every cut.

    ``-ss``/``-to`` appear before ``-i`` so ffmpeg seeks the input instead of
    decoding up to the start.
    """

    args = [
        "-ss",
        f"{window.start:.3f}",
        "-to",
        f"{window.end:.3f}",
        "-i",
        media_path,
    ]
    if track_index is not None:
        args.extend(["-map", f"0:{track_index}"])
    return args


def wav_writer_command(
    base_args: list[str],
    out_path: Path | str,
    *,
    binary: str = DEFAULT_BINARY,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> list[str]:
    return [
        *_common_flags(binary),
        *base_args,
        "-vn",
        "-sn",
        "-c:a",
        "pcm_s16le",
        "-ar",
        str(sample_rate),
        "-ac",
        str(CLIP_CHANNELS),
        "-y",
        str(out_path),
    ]


def pcm_pipe_command(
    base_args: list[str],
    *,
    binary: str = DEFAULT_BINARY,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> list[str]:
    """Raw interleaved f32le stereo on stdout."""

    return [
        *_common_flags(binary),
        *base_args,
        "-vn",
        "-sn",
        "-f",
        "f32le",
        "-ar",
        str(sample_rate),
        "-ac",
        str(CLIP_CHANNELS),
        "pipe:1",
    ]


def mic_recorder_command(
    device_id: str,
    seconds: float,
    out_path: Path | str,
    *,
    binary: str = DEFAULT_BINARY,
    input_format: str = "alsa",
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> list[str]:
    return [
        *_common_flags(binary),
        "-f",
        input_format,
        "-i",
        device_id,
        "-t",
        f"{max(seconds, 0.0):.3f}",
        "-ac",
        str(MIC_CHANNELS),
        "-ar",
        str(sample_rate),
        "-c:a",
        "pcm_s16le",
        "-y",
        str(out_path),
    ]


__all__ = [
    "cut_input_args",
    "mic_recorder_command",
    "pcm_pipe_command",
    "wav_writer_command",
]
