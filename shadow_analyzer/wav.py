"""Minimal 16-bit PCM WAV decoding into mono float samples."""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass
from pathlib import Path

import numpy as np

RIFF_HEADER_BYTES = 44
PCM_FORMAT_CODE = 1
DECIMATION_PAIR = (48000, 24000)


class DecodeError(Exception):
    """Raised for malformed, truncated or unsupported WAV data."""


@dataclass(frozen=True)
class WavInfo:
    sample_rate: int
    channels: int
    bits_per_sample: int


@dataclass(frozen=True)
class DecodedAudio:
    samples: np.ndarray
    sample_rate: int

    @property
    def duration_seconds(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.samples.size / float(self.sample_rate)


def parse_header(buf: bytes) -> tuple[WavInfo, int, int]:
    """Walk the RIFF chunks of ``buf``.

    Returns the format info plus the offset and length of the data chunk.
    """

    if len(buf) < RIFF_HEADER_BYTES:
        raise DecodeError("wav too small")
    if buf[0:4] != b"RIFF" or buf[8:12] != b"WAVE":
        raise DecodeError("not RIFF/WAVE")

    info: WavInfo | None = None
    data_off: int | None = None
    data_len: int | None = None
    pos = 12
    while pos + 8 <= len(buf):
        chunk_id = buf[pos:pos + 4]
        (chunk_size,) = struct.unpack_from("<I", buf, pos + 4)
        payload_off = pos + 8
        if payload_off + chunk_size > len(buf):
            raise DecodeError(
                f"chunk {chunk_id!r} declares {chunk_size} bytes past end of file"
            )
        if chunk_id == b"fmt ":
            if chunk_size < 16:
                raise DecodeError("fmt chunk too small")
            audio_format, channels, sample_rate = struct.unpack_from("<HHI", buf, payload_off)
            (bits_per_sample,) = struct.unpack_from("<H", buf, payload_off + 14)
            if audio_format != PCM_FORMAT_CODE:
                raise DecodeError(f"unsupported format {audio_format} (PCM only)")
            info = WavInfo(sample_rate, channels, bits_per_sample)
        elif chunk_id == b"data":
            data_off = payload_off
            data_len = chunk_size
        # RIFF chunks are word aligned
        pos = payload_off + chunk_size + (chunk_size & 1)

    if info is None:
        raise DecodeError("missing fmt chunk")
    if data_off is None or data_len is None:
        raise DecodeError("missing data chunk")
    return info, data_off, data_len


def _output_rate(source_rate: int, target_rate: int | None) -> int:
    if target_rate is not None and (source_rate, target_rate) == DECIMATION_PAIR:
        return target_rate
    return source_rate


def decode_wav_bytes(buf: bytes, target_rate: int | None = None) -> DecodedAudio:
    """Decode a PCM16 WAV image into mono float32 samples in [-1, 1).

    Channels are averaged per frame. A 48 kHz source requested at 24 kHz is
    decimated by averaging sample pairs; every other rate pair is returned
    unchanged at the source rate.
    """

    info, data_off, data_len = parse_header(buf)
    if info.bits_per_sample != 16:
        raise DecodeError(f"unsupported bits_per_sample: {info.bits_per_sample}")
    if info.channels <= 0:
        raise DecodeError("wav declares zero channels")

    out_rate = _output_rate(info.sample_rate, target_rate)
    raw = np.frombuffer(buf, dtype="<i2", count=data_len // 2, offset=data_off)
    frames = raw.size // info.channels
    if frames == 0:
        return DecodedAudio(np.zeros(0, dtype=np.float32), out_rate)

    interleaved = raw[: frames * info.channels].astype(np.float32) / 32768.0
    mono = interleaved.reshape(frames, info.channels).mean(axis=1, dtype=np.float32)

    if out_rate != info.sample_rate:
        pairs = mono.size // 2
        mono = 0.5 * (mono[0 : 2 * pairs : 2] + mono[1 : 2 * pairs : 2])
    return DecodedAudio(mono.astype(np.float32, copy=False), out_rate)


def read_wav_mono(path: os.PathLike[str] | str, target_rate: int | None = None) -> DecodedAudio:
    try:
        buf = Path(path).read_bytes()
    except OSError as exc:
        raise DecodeError(f"unable to read {path}: {exc}") from exc
    return decode_wav_bytes(buf, target_rate)


__all__ = ["DecodeError", "DecodedAudio", "WavInfo", "decode_wav_bytes", "parse_header", "read_wav_mono"]
