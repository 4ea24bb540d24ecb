"""
wav_header.py
-------------
Fixed 44-byte RIFF/WAVE header for PCM captures.

- Headers are written with placeholder (-1) sizes while a capture is open.
- finalize() fills both size fields once the payload length is known.
- parse_header() reads a header back for verification and tooling.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass, replace

from wavgate.pcm import SUPPORTED_PRECISIONS, InvalidFormat

HEADER_SIZE = 44
PLACEHOLDER_SIZE = -1
MAX_PAYLOAD = 2 ** 31 - 1 - HEADER_SIZE

_LAYOUT = struct.Struct("<4si4s4sihhiihh4si")

__all__ = [
    "HEADER_SIZE",
    "InvalidFormat",
    "WavHeader",
    "build_header",
    "finalize",
    "parse_header",
]


@dataclass(frozen=True)
class WavHeader:
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int
    file_size: int = PLACEHOLDER_SIZE
    data_size: int = PLACEHOLDER_SIZE
    format_size: int = 16
    format_type: int = 1

    @property
    def finalized(self) -> bool:
        return self.data_size >= 0 and self.file_size == HEADER_SIZE + self.data_size

    def pack(self) -> bytes:
        return _LAYOUT.pack(
            b"RIFF",
            self.file_size,
            b"WAVE",
            b"fmt ",
            self.format_size,
            self.format_type,
            self.channels,
            self.sample_rate,
            self.byte_rate,
            self.block_align,
            self.bits_per_sample,
            b"data",
            self.data_size,
        )


def build_header(channels: int, sample_rate: int, precision: int) -> WavHeader:
    if channels < 1:
        raise InvalidFormat("invalid number of channels (less than 1)")
    if precision not in SUPPORTED_PRECISIONS:
        raise InvalidFormat(f"unsupported precision {precision}, 1, 2 or 3 is supported")
    return WavHeader(
        channels=channels,
        sample_rate=sample_rate,
        byte_rate=sample_rate * channels * precision,
        block_align=channels * precision,
        bits_per_sample=precision * 8,
    )


def finalize(header: WavHeader, payload_bytes: int) -> WavHeader:
    """Return ``header`` with both size fields set for ``payload_bytes`` of PCM."""
    if payload_bytes < 0:
        raise ValueError("payload size cannot be negative")
    if payload_bytes > MAX_PAYLOAD:
        raise ValueError(f"payload of {payload_bytes} bytes exceeds the WAV size limit")
    return replace(header, file_size=HEADER_SIZE + payload_bytes, data_size=payload_bytes)


def parse_header(data: bytes) -> WavHeader:
    if len(data) < HEADER_SIZE:
        raise ValueError(f"WAV header needs {HEADER_SIZE} bytes, got {len(data)}")
    (
        riff,
        file_size,
        wave,
        fmt,
        format_size,
        format_type,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
        data_mark,
        data_size,
    ) = _LAYOUT.unpack(bytes(data[:HEADER_SIZE]))
    if riff != b"RIFF" or wave != b"WAVE" or fmt != b"fmt " or data_mark != b"data":
        raise ValueError("not a canonical PCM WAV header")
    return WavHeader(
        channels=channels,
        sample_rate=sample_rate,
        byte_rate=byte_rate,
        block_align=block_align,
        bits_per_sample=bits_per_sample,
        file_size=file_size,
        data_size=data_size,
        format_size=format_size,
        format_type=format_type,
    )
