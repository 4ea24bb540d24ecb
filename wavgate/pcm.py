"""PCM conversion between normalized stereo float blocks and interleaved bytes."""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

BLOCK_FRAMES = 512
SUPPORTED_PRECISIONS = (1, 2, 3)
PEAK_MODES = ("first", "max")


class InvalidFormat(ValueError):
    """Raised when a channel count or sample precision cannot be encoded."""


@dataclass(frozen=True)
class AudioFormat:
    sample_rate: int
    channels: int
    precision: int

    def validate(self) -> "AudioFormat":
        if self.channels < 1:
            raise InvalidFormat("invalid number of channels (less than 1)")
        if self.precision not in SUPPORTED_PRECISIONS:
            raise InvalidFormat(
                f"unsupported precision {self.precision}, 1, 2 or 3 is supported"
            )
        if self.sample_rate <= 0:
            raise InvalidFormat("sample_rate must be positive")
        return self

    @property
    def width(self) -> int:
        """Bytes per interleaved frame."""
        return self.channels * self.precision

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate * self.width

    def encode(self, block: np.ndarray) -> bytes:
        return encode_block(block, self.channels, self.precision)


def _as_stereo(block: np.ndarray) -> np.ndarray:
    data = np.asarray(block, dtype=np.float64)
    if data.size == 0:
        return np.zeros((0, 2), dtype=np.float64)
    if data.ndim != 2 or data.shape[1] != 2:
        raise ValueError("sample block must have shape (frames, 2)")
    return data


def _to_unsigned(values: np.ndarray, precision: int) -> np.ndarray:
    scale = float(2 ** (precision * 8) - 1)
    return np.floor((values + 1.0) / 2.0 * scale).astype(np.uint64)


def _to_signed(values: np.ndarray, precision: int) -> np.ndarray:
    bits = precision * 8
    positive = np.floor(np.maximum(values, 0.0) * float(2 ** (bits - 1) - 1)).astype(np.uint64)
    complement = np.floor(np.maximum(-values, 0.0) * float(2 ** (bits - 1))).astype(np.uint64)
    negative = np.uint64(2 ** bits) - complement
    return np.where(values < 0, negative, positive)


def encode_block(block: np.ndarray, channels: int, precision: int) -> bytes:
    """Encode a ``(frames, 2)`` float block into interleaved little-endian PCM.

    Mono output averages both input channels; outputs wider than stereo carry
    the stereo pair followed by silent channels. 1-byte samples are unsigned,
    2 and 3-byte samples are two's complement.
    """
    if channels < 1:
        raise InvalidFormat("invalid number of channels (less than 1)")
    if precision not in SUPPORTED_PRECISIONS:
        raise InvalidFormat(f"unsupported precision {precision}")

    stereo = np.clip(_as_stereo(block), -1.0, 1.0)
    frames = stereo.shape[0]
    if frames == 0:
        return b""

    if channels == 1:
        planes = np.clip((stereo[:, 0] + stereo[:, 1]) / 2.0, -1.0, 1.0)[:, None]
    elif channels == 2:
        planes = stereo
    else:
        planes = np.zeros((frames, channels), dtype=np.float64)
        planes[:, :2] = stereo

    if precision == 1:
        ints = _to_unsigned(planes, precision)
    else:
        ints = _to_signed(planes, precision)

    raw = ints.astype("<u8").view(np.uint8).reshape(frames, channels, 8)
    return raw[:, :, :precision].tobytes()


def decode_pcm(data: bytes, channels: int, sample_width: int) -> np.ndarray:
    """Decode interleaved PCM bytes into a ``(frames, 2)`` float block.

    Mono input is duplicated onto both channels; inputs wider than stereo keep
    their first two channels. Trailing partial frames are ignored.
    """
    if sample_width not in SUPPORTED_PRECISIONS:
        raise InvalidFormat(f"unsupported sample width {sample_width}")
    if channels < 1:
        raise InvalidFormat("invalid number of channels (less than 1)")

    frame_stride = channels * sample_width
    usable = len(data) - (len(data) % frame_stride)
    if usable <= 0:
        return np.zeros((0, 2), dtype=np.float64)

    raw = np.frombuffer(data[:usable], dtype=np.uint8).reshape(-1, channels, sample_width)
    if sample_width == 1:
        values = raw[:, :, 0].astype(np.float64) / 127.5 - 1.0
    else:
        acc = np.zeros(raw.shape[:2], dtype=np.int64)
        for byte_idx in range(sample_width):
            acc |= raw[:, :, byte_idx].astype(np.int64) << (8 * byte_idx)
        sign_bit = 1 << (sample_width * 8 - 1)
        acc = np.where(acc & sign_bit, acc - (1 << (sample_width * 8)), acc)
        values = acc.astype(np.float64) / float(sign_bit)

    out = np.empty((values.shape[0], 2), dtype=np.float64)
    out[:, 0] = values[:, 0]
    out[:, 1] = values[:, 1] if channels > 1 else values[:, 0]
    return out


def peak_amplitude(block: np.ndarray, mode: str = "first") -> float:
    """Return the peak absolute amplitude of a block.

    ``first`` inspects the left channel only, ``max`` both channels.
    """
    data = np.asarray(block, dtype=np.float64)
    if data.size == 0:
        return 0.0
    if mode == "first":
        return float(np.max(np.abs(data[:, 0])))
    if mode == "max":
        return float(np.max(np.abs(data)))
    raise ValueError(f"unknown peak mode {mode!r}")


def silence_block(frames: int = BLOCK_FRAMES) -> np.ndarray:
    return np.zeros((frames, 2), dtype=np.float64)
