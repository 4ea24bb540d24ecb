"""Pull-based sample sources yielding fixed-size stereo float blocks."""
from __future__ import annotations

import logging
import os
import subprocess
import wave
from pathlib import Path
from typing import BinaryIO, Protocol

import numpy as np

from wavgate.pcm import BLOCK_FRAMES, decode_pcm

LOGGER = logging.getLogger("wavgate.sources")


class StreamExhausted(EOFError):
    """Raised by ``read_exact`` when a PCM stream ends before any byte arrives."""


class SourceUnavailableError(RuntimeError):
    """Raised when a capture process cannot be started."""


class SampleSource(Protocol):
    def stream(self, samples: np.ndarray) -> tuple[int, bool]: ...


def new_block(frames: int = BLOCK_FRAMES) -> np.ndarray:
    return np.zeros((frames, 2), dtype=np.float64)


def read_block(source: SampleSource, frames: int = BLOCK_FRAMES) -> np.ndarray | None:
    """Pull one freshly allocated block; ``None`` once the source is exhausted."""
    samples = new_block(frames)
    n, ok = source.stream(samples)
    if not ok:
        return None
    return samples[:n]


class ArraySource:
    """Replay an in-memory ``(frames, 2)`` array."""

    def __init__(self, frames: np.ndarray) -> None:
        data = np.asarray(frames, dtype=np.float64)
        if data.size == 0:
            data = np.zeros((0, 2), dtype=np.float64)
        if data.ndim != 2 or data.shape[1] != 2:
            raise ValueError("frames must have shape (N, 2)")
        self._frames = data
        self._pos = 0

    @classmethod
    def from_blocks(cls, blocks: list[np.ndarray]) -> "ArraySource":
        if not blocks:
            return cls(np.zeros((0, 2)))
        return cls(np.concatenate(blocks))

    @property
    def remaining(self) -> int:
        return self._frames.shape[0] - self._pos

    def stream(self, samples: np.ndarray) -> tuple[int, bool]:
        n = min(len(samples), self.remaining)
        if n <= 0:
            return 0, False
        samples[:n] = self._frames[self._pos:self._pos + n]
        self._pos += n
        return n, True


class PcmStreamSource:
    """Decode interleaved little-endian PCM from a binary stream."""

    def __init__(self, stream: BinaryIO, channels: int = 1, sample_width: int = 2) -> None:
        self._stream = stream
        self.channels = channels
        self.sample_width = sample_width
        self.frame_bytes = channels * sample_width
        self._eof = False

    def read_exact(self, size: int) -> bytes:
        buf = bytearray()
        while len(buf) < size:
            chunk = self._stream.read(size - len(buf))
            if not chunk:
                break
            buf.extend(chunk)
        if not buf and size > 0:
            raise StreamExhausted("PCM stream ended")
        return bytes(buf)

    def stream(self, samples: np.ndarray) -> tuple[int, bool]:
        if self._eof:
            return 0, False
        try:
            data = self.read_exact(len(samples) * self.frame_bytes)
        except StreamExhausted:
            self._eof = True
            return 0, False
        decoded = decode_pcm(data, self.channels, self.sample_width)
        n = decoded.shape[0]
        if n == 0:
            self._eof = True
            return 0, False
        samples[:n] = decoded
        if n < len(samples):
            self._eof = True
        return n, True


class WavFileSource(PcmStreamSource):
    """Replay the PCM payload of a WAV file."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        self._wav = wave.open(os.fspath(self.path), "rb")
        self.sample_rate = self._wav.getframerate()
        super().__init__(
            _WaveReader(self._wav),
            channels=self._wav.getnchannels(),
            sample_width=self._wav.getsampwidth(),
        )

    def close(self) -> None:
        self._wav.close()

    def __enter__(self) -> "WavFileSource":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class _WaveReader:
    """Adapt ``wave.Wave_read`` to a byte-oriented ``read``."""

    def __init__(self, wav: wave.Wave_read) -> None:
        self._wav = wav
        self._frame_bytes = wav.getnchannels() * wav.getsampwidth()

    def read(self, size: int) -> bytes:
        frames = max(1, size // self._frame_bytes)
        return self._wav.readframes(frames)


def build_arecord_command(device: str, sample_rate: int, channels: int = 1) -> list[str]:
    return [
        "arecord",
        "-D", device,
        "-c", str(channels),
        "-f", "S16_LE",
        "-r", str(sample_rate),
        "-t", "raw",
        "-q",
        "-",
    ]


class ArecordSource(PcmStreamSource):
    """Stream live capture from an ``arecord`` subprocess."""

    def __init__(
        self,
        device: str,
        sample_rate: int,
        channels: int = 1,
        *,
        command: list[str] | None = None,
    ) -> None:
        self.command = command or build_arecord_command(device, sample_rate, channels)
        try:
            self._process = subprocess.Popen(
                self.command,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                stdin=subprocess.DEVNULL,
                bufsize=0,
                start_new_session=True,
            )
        except OSError as exc:
            raise SourceUnavailableError(f"failed to launch {self.command[0]}: {exc}") from exc
        assert self._process.stdout is not None
        LOGGER.info("capture started: %s", " ".join(self.command))
        super().__init__(self._process.stdout, channels=channels, sample_width=2)

    @property
    def alive(self) -> bool:
        return self._process.poll() is None

    def close(self) -> None:
        proc = self._process
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=1)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        if proc.stdout:
            proc.stdout.close()
