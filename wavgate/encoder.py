"""
encoder.py
----------
WAV output buffers, one-shot encoding and the gated perpetual encoder.

One-shot:
  encode(writer, source, fmt)          seekable writer, header rewritten in place
  encode_buffer(writer, source, fmt)   append-only writer, header written first

Perpetual:
  PerpetualEncoder pulls one block per iteration, feeds the activity detector
  and turns its signals into buffer appends, publishes and resets. ASK and
  STOP arrive through a ControlMailbox that is polled without blocking.
"""
from __future__ import annotations

import contextlib
import io
import logging
import math
import os
import threading
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

import numpy as np

from wavgate.channels import Control, ControlMailbox, DebugSink, DeliveryChannels
from wavgate.detector import FAKE_BREAK_LIMIT, MEMORY_DEPTH, ActivityDetector, Decision, Signal
from wavgate.pcm import BLOCK_FRAMES, AudioFormat, silence_block
from wavgate.sources import SampleSource, read_block
from wavgate.wav_header import HEADER_SIZE, build_header, finalize

LOGGER = logging.getLogger("wavgate.encoder")

STOPPED = "stopped"
EXHAUSTED = "exhausted"


class EncodeWriteFailure(RuntimeError):
    """An output buffer could not be appended to or finalized."""


@contextlib.contextmanager
def _write_guard(action: str) -> Iterator[None]:
    try:
        yield
    except (OSError, ValueError) as exc:
        raise EncodeWriteFailure(f"{action} failed: {exc}") from exc


def lead_in_blocks(lead_in_seconds: float, sample_rate: int) -> int:
    """Number of whole silent blocks covering ``lead_in_seconds``."""
    if lead_in_seconds <= 0:
        return 0
    return int(math.ceil(lead_in_seconds * sample_rate / BLOCK_FRAMES))


class _HeaderedBuffer:
    """Byte sink that starts with a placeholder header and grows by PCM blocks."""

    _fh: BinaryIO

    def __init__(self, fmt: AudioFormat) -> None:
        self.fmt = fmt.validate()
        self.header = build_header(fmt.channels, fmt.sample_rate, fmt.precision)
        self.written = 0

    def _start(self) -> None:
        self._fh.write(self.header.pack())

    def append_bytes(self, data: bytes) -> None:
        with _write_guard("append"):
            self._fh.write(data)
        self.written += len(data)

    def append_block(self, block: np.ndarray) -> None:
        self.append_bytes(self.fmt.encode(block))

    def _rewrite_header(self) -> None:
        with _write_guard("finalize"):
            final = finalize(self.header, self.written)
            self._fh.seek(0)
            self._fh.write(final.pack())
            self._fh.seek(0, io.SEEK_END)


class OutputBuffer(_HeaderedBuffer):
    """In-memory WAV buffer."""

    def __init__(self, fmt: AudioFormat) -> None:
        super().__init__(fmt)
        self._fh = io.BytesIO()
        self._start()

    def __len__(self) -> int:
        return HEADER_SIZE + self.written

    def finalize(self) -> bytes:
        self._rewrite_header()
        return self._fh.getvalue()

    def snapshot(self) -> bytes:
        """Finalized copy of the current contents; the buffer itself is untouched."""
        with _write_guard("snapshot"):
            data = bytearray(self._fh.getvalue())
            data[:HEADER_SIZE] = finalize(self.header, self.written).pack()
        return bytes(data)


class FileOutputBuffer(_HeaderedBuffer):
    """WAV buffer backed by a seekable file on disk."""

    def __init__(self, path: str | os.PathLike[str], fmt: AudioFormat) -> None:
        super().__init__(fmt)
        self.path = Path(path)
        with _write_guard("open"):
            self._fh = open(self.path, "w+b")
            self._start()

    def finalize(self) -> Path:
        try:
            self._rewrite_header()
        finally:
            self._fh.close()
        return self.path

    def close(self) -> None:
        self._fh.close()


def encode(writer: BinaryIO, source: SampleSource, fmt: AudioFormat) -> int:
    """Encode ``source`` until exhaustion into a seekable ``writer``.

    A placeholder header is written first and rewritten once the payload
    length is known. Returns the payload byte count.
    """
    fmt = fmt.validate()
    header = build_header(fmt.channels, fmt.sample_rate, fmt.precision)
    written = 0
    with _write_guard("encode"):
        writer.write(header.pack())
    while True:
        block = read_block(source)
        if block is None:
            break
        data = fmt.encode(block)
        with _write_guard("encode"):
            writer.write(data)
        written += len(data)
    with _write_guard("encode"):
        writer.seek(0)
        writer.write(finalize(header, written).pack())
        writer.seek(0, io.SEEK_END)
    return written


def encode_buffer(writer: BinaryIO, source: SampleSource, fmt: AudioFormat) -> int:
    """Encode ``source`` into an append-only ``writer``.

    The payload is held in memory so the header can go out first with its
    sizes already correct.
    """
    fmt = fmt.validate()
    header = build_header(fmt.channels, fmt.sample_rate, fmt.precision)
    payload = bytearray()
    while True:
        block = read_block(source)
        if block is None:
            break
        payload.extend(fmt.encode(block))
    with _write_guard("encode"):
        writer.write(finalize(header, len(payload)).pack())
        writer.write(payload)
    return len(payload)


class PerpetualEncoder:
    """Gate a live sample source into one WAV buffer per detected segment.

    The worker is the only mutator of the buffers, the detector and its
    rolling memory. Completed segments leave through ``channels``; once
    published the encoder keeps no reference to them.
    """

    def __init__(
        self,
        source: SampleSource,
        fmt: AudioFormat,
        detector: ActivityDetector,
        channels: DeliveryChannels,
        *,
        mailbox: Optional[ControlMailbox] = None,
        debug: Optional[DebugSink] = None,
        lead_in_seconds: float = 0.0,
        flush_on_exhausted: bool = False,
    ) -> None:
        self.fmt = fmt.validate()
        self.source = source
        self.detector = detector
        self.channels = channels
        self.mailbox = mailbox
        self.debug = debug
        self.lead_in = lead_in_blocks(lead_in_seconds, fmt.sample_rate)
        self.flush_on_exhausted = flush_on_exhausted

        self.published = 0
        self.dropped_segments = 0
        self.snapshots = 0
        self.error: Optional[BaseException] = None
        self.result: Optional[str] = None
        self._thread: Optional[threading.Thread] = None

        self._session = self._fresh_session()
        self._short = OutputBuffer(self.fmt)
        self._segment_blocks: list[np.ndarray] = []

    # ----- buffers -----

    def _fresh_session(self) -> OutputBuffer:
        buf = OutputBuffer(self.fmt)
        if self.lead_in:
            pad = self.fmt.encode(silence_block())
            for _ in range(self.lead_in):
                buf.append_bytes(pad)
        return buf

    def _reset_segment(self) -> None:
        self._session = self._fresh_session()
        self._short = OutputBuffer(self.fmt)
        self._segment_blocks = []

    def _append(self, block: np.ndarray) -> None:
        data = self.fmt.encode(block)
        self._session.append_bytes(data)
        self._short.append_bytes(data)
        if self.debug is not None and self.debug.wants_samples:
            self._segment_blocks.append(block)

    def _publish_segment(self) -> None:
        data = self._session.finalize()
        blocks = self._segment_blocks
        self._reset_segment()
        if not self.channels.publish(data):
            return
        self.published += 1
        LOGGER.info("segment published (%d bytes)", len(data))
        if self.debug is not None:
            try:
                self.debug.emit(data, blocks)
            except OSError as exc:
                LOGGER.warning("debug output failed: %s", exc)

    # ----- control -----

    def _answer_ask(self) -> None:
        data = self._short.snapshot()
        self._short = OutputBuffer(self.fmt)
        if self.channels.publish_snapshot(data):
            self.snapshots += 1
        LOGGER.debug("snapshot delivered (%d bytes)", len(data))

    def _finish_stop(self) -> None:
        if self.detector.recording and self._session.written > 0:
            LOGGER.info("stop requested mid-segment; flushing")
            self._publish_segment()
        self.detector.reset()

    def _finish_exhausted(self) -> None:
        if not self.detector.recording:
            return
        if self.flush_on_exhausted:
            self._publish_segment()
        else:
            LOGGER.info("source exhausted mid-segment; discarding %d bytes", self._session.written)
            self._reset_segment()
        self.detector.reset()

    # ----- loop -----

    def _apply(self, decision: Decision, block: np.ndarray) -> None:
        signal = decision.signal
        if signal is Signal.NOOP:
            return
        if signal is Signal.INIT:
            for earlier in decision.preroll:
                self._append(earlier)
            self._append(block)
        elif signal is Signal.CONTINUE:
            self._append(block)
        elif signal is Signal.COMPLETE:
            self._append(block)
            self._publish_segment()
        elif signal is Signal.DROP:
            self.dropped_segments += 1
            LOGGER.debug("spurious segment dropped (%d bytes)", self._session.written)
            self._reset_segment()

    def run(self) -> str:
        """Run until STOP or source exhaustion; returns ``"stopped"`` or ``"exhausted"``."""
        try:
            while True:
                control = self.mailbox.poll() if self.mailbox is not None else None
                if control is Control.STOP:
                    self._finish_stop()
                    return STOPPED
                if control is Control.ASK:
                    self._answer_ask()

                block = read_block(self.source)
                if block is None:
                    self._finish_exhausted()
                    return EXHAUSTED
                self._apply(self.detector.feed(block), block)
        except EncodeWriteFailure as exc:
            LOGGER.error("encoder stopped: %s", exc)
            raise

    # ----- thread mode -----

    def _run_thread(self) -> None:
        try:
            self.result = self.run()
        except Exception as exc:
            self.error = exc

    def start(self) -> "PerpetualEncoder":
        if self._thread is not None:
            raise RuntimeError("encoder already started")
        self._thread = threading.Thread(target=self._run_thread, name="wavgate-encoder", daemon=True)
        self._thread.start()
        return self

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker; returns True once it has finished."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


def start_perpetual(
    source: SampleSource,
    fmt: AudioFormat,
    channels: DeliveryChannels,
    *,
    on_threshold: float,
    off_threshold: float,
    wakeup_timeout: int,
    fake_break_limit: int = FAKE_BREAK_LIMIT,
    memory_depth: int = MEMORY_DEPTH,
    peak_mode: str = "first",
    mailbox: Optional[ControlMailbox] = None,
    debug: Optional[DebugSink] = None,
    lead_in_seconds: float = 0.0,
    flush_on_exhausted: bool = False,
) -> PerpetualEncoder:
    """Validate ``fmt``, build the detector and start the worker thread."""
    fmt = fmt.validate()
    detector = ActivityDetector(
        on_threshold,
        off_threshold,
        wakeup_timeout,
        fake_break_limit=fake_break_limit,
        memory_depth=memory_depth,
        peak_mode=peak_mode,
    )
    encoder = PerpetualEncoder(
        source,
        fmt,
        detector,
        channels,
        mailbox=mailbox,
        debug=debug,
        lead_in_seconds=lead_in_seconds,
        flush_on_exhausted=flush_on_exhausted,
    )
    return encoder.start()
