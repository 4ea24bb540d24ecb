"""Control mailbox, delivery queues and the debug sink used by the perpetual encoder."""
from __future__ import annotations

import enum
import logging
import os
import queue
import tempfile
from pathlib import Path
from typing import Any, Optional, Sequence

import numpy as np

LOGGER = logging.getLogger("wavgate.channels")


class Control(enum.Enum):
    ASK = "ask"
    STOP = "stop"


class ControlMailbox:
    """Producer side of the control queue; the encoder polls it once per block."""

    def __init__(self, maxsize: int = 0) -> None:
        self.q: "queue.Queue[Control]" = queue.Queue(maxsize=maxsize)

    def ask(self) -> None:
        self.q.put(Control.ASK)

    def stop(self) -> None:
        self.q.put(Control.STOP)

    def poll(self) -> Optional[Control]:
        try:
            return self.q.get_nowait()
        except queue.Empty:
            return None


class DeliveryChannels:
    """Bounded hand-off of finished WAV buffers to the consumer.

    ``publish`` blocks for at most ``publish_timeout`` seconds when the
    consumer falls behind; after that the buffer is dropped and counted.
    """

    def __init__(
        self,
        buffers: "queue.Queue[bytes]",
        snapshots: "queue.Queue[bytes] | None" = None,
        publish_timeout: float = 5.0,
    ) -> None:
        self.buffers = buffers
        self.snapshots = snapshots
        self.publish_timeout = publish_timeout
        self.dropped = 0

    def _put(self, q: "queue.Queue[bytes]", data: bytes, kind: str) -> bool:
        try:
            q.put(data, timeout=self.publish_timeout)
        except queue.Full:
            self.dropped += 1
            LOGGER.warning(
                "%s queue full for %.1fs; dropped %d bytes (total dropped=%d)",
                kind,
                self.publish_timeout,
                len(data),
                self.dropped,
            )
            return False
        return True

    def publish(self, data: bytes) -> bool:
        return self._put(self.buffers, data, "buffer")

    def publish_snapshot(self, data: bytes) -> bool:
        if self.snapshots is None:
            return self._put(self.buffers, data, "buffer")
        return self._put(self.snapshots, data, "snapshot")


def _offer(q: "queue.Queue[Any]", item: Any, what: str) -> None:
    try:
        q.put_nowait(item)
    except queue.Full:
        LOGGER.warning("debug %s queue full; skipping", what)


class DebugSink:
    """Optional per-segment debug outputs.

    ``file_dir`` receives ``debug_wav{n}.wav`` copies of every published
    segment, numbered from 1 (their paths go on ``filenames`` when given);
    ``samples`` receives the raw sample blocks of each segment.
    """

    def __init__(
        self,
        file_dir: str | os.PathLike[str] | None = None,
        filenames: "queue.Queue[str] | None" = None,
        samples: "queue.Queue[list[np.ndarray]] | None" = None,
    ) -> None:
        self.file_dir = Path(file_dir) if file_dir is not None else None
        self.filenames = filenames
        self.samples = samples
        self.counter = 0

    @property
    def wants_samples(self) -> bool:
        return self.samples is not None

    def _write_file(self, data: bytes) -> Path:
        assert self.file_dir is not None
        self.file_dir.mkdir(parents=True, exist_ok=True)
        target = self.file_dir / f"debug_wav{self.counter}.wav"
        fd, tmp_name = tempfile.mkstemp(prefix=".debug_wav", suffix=".tmp", dir=self.file_dir)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, target)
        except OSError:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
        return target

    def emit(self, data: bytes, blocks: Sequence[np.ndarray] = ()) -> None:
        self.counter += 1
        if self.file_dir is not None:
            path = self._write_file(data)
            LOGGER.debug("wrote %s (%d bytes)", path, len(data))
            if self.filenames is not None:
                _offer(self.filenames, str(path), "filename")
        if self.samples is not None:
            _offer(self.samples, list(blocks), "samples")
