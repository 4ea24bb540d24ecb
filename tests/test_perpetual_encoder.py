import queue
import struct
from pathlib import Path

import numpy as np
import pytest

from wavgate import encoder as encoder_module
from wavgate.channels import ControlMailbox, DebugSink, DeliveryChannels
from wavgate.detector import ActivityDetector
from wavgate.encoder import EXHAUSTED, STOPPED, EncodeWriteFailure, PerpetualEncoder, start_perpetual
from wavgate.pcm import AudioFormat, InvalidFormat
from wavgate.wav_header import HEADER_SIZE

FMT = AudioFormat(sample_rate=16000, channels=1, precision=2)
BLOCK_BYTES = 512 * 2


def _blocks(value, count):
    return [np.full((512, 2), float(value)) for _ in range(count)]


def _payload_size(data: bytes) -> int:
    return struct.unpack_from("<i", data, 40)[0]


class _ScriptedSource:
    """Replays blocks; ``hooks[n]`` runs right after the n-th pull (1-based)."""

    def __init__(self, blocks, hooks=None):
        self.blocks = list(blocks)
        self.hooks = hooks or {}
        self.pulls = 0

    def stream(self, samples):
        if self.pulls >= len(self.blocks):
            return 0, False
        block = self.blocks[self.pulls]
        samples[: len(block)] = block
        self.pulls += 1
        hook = self.hooks.get(self.pulls)
        if hook:
            hook()
        return len(block), True


def _build(source, *, timeout=5, buffers=None, snapshots=None, mailbox=None, **kwargs):
    buffers = buffers if buffers is not None else queue.Queue()
    channels = DeliveryChannels(buffers, snapshots, publish_timeout=0.05)
    detector = ActivityDetector(0.02, 0.05, timeout)
    enc = PerpetualEncoder(source, FMT, detector, channels, mailbox=mailbox, **kwargs)
    return enc, buffers


def _drain(q):
    items = []
    while True:
        try:
            items.append(q.get_nowait())
        except queue.Empty:
            return items


def test_single_segment_with_preroll_and_trailing_silence():
    source = _ScriptedSource(_blocks(0.0, 40) + _blocks(0.5, 3) + _blocks(0.0, 10))
    enc, buffers = _build(source)

    assert enc.run() == EXHAUSTED

    published = _drain(buffers)
    assert len(published) == 1
    data = published[0]
    # 31 pre-roll + 3 loud + 6 trailing silent blocks
    assert _payload_size(data) == 40 * BLOCK_BYTES == 40960
    assert len(data) == HEADER_SIZE + 40960
    assert data[HEADER_SIZE:HEADER_SIZE + 31 * BLOCK_BYTES] == b"\x00" * (31 * BLOCK_BYTES)
    assert struct.unpack_from("<h", data, HEADER_SIZE + 31 * BLOCK_BYTES)[0] == 16383
    assert enc.published == 1
    assert enc.dropped_segments == 0


def test_spurious_burst_is_not_published():
    source = _ScriptedSource(_blocks(0.0, 40) + _blocks(0.5, 1) + _blocks(0.0, 10))
    enc, buffers = _build(source)

    enc.run()

    assert _drain(buffers) == []
    assert enc.dropped_segments == 1
    assert enc.published == 0


def test_segments_are_published_in_order():
    script = (
        _blocks(0.0, 2) + _blocks(0.5, 3) + _blocks(0.0, 6)
        + _blocks(0.0, 1) + _blocks(0.9, 4) + _blocks(0.0, 6)
    )
    enc, buffers = _build(_ScriptedSource(script))

    enc.run()

    first, second = _drain(buffers)
    assert _payload_size(first) == (2 + 3 + 6) * BLOCK_BYTES
    # memory was drained at the first onset, so only the one idle block is pre-roll
    assert _payload_size(second) == (1 + 4 + 6) * BLOCK_BYTES
    assert struct.unpack_from("<h", second, HEADER_SIZE + BLOCK_BYTES)[0] == int(0.9 * 32767)


def test_stop_flushes_partial_segment_and_stops_pulling():
    mailbox = ControlMailbox()
    source = _ScriptedSource(_blocks(0.0, 2) + _blocks(0.5, 3) + _blocks(0.5, 20), hooks={5: mailbox.stop})
    enc, buffers = _build(source, mailbox=mailbox)

    assert enc.run() == STOPPED

    (data,) = _drain(buffers)
    assert _payload_size(data) == 5 * BLOCK_BYTES
    assert source.pulls == 5


def test_stop_while_idle_publishes_nothing():
    mailbox = ControlMailbox()
    source = _ScriptedSource(_blocks(0.0, 10), hooks={3: mailbox.stop})
    enc, buffers = _build(source, mailbox=mailbox)

    assert enc.run() == STOPPED
    assert _drain(buffers) == []
    assert source.pulls == 3


def test_ask_delivers_snapshot_and_keeps_session():
    mailbox = ControlMailbox()
    snapshots: queue.Queue = queue.Queue()
    script = _blocks(0.0, 2) + _blocks(0.5, 2) + _blocks(0.5, 1) + _blocks(0.0, 6)
    source = _ScriptedSource(script, hooks={4: mailbox.ask})
    enc, buffers = _build(source, mailbox=mailbox, snapshots=snapshots)

    assert enc.run() == EXHAUSTED

    (snap,) = _drain(snapshots)
    assert _payload_size(snap) == 4 * BLOCK_BYTES
    (full,) = _drain(buffers)
    assert _payload_size(full) == 11 * BLOCK_BYTES
    # the source kept being serviced after the ask
    assert source.pulls == len(script)


def test_ask_while_idle_returns_empty_wav():
    mailbox = ControlMailbox()
    source = _ScriptedSource(_blocks(0.0, 3), hooks={1: mailbox.ask})
    enc, buffers = _build(source, mailbox=mailbox)

    enc.run()

    (snap,) = _drain(buffers)
    assert len(snap) == HEADER_SIZE
    assert _payload_size(snap) == 0


def test_full_delivery_queue_drops_instead_of_blocking():
    buffers: queue.Queue = queue.Queue(maxsize=1)
    buffers.put(b"backlog")
    source = _ScriptedSource(_blocks(0.5, 3) + _blocks(0.0, 6) + _blocks(0.0, 5))
    enc, _ = _build(source, buffers=buffers)

    assert enc.run() == EXHAUSTED

    assert enc.channels.dropped == 1
    assert enc.published == 0
    assert _drain(buffers) == [b"backlog"]
    assert source.pulls == 14


def test_exhaustion_mid_segment_discards_by_default():
    source = _ScriptedSource(_blocks(0.0, 2) + _blocks(0.5, 4))
    enc, buffers = _build(source)
    enc.run()
    assert _drain(buffers) == []


def test_exhaustion_mid_segment_can_flush():
    source = _ScriptedSource(_blocks(0.0, 2) + _blocks(0.5, 4))
    enc, buffers = _build(source, flush_on_exhausted=True)
    enc.run()
    (data,) = _drain(buffers)
    assert _payload_size(data) == 6 * BLOCK_BYTES


def test_lead_in_prefixes_every_segment():
    script = _blocks(0.5, 3) + _blocks(0.0, 6) + _blocks(0.0, 6) + _blocks(0.5, 3) + _blocks(0.0, 6)
    enc, buffers = _build(_ScriptedSource(script), lead_in_seconds=0.05)

    enc.run()

    first, second = _drain(buffers)
    assert _payload_size(first) == (2 + 9) * BLOCK_BYTES
    assert first[HEADER_SIZE:HEADER_SIZE + 2 * BLOCK_BYTES] == b"\x00" * (2 * BLOCK_BYTES)
    # six idle blocks of pre-roll precede the second onset
    assert _payload_size(second) == (2 + 6 + 9) * BLOCK_BYTES


def test_debug_sink_receives_segment(tmp_path: Path):
    filenames: queue.Queue = queue.Queue()
    samples: queue.Queue = queue.Queue()
    debug = DebugSink(file_dir=tmp_path, filenames=filenames, samples=samples)
    source = _ScriptedSource(_blocks(0.0, 4) + _blocks(0.5, 3) + _blocks(0.0, 6))
    enc, buffers = _build(source, debug=debug)

    enc.run()

    (data,) = _drain(buffers)
    path = Path(filenames.get_nowait())
    assert path.name == "debug_wav1.wav"
    assert path.read_bytes() == data
    blocks = samples.get_nowait()
    assert len(blocks) == 4 + 3 + 6


def test_dropped_segment_leaves_no_debug_output(tmp_path: Path):
    filenames: queue.Queue = queue.Queue()
    samples: queue.Queue = queue.Queue()
    debug = DebugSink(file_dir=tmp_path / "debug", filenames=filenames, samples=samples)
    buffers: queue.Queue = queue.Queue(maxsize=1)
    buffers.put(b"backlog")
    source = _ScriptedSource(_blocks(0.5, 3) + _blocks(0.0, 6))
    enc, _ = _build(source, buffers=buffers, debug=debug)

    enc.run()

    assert enc.channels.dropped == 1
    assert filenames.empty()
    assert samples.empty()
    assert not (tmp_path / "debug").exists()
    assert debug.counter == 0


def test_write_failure_is_fatal_and_publishes_nothing(monkeypatch):
    def _boom(header, size):
        raise OSError("no space left on device")

    monkeypatch.setattr(encoder_module, "finalize", _boom)
    source = _ScriptedSource(_blocks(0.5, 3) + _blocks(0.0, 6) + _blocks(0.0, 4))
    enc, buffers = _build(source)

    with pytest.raises(EncodeWriteFailure):
        enc.run()

    assert _drain(buffers) == []
    assert source.pulls == 9


def test_thread_mode_reports_result_and_error(monkeypatch):
    source = _ScriptedSource(_blocks(0.5, 3) + _blocks(0.0, 6))
    buffers: queue.Queue = queue.Queue()
    enc = start_perpetual(
        source,
        FMT,
        DeliveryChannels(buffers),
        on_threshold=0.02,
        off_threshold=0.05,
        wakeup_timeout=5,
    )
    assert enc.join(timeout=5.0)
    assert enc.result == EXHAUSTED
    assert enc.error is None
    assert len(_drain(buffers)) == 1

    def _too_big(header, size):
        raise ValueError("too big")

    monkeypatch.setattr(encoder_module, "finalize", _too_big)
    failing, _ = _build(_ScriptedSource(_blocks(0.5, 3) + _blocks(0.0, 6)))
    failing.start()
    assert failing.join(timeout=5.0)
    assert isinstance(failing.error, EncodeWriteFailure)
    assert failing.result is None


def test_invalid_format_rejected_before_any_pull():
    source = _ScriptedSource(_blocks(0.5, 3))
    with pytest.raises(InvalidFormat):
        start_perpetual(
            source,
            AudioFormat(16000, 0, 2),
            DeliveryChannels(queue.Queue()),
            on_threshold=0.02,
            off_threshold=0.05,
            wakeup_timeout=5,
        )
    assert source.pulls == 0
