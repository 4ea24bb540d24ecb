import logging
import queue
from pathlib import Path

import numpy as np

from wavgate.channels import Control, ControlMailbox, DebugSink, DeliveryChannels


def test_mailbox_poll_is_fifo_and_non_blocking():
    mailbox = ControlMailbox()
    assert mailbox.poll() is None
    mailbox.ask()
    mailbox.stop()
    assert mailbox.poll() is Control.ASK
    assert mailbox.poll() is Control.STOP
    assert mailbox.poll() is None


def test_publish_and_snapshot_routing():
    buffers: queue.Queue = queue.Queue()
    snapshots: queue.Queue = queue.Queue()
    channels = DeliveryChannels(buffers, snapshots)

    assert channels.publish(b"full")
    assert channels.publish_snapshot(b"snap")

    assert buffers.get_nowait() == b"full"
    assert snapshots.get_nowait() == b"snap"


def test_snapshot_falls_back_to_buffers():
    buffers: queue.Queue = queue.Queue()
    channels = DeliveryChannels(buffers)
    channels.publish_snapshot(b"snap")
    assert buffers.get_nowait() == b"snap"


def test_full_queue_drops_after_timeout(caplog):
    buffers: queue.Queue = queue.Queue(maxsize=1)
    buffers.put(b"stale")
    channels = DeliveryChannels(buffers, publish_timeout=0.01)

    with caplog.at_level(logging.WARNING, logger="wavgate.channels"):
        assert channels.publish(b"fresh") is False

    assert channels.dropped == 1
    assert buffers.get_nowait() == b"stale"
    assert "dropped" in caplog.text


def test_debug_sink_without_outputs_is_inert(tmp_path: Path):
    sink = DebugSink()
    assert not sink.wants_samples
    sink.emit(b"data", [np.zeros((1, 2))])
    assert list(tmp_path.iterdir()) == []


def test_debug_sink_writes_numbered_files(tmp_path: Path):
    filenames: queue.Queue = queue.Queue()
    samples: queue.Queue = queue.Queue()
    sink = DebugSink(file_dir=tmp_path / "debug", filenames=filenames, samples=samples)
    block = np.zeros((4, 2))

    sink.emit(b"first", [block])
    sink.emit(b"second", [block, block])

    assert sink.wants_samples
    first = Path(filenames.get_nowait())
    second = Path(filenames.get_nowait())
    assert first.name == "debug_wav1.wav"
    assert second.name == "debug_wav2.wav"
    assert first.read_bytes() == b"first"
    assert second.read_bytes() == b"second"
    assert len(samples.get_nowait()) == 1
    assert len(samples.get_nowait()) == 2
    assert sorted(p.name for p in (tmp_path / "debug").iterdir()) == ["debug_wav1.wav", "debug_wav2.wav"]
