import io
import struct
import wave
from pathlib import Path

import numpy as np
import pytest

from wavgate.encoder import (
    EncodeWriteFailure,
    FileOutputBuffer,
    OutputBuffer,
    encode,
    encode_buffer,
    lead_in_blocks,
)
from wavgate.pcm import AudioFormat, InvalidFormat
from wavgate.sources import ArraySource, WavFileSource
from wavgate.wav_header import HEADER_SIZE, parse_header

FMT = AudioFormat(sample_rate=16000, channels=1, precision=2)


def _sizes(data: bytes):
    return struct.unpack_from("<i", data, 4)[0], struct.unpack_from("<i", data, 40)[0]


class _AppendOnly:
    def __init__(self):
        self.chunks = []

    def write(self, data):
        self.chunks.append(bytes(data))
        return len(data)


class _BrokenWriter(io.BytesIO):
    def write(self, data):
        raise OSError("disk full")


class _CountingSource(ArraySource):
    pulls = 0

    def stream(self, samples):
        self.pulls += 1
        return super().stream(samples)


def test_output_buffer_finalize_rewrites_header():
    buf = OutputBuffer(FMT)
    buf.append_block(np.full((512, 2), 0.5))
    buf.append_block(np.zeros((100, 2)))

    data = buf.finalize()

    assert buf.written == 1024 + 200
    assert len(data) == HEADER_SIZE + buf.written
    assert _sizes(data) == (HEADER_SIZE + 1224, 1224)
    assert struct.unpack_from("<h", data, HEADER_SIZE)[0] == 16383


def test_output_buffer_snapshot_leaves_buffer_open():
    buf = OutputBuffer(FMT)
    buf.append_block(np.zeros((512, 2)))

    snap = buf.snapshot()
    buf.append_block(np.zeros((512, 2)))
    final = buf.finalize()

    assert _sizes(snap) == (HEADER_SIZE + 1024, 1024)
    assert _sizes(final) == (HEADER_SIZE + 2048, 2048)


def test_empty_output_buffer_is_valid_wav():
    data = OutputBuffer(FMT).finalize()
    assert len(data) == HEADER_SIZE
    assert parse_header(data).data_size == 0


def test_file_output_buffer(tmp_path: Path):
    path = tmp_path / "out.wav"
    buf = FileOutputBuffer(path, FMT)
    buf.append_block(np.zeros((512, 2)))

    assert buf.finalize() == path
    raw = path.read_bytes()
    assert len(raw) == HEADER_SIZE + 1024
    assert _sizes(raw) == (HEADER_SIZE + 1024, 1024)


def test_encode_to_seekable_writer():
    source = ArraySource(np.full((512 * 3 + 10, 2), 0.25))
    out = io.BytesIO()

    written = encode(out, source, FMT)

    data = out.getvalue()
    assert written == (512 * 3 + 10) * 2
    assert len(data) == HEADER_SIZE + written
    assert _sizes(data) == (HEADER_SIZE + written, written)


def test_encode_buffer_writes_corrected_header_first():
    source = ArraySource(np.zeros((1000, 2)))
    writer = _AppendOnly()

    written = encode_buffer(writer, source, AudioFormat(8000, 2, 3))

    assert written == 1000 * 6
    header = parse_header(writer.chunks[0])
    assert header.data_size == written
    assert header.file_size == HEADER_SIZE + written
    assert sum(len(c) for c in writer.chunks[1:]) == written


def test_encode_empty_source():
    out = io.BytesIO()
    assert encode(out, ArraySource(np.zeros((0, 2))), FMT) == 0
    assert _sizes(out.getvalue()) == (HEADER_SIZE, 0)


def test_encode_write_failure():
    with pytest.raises(EncodeWriteFailure):
        encode(_BrokenWriter(), ArraySource(np.zeros((10, 2))), FMT)


def test_invalid_format_fails_before_pulling():
    source = _CountingSource(np.zeros((512, 2)))
    with pytest.raises(InvalidFormat):
        encode(io.BytesIO(), source, AudioFormat(16000, 1, 4))
    assert source.pulls == 0


def test_lead_in_blocks_rounds_up():
    assert lead_in_blocks(0, 16000) == 0
    assert lead_in_blocks(0.03, 16000) == 1
    assert lead_in_blocks(0.04, 16000) == 2


def test_encode_reports_unreadable_source_as_invalid_format(tmp_path: Path):
    path = tmp_path / "wide.wav"
    with wave.open(str(path), "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(4)
        wav.setframerate(16000)
        wav.writeframes(b"\x00" * (4 * 512))

    with WavFileSource(path) as source:
        with pytest.raises(InvalidFormat, match="sample width 4"):
            encode(io.BytesIO(), source, FMT)
