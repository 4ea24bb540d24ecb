#!/usr/bin/env python3
"""
Capture daemon: gate a live (or replayed) audio stream into WAV files.

SIGINT/SIGTERM flush the in-flight segment and stop. SIGUSR1 asks for a
snapshot of everything captured since the previous ask or segment boundary.
"""
from __future__ import annotations

import argparse
import dataclasses
import io
import logging
import os
import queue
import signal
import sys
import tempfile
import time
import wave
from pathlib import Path
from typing import Any, Mapping, Optional

from wavgate.channels import ControlMailbox, DebugSink, DeliveryChannels
from wavgate.config import CaptureSettings, ConfigError, get_cfg, load_capture_settings
from wavgate.detector import ActivityDetector
from wavgate.encoder import EXHAUSTED, EncodeWriteFailure, PerpetualEncoder, encode
from wavgate.pcm import AudioFormat, InvalidFormat
from wavgate.sources import (
    ArecordSource,
    PcmStreamSource,
    SampleSource,
    SourceUnavailableError,
    WavFileSource,
)

ARECORD_RETRY_SEC = 3.0
_POLL_SEC = 0.2

stop_requested = False


def configure_logging(cfg: Mapping[str, Any]) -> None:
    section = cfg.get("logging", {}) or {}
    if section.get("dev_mode"):
        level = logging.DEBUG
    else:
        level = getattr(logging, str(section.get("level", "INFO")).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger().setLevel(level)


def write_capture(directory: str | os.PathLike[str], data: bytes, index: int, suffix: str = "") -> Path:
    """Atomically write ``data`` as ``<YYYYmmdd-HHMMSS>_<index><suffix>.wav``."""
    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)
    stamp = time.strftime("%Y%m%d-%H%M%S")
    target = target_dir / f"{stamp}_{index}{suffix}.wav"
    fd, tmp_name = tempfile.mkstemp(prefix=".capture", suffix=".part", dir=target_dir)
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


def _parse_args(argv: Optional[list[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Gate audio into WAV files on detected activity.")
    parser.add_argument(
        "--input",
        help="WAV file to replay, or '-' for raw S16_LE PCM on stdin (default: arecord)",
    )
    parser.add_argument("--output-dir", help="Directory for captured WAV files")
    parser.add_argument("--debug-file", action="store_true", help="Also write debug_wav{n}.wav copies")
    parser.add_argument("--debug-samples", action="store_true", help="Log per-segment sample block counts")
    parser.add_argument(
        "--oneshot",
        action="store_true",
        help="Encode the whole input into a single WAV without gating",
    )
    return parser.parse_args(argv)


def _open_source(args: argparse.Namespace, settings: CaptureSettings) -> SampleSource:
    if args.input == "-":
        return PcmStreamSource(sys.stdin.buffer, channels=settings.input_channels, sample_width=2)
    if args.input:
        return WavFileSource(args.input)
    return ArecordSource(settings.device, settings.format.sample_rate, settings.input_channels)


def _source_format(source: SampleSource, settings: CaptureSettings) -> AudioFormat:
    """Output format for ``source``; a replayed WAV file keeps its own rate."""
    if isinstance(source, WavFileSource):
        return dataclasses.replace(settings.format, sample_rate=source.sample_rate)
    return settings.format


def _close_source(source: Optional[SampleSource]) -> None:
    close = getattr(source, "close", None)
    if close is not None:
        close()


def _drain_debug(
    filenames: "queue.Queue[str] | None",
    samples: "queue.Queue[list[Any]] | None",
) -> None:
    while filenames is not None:
        try:
            name = filenames.get_nowait()
        except queue.Empty:
            break
        print(f"[capture] debug file {name}", flush=True)
    while samples is not None:
        try:
            blocks = samples.get_nowait()
        except queue.Empty:
            break
        frames = sum(len(b) for b in blocks)
        print(f"[capture] debug samples: {len(blocks)} block(s), {frames} frame(s)", flush=True)


class _Consumer:
    """Writes everything the encoder publishes to the output directory."""

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir
        self.index = 0

    def write(self, data: bytes, suffix: str = "") -> None:
        path = write_capture(self.output_dir, data, self.index, suffix)
        self.index += 1
        print(f"[capture] wrote {path} ({len(data)} bytes)", flush=True)

    def drain(self, q: "queue.Queue[bytes]", suffix: str = "", timeout: float = 0.0) -> bool:
        try:
            data = q.get(timeout=timeout) if timeout > 0 else q.get_nowait()
        except queue.Empty:
            return False
        self.write(data, suffix)
        while True:
            try:
                data = q.get_nowait()
            except queue.Empty:
                return True
            self.write(data, suffix)


def _run_oneshot(args: argparse.Namespace, settings: CaptureSettings, output_dir: Path) -> int:
    source = _open_source(args, settings)
    try:
        out = io.BytesIO()
        written = encode(out, source, _source_format(source, settings))
    finally:
        _close_source(source)
    path = write_capture(output_dir, out.getvalue(), 0)
    print(f"[capture] oneshot wrote {path} ({written} payload bytes)", flush=True)
    return 0


def _install_signals(mailbox: ControlMailbox) -> dict[int, Any]:
    def _handle_signal(signum, frame):  # noqa
        global stop_requested
        if signum == signal.SIGUSR1:
            print("[capture] snapshot requested", flush=True)
            mailbox.ask()
            return
        print(f"[capture] received signal {signum}, shutting down...", flush=True)
        stop_requested = True
        mailbox.stop()

    previous: dict[int, Any] = {}
    for signum in (signal.SIGINT, signal.SIGTERM, signal.SIGUSR1):
        previous[signum] = signal.signal(signum, _handle_signal)
    return previous


def _restore_signals(previous: dict[int, Any]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def main(argv: Optional[list[str]] = None) -> int:
    global stop_requested
    stop_requested = False
    args = _parse_args(argv)

    cfg = get_cfg()
    configure_logging(cfg)
    try:
        settings = load_capture_settings(cfg)
    except (InvalidFormat, ConfigError) as exc:
        print(f"[capture] invalid configuration: {exc}", flush=True)
        return 2

    output_dir = Path(args.output_dir).expanduser() if args.output_dir else settings.output_dir

    if args.oneshot:
        try:
            return _run_oneshot(args, settings, output_dir)
        except EncodeWriteFailure as exc:
            print(f"[capture] encode failed: {exc}", flush=True)
            return 1
        except (OSError, EOFError, wave.Error, InvalidFormat) as exc:
            print(f"[capture] cannot read input: {exc}", flush=True)
            return 2

    buffers: "queue.Queue[bytes]" = queue.Queue(maxsize=settings.queue_size)
    snapshots: "queue.Queue[bytes]" = queue.Queue(maxsize=settings.queue_size)
    channels = DeliveryChannels(buffers, snapshots, publish_timeout=settings.publish_timeout)
    mailbox = ControlMailbox()

    debug: DebugSink | None = None
    filenames: "queue.Queue[str] | None" = None
    samples: "queue.Queue[list[Any]] | None" = None
    if args.debug_file or args.debug_samples or settings.debug_file or settings.debug_samples:
        if args.debug_file or settings.debug_file:
            filenames = queue.Queue(maxsize=settings.queue_size)
        if args.debug_samples or settings.debug_samples:
            samples = queue.Queue(maxsize=settings.queue_size)
        debug = DebugSink(
            file_dir=settings.debug_dir if filenames is not None else None,
            filenames=filenames,
            samples=samples,
        )

    consumer = _Consumer(output_dir)
    previous_handlers = _install_signals(mailbox)
    print(
        f"[capture] starting input={args.input or settings.device} output={output_dir}"
        f" on={settings.on_threshold} off={settings.off_threshold} timeout={settings.wakeup_timeout}",
        flush=True,
    )

    exit_code = 0
    try:
        while True:
            try:
                source = _open_source(args, settings)
            except SourceUnavailableError as exc:
                print(f"[capture] {exc}; retrying in {ARECORD_RETRY_SEC:.0f}s...", flush=True)
                if stop_requested:
                    break
                time.sleep(ARECORD_RETRY_SEC)
                continue
            except (OSError, EOFError, wave.Error) as exc:
                print(f"[capture] cannot open input: {exc}", flush=True)
                return 2

            detector = ActivityDetector(**settings.detector_kwargs())
            encoder = PerpetualEncoder(
                source,
                _source_format(source, settings),
                detector,
                channels,
                mailbox=mailbox,
                debug=debug,
                lead_in_seconds=settings.lead_in_seconds,
                flush_on_exhausted=settings.flush_on_exhausted,
            ).start()

            stop_deadline: float | None = None
            try:
                while encoder.alive:
                    consumer.drain(buffers, timeout=_POLL_SEC)
                    consumer.drain(snapshots, suffix="_snapshot")
                    _drain_debug(filenames, samples)
                    if stop_requested and stop_deadline is None:
                        stop_deadline = time.monotonic() + settings.shutdown_timeout
                    if stop_deadline is not None and time.monotonic() > stop_deadline:
                        print("[capture] encoder did not stop in time; abandoning it", flush=True)
                        break
                consumer.drain(buffers)
                consumer.drain(snapshots, suffix="_snapshot")
                _drain_debug(filenames, samples)
            finally:
                _close_source(source)

            if isinstance(encoder.error, InvalidFormat):
                print(f"[capture] cannot read input: {encoder.error}", flush=True)
                exit_code = 2
                break
            if encoder.error is not None:
                print(f"[capture] encoder failed: {encoder.error}", flush=True)
                exit_code = 1
                break
            if stop_requested or args.input:
                break
            if encoder.result == EXHAUSTED:
                print(
                    f"[capture] arecord ended or device unavailable; retrying in {ARECORD_RETRY_SEC:.0f}s...",
                    flush=True,
                )
                time.sleep(ARECORD_RETRY_SEC)
                continue
            break
    finally:
        _restore_signals(previous_handlers)

    print(
        f"[capture] done: {consumer.index} file(s), {channels.dropped} dropped on full queue",
        flush=True,
    )
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
