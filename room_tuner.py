#!/usr/bin/env python3
"""
room_tuner.py

A console tool to help tune the detector thresholds for a new room.

Features:
- Live capture from arecord, or replay of a WAV file, in 512-frame blocks.
- Logs per-interval peak amplitude stats and detector activity to the console.
- Rolling noise floor estimation from idle blocks (95th percentile).
- Suggested off_threshold = noise_floor_p95 * margin and
  on_threshold = off_threshold * on_ratio.
- Optional --write to persist the suggestion into the detector config section.

Usage:
  chmod +x ./room_tuner.py
  ./room_tuner.py
  ./room_tuner.py --device "hw:CARD=Device,DEV=0" --interval 1.0 --margin 1.5
  ./room_tuner.py --input quiet_room.wav --write

Press Ctrl+C to stop.
"""
import argparse
import signal
import sys
import time
from collections import deque
from typing import Callable, Iterable, Optional

import numpy as np

from wavgate.config import (
    ConfigPersistenceError,
    get_cfg,
    load_capture_settings,
    update_detector_settings,
)
from wavgate.detector import ActivityDetector, Signal
from wavgate.pcm import BLOCK_FRAMES, peak_amplitude
from wavgate.sources import (
    ArecordSource,
    SampleSource,
    SourceUnavailableError,
    WavFileSource,
    read_block,
)


def percentile_p95(values: Iterable[float]) -> float:
    vals = np.asarray(list(values), dtype=np.float64)
    if vals.size == 0:
        return 0.0
    return float(np.percentile(vals, 95))


def suggest_thresholds(peaks: Iterable[float], margin: float, on_ratio: float) -> tuple[float, float]:
    """Return ``(on_threshold, off_threshold)`` derived from idle block peaks."""
    off = min(1.0, percentile_p95(peaks) * margin)
    on = min(1.0, max(0.0, off * on_ratio))
    return round(on, 4), round(off, 4)


def bar(val: float, scale: float = 0.25, width: int = 20) -> str:
    lvl = min(width, int((val / scale) * width)) if scale > 0 else 0
    return "#" * lvl + "-" * (width - lvl)


class Tuner:
    """Accumulates block peaks and prints one report line per interval."""

    def __init__(
        self,
        sample_rate: int,
        detector: ActivityDetector,
        *,
        interval: float = 1.0,
        margin: float = 1.5,
        on_ratio: float = 0.4,
        noise_window: float = 60.0,
        peak_mode: str = "first",
        report: Callable[[str], None] = lambda line: print(line, flush=True),
    ) -> None:
        self.detector = detector
        self.margin = margin
        self.on_ratio = on_ratio
        self.peak_mode = peak_mode
        self.report = report
        blocks_per_sec = sample_rate / float(BLOCK_FRAMES)
        self.interval_blocks = max(1, int(round(interval * blocks_per_sec)))
        self.noise_history: deque[float] = deque(maxlen=max(1, int(noise_window * blocks_per_sec)))
        self.interval_peaks: list[float] = []
        self.interval_active = 0
        self.blocks = 0

    def feed(self, block: np.ndarray) -> None:
        peak = peak_amplitude(block, self.peak_mode)
        decision = self.detector.feed(block)
        self.blocks += 1
        self.interval_peaks.append(peak)
        if decision.signal is Signal.NOOP:
            self.noise_history.append(peak)
        else:
            self.interval_active += 1
        if len(self.interval_peaks) >= self.interval_blocks:
            self.flush()

    def suggestion(self) -> tuple[float, float]:
        return suggest_thresholds(self.noise_history, self.margin, self.on_ratio)

    def flush(self) -> None:
        if not self.interval_peaks:
            return
        ts = time.strftime("%H:%M:%S")
        current = self.interval_peaks[-1]
        avg = float(np.mean(self.interval_peaks))
        peak = max(self.interval_peaks)
        active_ratio = self.interval_active / len(self.interval_peaks)
        noise_p95 = percentile_p95(self.noise_history)
        on, off = self.suggestion()
        self.report(
            f"[{ts}] peak cur={current:.4f} avg={avg:.4f} max={peak:.4f}  "
            f"active={active_ratio*100:5.1f}%  noise_p95={noise_p95:.4f}  "
            f"suggest on={on:.4f} off={off:.4f}  |  {bar(current)}"
        )
        self.interval_peaks.clear()
        self.interval_active = 0


def run_tuner(
    source: SampleSource,
    tuner: Tuner,
    *,
    max_blocks: int = 0,
    should_stop: Callable[[], bool] = lambda: False,
) -> tuple[float, float]:
    """Feed ``source`` through ``tuner`` until exhaustion, ``max_blocks`` or a stop request."""
    while not should_stop():
        block = read_block(source)
        if block is None:
            break
        tuner.feed(block)
        if max_blocks and tuner.blocks >= max_blocks:
            break
    tuner.flush()
    return tuner.suggestion()


def print_banner(args) -> None:
    print("== wavgate Room Tuner ==", flush=True)
    print(f"Input: {args.input or args.device}, interval: {args.interval}s, "
          f"margin: {args.margin}x, on ratio: {args.on_ratio}, noise window: {args.noise_window}s", flush=True)
    print("Suggested thresholds are updated each interval from the idle noise floor (95th pct).", flush=True)
    print("Press Ctrl+C to stop.\n", flush=True)


def main(argv: Optional[list[str]] = None) -> int:
    cfg = get_cfg()
    settings = load_capture_settings(cfg)

    parser = argparse.ArgumentParser(description="Live peak monitor to help choose detector thresholds.")
    parser.add_argument("--device", default=settings.device, help="ALSA device (e.g., hw:CARD=Device,DEV=0)")
    parser.add_argument("--input", default="", help="Replay a WAV file instead of capturing")
    parser.add_argument("--interval", type=float, default=1.0, help="Report interval seconds")
    parser.add_argument("--margin", type=float, default=1.5, help="Multiplier on noise-floor p95 for off_threshold")
    parser.add_argument("--on-ratio", type=float, default=0.4, help="on_threshold as a fraction of off_threshold")
    parser.add_argument("--noise-window", type=float, default=60.0, help="Seconds of idle blocks kept for noise-floor estimation")
    parser.add_argument("--duration", type=float, default=0.0, help="Optional run duration seconds (0 = indefinite)")
    parser.add_argument("--write", action="store_true", help="Persist the final suggestion to the detector config")
    args = parser.parse_args(argv)

    print_banner(args)

    stop = False

    def on_signal(signum, frame):  # noqa
        nonlocal stop
        stop = True
        print("\n[tuner] received signal, shutting down...", flush=True)

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, on_signal)

    try:
        if args.input:
            source = WavFileSource(args.input)
            sample_rate = source.sample_rate
        else:
            source = ArecordSource(args.device, settings.format.sample_rate, settings.input_channels)
            sample_rate = settings.format.sample_rate
    except (SourceUnavailableError, OSError) as exc:
        print(f"[tuner] failed to open input: {exc}", file=sys.stderr, flush=True)
        return 2

    detector = ActivityDetector(**settings.detector_kwargs())
    tuner = Tuner(
        sample_rate,
        detector,
        interval=args.interval,
        margin=args.margin,
        on_ratio=args.on_ratio,
        noise_window=args.noise_window,
        peak_mode=settings.peak_mode,
    )
    max_blocks = int(args.duration * sample_rate / BLOCK_FRAMES) if args.duration else 0
    try:
        on, off = run_tuner(source, tuner, max_blocks=max_blocks, should_stop=lambda: stop)
    finally:
        source.close()

    print(f"[tuner] final suggestion: on_threshold={on:.4f} off_threshold={off:.4f}", flush=True)
    if args.write:
        if off <= 0:
            print("[tuner] no idle audio observed; configuration not modified.", flush=True)
            return 1
        try:
            update_detector_settings({"on_threshold": on, "off_threshold": off})
        except ConfigPersistenceError as exc:
            print(f"[tuner] Failed to update configuration: {exc}", file=sys.stderr, flush=True)
            return 1
        print("[tuner] Updated detector configuration.", flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
