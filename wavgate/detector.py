"""Amplitude activity detector with hysteresis, pre-roll memory and fake-break rejection."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Union

import numpy as np

from wavgate.pcm import PEAK_MODES, peak_amplitude

LOGGER = logging.getLogger("wavgate.detector")

MEMORY_DEPTH = 31
FAKE_BREAK_LIMIT = 2


class Signal(enum.Enum):
    NOOP = "noop"
    INIT = "init"
    CONTINUE = "continue"
    COMPLETE = "complete"
    DROP = "drop"


@dataclass(frozen=True)
class Idle:
    """Listening for onset; compared against the off threshold."""


@dataclass(frozen=True)
class Recording:
    """Inside a segment; compared against the on threshold."""

    silence_count: int = 0
    noisy_count: int = 0


DetectorState = Union[Idle, Recording]


@dataclass(frozen=True)
class Decision:
    signal: Signal
    preroll: list[np.ndarray] = field(default_factory=list)


class RollingMemory:
    """Fixed-capacity ring of the most recent idle blocks, oldest evicted first."""

    def __init__(self, capacity: int = MEMORY_DEPTH) -> None:
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self.capacity = capacity
        self._slots: list[np.ndarray | None] = [None] * capacity
        self._head = 0
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def push(self, block: np.ndarray) -> None:
        if self.capacity == 0:
            return
        tail = (self._head + self._size) % self.capacity
        self._slots[tail] = block
        if self._size == self.capacity:
            self._head = (self._head + 1) % self.capacity
        else:
            self._size += 1

    def peek(self) -> list[np.ndarray]:
        out: list[np.ndarray] = []
        for offset in range(self._size):
            slot = self._slots[(self._head + offset) % self.capacity]
            assert slot is not None
            out.append(slot)
        return out

    def drain(self) -> list[np.ndarray]:
        blocks = self.peek()
        self.clear()
        return blocks

    def clear(self) -> None:
        self._slots = [None] * self.capacity
        self._head = 0
        self._size = 0


class ActivityDetector:
    """Classify sample blocks and emit one capture signal per block.

    A block is silent when its peak amplitude sits below the threshold of the
    current state: ``off_threshold`` while idle, ``on_threshold`` while
    recording. Idle silent blocks are remembered as pre-roll; the first loud
    block starts a segment. A segment ends once more than ``wakeup_timeout``
    consecutive silent blocks arrive, and is dropped instead of completed if
    fewer than ``fake_break_limit`` loud blocks followed its onset.
    """

    def __init__(
        self,
        on_threshold: float,
        off_threshold: float,
        wakeup_timeout: int,
        *,
        fake_break_limit: int = FAKE_BREAK_LIMIT,
        memory_depth: int = MEMORY_DEPTH,
        peak_mode: str = "first",
    ) -> None:
        if peak_mode not in PEAK_MODES:
            raise ValueError(f"peak_mode must be one of {PEAK_MODES}")
        if wakeup_timeout < 0:
            raise ValueError("wakeup_timeout must be >= 0")
        self.on_threshold = float(on_threshold)
        self.off_threshold = float(off_threshold)
        self.wakeup_timeout = int(wakeup_timeout)
        self.fake_break_limit = int(fake_break_limit)
        self.peak_mode = peak_mode
        self.memory = RollingMemory(memory_depth)
        self.state: DetectorState = Idle()

    @property
    def recording(self) -> bool:
        return isinstance(self.state, Recording)

    @property
    def threshold(self) -> float:
        if isinstance(self.state, Recording):
            return self.on_threshold
        return self.off_threshold

    def is_silent(self, block: np.ndarray) -> bool:
        return peak_amplitude(block, self.peak_mode) < self.threshold

    def reset(self) -> None:
        self.state = Idle()
        self.memory.clear()

    def feed(self, block: np.ndarray) -> Decision:
        silent = self.is_silent(block)
        state = self.state

        if isinstance(state, Idle):
            if silent:
                self.memory.push(block)
                return Decision(Signal.NOOP)
            preroll = self.memory.drain()
            self.state = Recording()
            LOGGER.debug("silence break; recording with %d pre-roll block(s)", len(preroll))
            return Decision(Signal.INIT, preroll)

        if not silent:
            self.state = Recording(silence_count=0, noisy_count=state.noisy_count + 1)
            return Decision(Signal.CONTINUE)

        silence_count = state.silence_count + 1
        if silence_count <= self.wakeup_timeout:
            self.state = Recording(silence_count=silence_count, noisy_count=state.noisy_count)
            return Decision(Signal.CONTINUE)

        self.state = Idle()
        if state.noisy_count < self.fake_break_limit:
            LOGGER.debug(
                "back to silence after %d noisy block(s); dropping segment",
                state.noisy_count,
            )
            return Decision(Signal.DROP)
        LOGGER.debug("back to silence after %d noisy block(s)", state.noisy_count)
        return Decision(Signal.COMPLETE)
