"""
Shared fixtures for the test suite.

Fakes for the microphone, the monotonic clock, the playback transport and the
denoiser module loader, so nothing here touches audio hardware or imports an
ML package.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import List, Optional

import numpy as np
import pytest

from vocal_trainer.capture import CaptureConstraints
from vocal_trainer.config import TrainerConfig

SR = 44100


def sine(freq_hz: float, n: int, sr: int = SR, amp: float = 0.5) -> np.ndarray:
    t = np.arange(n) / sr
    return (amp * np.sin(2 * np.pi * freq_hz * t)).astype(np.float32)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic milliseconds, advanced by hand."""

    def __init__(self, start_ms: float = 0.0) -> None:
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> float:
        self.now += ms
        return self.now


# ---------------------------------------------------------------------------
# Microphone
# ---------------------------------------------------------------------------


class FakeStream:
    def __init__(self, sample_rate: int, constraints: CaptureConstraints, log: List[str]) -> None:
        self.sample_rate = sample_rate
        self.constraints = constraints
        self.stopped = False
        self._pending: List[np.ndarray] = []
        self._log = log

    def feed(self, block: np.ndarray) -> None:
        self._pending.append(np.asarray(block, dtype=np.float32))

    def read(self) -> np.ndarray:
        if not self._pending:
            return np.zeros(0, dtype=np.float32)
        out = np.concatenate(self._pending)
        self._pending = []
        return out

    def stop(self) -> None:
        self.stopped = True
        self._log.append("tracks")


class FakeMicrophone:
    def __init__(self, sample_rate: int = SR, error: Optional[Exception] = None) -> None:
        self.sample_rate = sample_rate
        self.error = error
        self.opened = 0
        self.constraints: Optional[CaptureConstraints] = None
        self.stream: Optional[FakeStream] = None
        self.log: List[str] = []

    async def open(self, constraints: CaptureConstraints, sample_rate: int, block_size: int) -> FakeStream:
        self.opened += 1
        self.constraints = constraints
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        self.stream = FakeStream(self.sample_rate, constraints, self.log)
        return self.stream

    def feed(self, block: np.ndarray) -> None:
        assert self.stream is not None
        self.stream.feed(block)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class FakeTransport:
    def __init__(self, current_time: float = 0.0, paused: bool = False, ended: bool = False) -> None:
        self.current_time = current_time
        self.paused = paused
        self.ended = ended
        self.toggles = 0

    def toggle(self) -> None:
        self.toggles += 1
        self.paused = not self.paused


# ---------------------------------------------------------------------------
# Denoiser module loaders
# ---------------------------------------------------------------------------


class FakeLoader:
    """Async module loader; counts calls, optionally fails or waits for a gate."""

    def __init__(self, error: Optional[Exception] = None, gate: Optional[asyncio.Event] = None) -> None:
        self.error = error
        self.gate = gate
        self.calls = 0

    async def __call__(self, name: str):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(__name__=name, reduce_noise=lambda y, sr, stationary=True: np.asarray(y) * 0.5)


@pytest.fixture
def config() -> TrainerConfig:
    return TrainerConfig()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def microphone() -> FakeMicrophone:
    return FakeMicrophone()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def failing_loader() -> FakeLoader:
    return FakeLoader(error=ModuleNotFoundError("No module named 'noisereduce'"))


@pytest.fixture
def working_loader() -> FakeLoader:
    return FakeLoader()
