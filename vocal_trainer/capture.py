from __future__ import annotations

import asyncio
import logging
import queue
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Protocol

import numpy as np

logger = logging.getLogger(__name__)


class MicrophoneUnavailableError(RuntimeError):
    """Permission denied, no input device, or the device refused to open."""


class AudioBackendUnavailableError(RuntimeError):
    """The audio backend itself (PortAudio) cannot be loaded."""


@dataclass(frozen=True)
class CaptureConstraints:
    noise_suppression: bool = True
    echo_cancellation: bool = True
    auto_gain_control: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)


class CaptureStream(Protocol):
    sample_rate: int
    constraints: CaptureConstraints

    def read(self) -> np.ndarray:
        """Everything captured since the previous read, mono float32 (may be empty)."""
        ...

    def stop(self) -> None:
        ...


class Microphone(Protocol):
    async def open(self, constraints: CaptureConstraints, sample_rate: int, block_size: int) -> CaptureStream:
        ...


class FrameQueue:
    """
    Thread-safe FIFO of captured blocks. Producers (a PortAudio callback, a
    websocket handler) only push; the analysis tick drains it.
    """

    def __init__(self, sample_rate: int, constraints: CaptureConstraints = CaptureConstraints(), max_blocks: int = 256) -> None:
        self.sample_rate = int(sample_rate)
        self.constraints = constraints
        self._blocks: "queue.Queue[np.ndarray]" = queue.Queue(maxsize=max_blocks)
        self.stopped = False
        self.dropped = 0

    def push(self, block: Any) -> None:
        if self.stopped:
            return
        arr = np.asarray(block, dtype=np.float32)
        if arr.ndim > 1:
            arr = arr.mean(axis=1)
        try:
            self._blocks.put_nowait(arr.reshape(-1).copy())
        except queue.Full:
            # the tick fell behind; drop the oldest block instead of blocking the producer
            self.dropped += 1
            try:
                self._blocks.get_nowait()
            except queue.Empty:
                pass
            self._blocks.put_nowait(arr.reshape(-1).copy())

    def read(self) -> np.ndarray:
        parts: List[np.ndarray] = []
        while True:
            try:
                parts.append(self._blocks.get_nowait())
            except queue.Empty:
                break
        if not parts:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(parts)

    def stop(self) -> None:
        self.stopped = True


class PushedMicrophone:
    """Microphone whose samples arrive from outside (websocket client, tests)."""

    def __init__(self, sample_rate: int = 44100) -> None:
        self.sample_rate = int(sample_rate)
        self.stream: Optional[FrameQueue] = None

    async def open(self, constraints: CaptureConstraints, sample_rate: int, block_size: int) -> FrameQueue:
        self.stream = FrameQueue(self.sample_rate, constraints)
        return self.stream

    def push(self, block: Any) -> None:
        if self.stream is not None:
            self.stream.push(block)


class _SoundDeviceStream(FrameQueue):
    def __init__(self, sample_rate: int, constraints: CaptureConstraints) -> None:
        super().__init__(sample_rate, constraints)
        self._stream: Any = None
        self._lock = threading.Lock()

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("input stream status: %s", status)
        self.push(indata[:, 0])

    def stop(self) -> None:
        super().stop()
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()


class SoundDeviceMicrophone:
    """
    Live capture through sounddevice/PortAudio.

    PortAudio has no switches for noise suppression, echo cancellation or AGC;
    the requested constraints are kept on the stream and reported to clients,
    and the OS input chain is expected to honour them.
    """

    def __init__(self, device: Optional[Any] = None) -> None:
        self.device = device

    def _open_blocking(self, constraints: CaptureConstraints, sample_rate: int, block_size: int) -> _SoundDeviceStream:
        try:
            import sounddevice as sd
        except OSError as exc:
            raise AudioBackendUnavailableError(f"PortAudio is not available: {exc}") from exc

        wrapper = _SoundDeviceStream(sample_rate, constraints)
        try:
            stream = sd.InputStream(
                samplerate=sample_rate,
                blocksize=block_size,
                channels=1,
                dtype="float32",
                device=self.device,
                callback=wrapper._callback,
            )
            stream.start()
        except sd.PortAudioError as exc:
            raise MicrophoneUnavailableError(f"Cannot open microphone: {exc}") from exc
        wrapper._stream = stream
        wrapper.sample_rate = int(stream.samplerate)
        return wrapper

    async def open(self, constraints: CaptureConstraints, sample_rate: int, block_size: int) -> _SoundDeviceStream:
        return await asyncio.to_thread(self._open_blocking, constraints, sample_rate, block_size)
