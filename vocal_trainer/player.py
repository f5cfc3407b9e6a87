from __future__ import annotations

import logging
import threading
import time
from typing import Any, Optional

import numpy as np

from .config import PlayMode
from .piano import PianoRendering

logger = logging.getLogger(__name__)


class ManualTransport:
    """Transport whose clock is set by the caller (websocket client, replay, tests)."""

    def __init__(self, current_time: float = 0.0, paused: bool = True, ended: bool = False) -> None:
        self.current_time = float(current_time)
        self.paused = paused
        self.ended = ended

    def update(self, current_time: Optional[float] = None, paused: Optional[bool] = None, ended: Optional[bool] = None) -> None:
        if current_time is not None:
            self.current_time = float(current_time)
        if paused is not None:
            self.paused = bool(paused)
        if ended is not None:
            self.ended = bool(ended)

    def play(self) -> None:
        self.paused, self.ended = False, False

    def pause(self) -> None:
        self.paused = True

    def toggle(self) -> None:
        if self.paused:
            self.play()
        else:
            self.pause()


class SoundDevicePlayer:
    """
    Plays a rendering through sounddevice and exposes an audio-element style
    transport (current_time / paused / ended). Position is counted in the
    output callback, so it follows what has actually been handed to the device.
    """

    def __init__(self, rendering: PianoRendering, mode: PlayMode = "single", device: Optional[Any] = None) -> None:
        self.rendering = rendering
        self.mode = mode
        self.device = device
        self._pos = 0
        self._paused = True
        self._ended = False
        self._stream: Any = None
        self._lock = threading.Lock()

    @property
    def current_time(self) -> float:
        return self._pos / float(self.rendering.sample_rate)

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def ended(self) -> bool:
        return self._ended

    def _callback(self, outdata, frames, time_info, status) -> None:
        if status:
            logger.debug("output stream status: %s", status)
        out = np.zeros(frames, dtype=np.float32)
        with self._lock:
            if not self._paused and not self._ended:
                samples = self.rendering.samples
                filled = 0
                while filled < frames:
                    chunk = samples[self._pos:self._pos + frames - filled]
                    out[filled:filled + chunk.size] = chunk
                    filled += chunk.size
                    self._pos += chunk.size
                    if self._pos >= samples.size:
                        if self.mode == "loop":
                            self._pos = 0
                        else:
                            self._ended = True
                            break
                    if chunk.size == 0:
                        break
        outdata[:, 0] = out

    def _ensure_stream(self) -> None:
        if self._stream is not None:
            return
        import sounddevice as sd

        self._stream = sd.OutputStream(
            samplerate=self.rendering.sample_rate,
            channels=1,
            dtype="float32",
            device=self.device,
            callback=self._callback,
        )
        self._stream.start()

    def play(self) -> None:
        self._ensure_stream()
        with self._lock:
            if self._ended:
                self._pos, self._ended = 0, False
            self._paused = False

    def pause(self) -> None:
        with self._lock:
            self._paused = True

    def toggle(self) -> None:
        if self._paused or self._ended:
            self.play()
        else:
            self.pause()

    def stop(self) -> None:
        with self._lock:
            self._paused = True
            self._pos = 0
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None

    def wait(self, poll_s: float = 0.05) -> None:
        while not self._ended and self._stream is not None:
            time.sleep(poll_s)
