from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
FrameCallback = Callable[[float], None]

# Subscription order inside one frame.
PRIORITY_ALIGNER = 0
PRIORITY_ENGINE = 10
PRIORITY_PUBLISH = 20


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class Subscription:
    def __init__(self, frame_loop: "FrameLoop", callback: FrameCallback, priority: int, seq: int) -> None:
        self._frame_loop = frame_loop
        self.callback = callback
        self.priority = priority
        self.seq = seq
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._frame_loop._remove(self)


class FrameLoop:
    """
    Cooperative per-frame driver on asyncio. Every frame calls the active
    subscriptions in priority order with the current monotonic time in ms.
    A failing callback is logged and the frame carries on.
    """

    def __init__(self, fps: float = 60.0, clock: Clock = monotonic_ms) -> None:
        self.fps = float(fps)
        self.clock = clock
        self._subs: List[Subscription] = []
        self._seq = itertools.count()
        self._task: Optional[asyncio.Task] = None
        self.frames = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, callback: FrameCallback, priority: int = 0) -> Subscription:
        sub = Subscription(self, callback, priority, next(self._seq))
        self._subs.append(sub)
        self._subs.sort(key=lambda s: (s.priority, s.seq))
        return sub

    def _remove(self, sub: Subscription) -> None:
        if sub in self._subs:
            self._subs.remove(sub)

    def __len__(self) -> int:
        return len(self._subs)

    def run_frame(self, now_ms: Optional[float] = None) -> float:
        now = self.clock() if now_ms is None else now_ms
        # snapshot: callbacks may cancel themselves or others mid-frame
        for sub in list(self._subs):
            if not sub.active:
                continue
            try:
                sub.callback(now)
            except Exception:
                logger.exception("frame callback %r failed", sub.callback)
        self.frames += 1
        return now

    async def run(self) -> None:
        interval = 1.0 / self.fps
        while True:
            started = time.monotonic()
            self.run_frame()
            await asyncio.sleep(max(0.0, interval - (time.monotonic() - started)))

    def start(self) -> asyncio.Task:
        if not self.running:
            self._task = asyncio.ensure_future(self.run())
        return self._task

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
