"""
Async loader cache.

One instance per process, passed by reference to whoever needs it (the noise
processor for denoiser modules, the piano renderer for its note tables).
Concurrent callers asking for the same key share one in-flight load; a failed
load is evicted so a later call can try again.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable

logger = logging.getLogger(__name__)


class AsyncLoaderCache:
    def __init__(self) -> None:
        self._futures: Dict[Hashable, "asyncio.Future[Any]"] = {}

    def __contains__(self, key: Hashable) -> bool:
        fut = self._futures.get(key)
        return fut is not None and fut.done() and fut.exception() is None

    def __len__(self) -> int:
        return len(self._futures)

    async def get(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        fut = self._futures.get(key)
        if fut is None:
            fut = asyncio.ensure_future(loader())
            self._futures[key] = fut
            fut.add_done_callback(lambda f, k=key: self._evict_failed(k, f))
        # shield: a cancelled waiter must not cancel the shared load
        return await asyncio.shield(fut)

    def _evict_failed(self, key: Hashable, fut: "asyncio.Future[Any]") -> None:
        if fut.cancelled() or fut.exception() is not None:
            logger.debug("loader for %r failed, evicting", key)
            if self._futures.get(key) is fut:
                del self._futures[key]

    def invalidate(self, key: Hashable) -> None:
        self._futures.pop(key, None)

    def clear(self) -> None:
        self._futures.clear()
