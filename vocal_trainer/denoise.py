from __future__ import annotations

import asyncio
import importlib
import logging
from dataclasses import dataclass
from types import ModuleType
from typing import Awaitable, Callable, Literal, Optional

import numpy as np

from .cache import AsyncLoaderCache
from .config import DenoiserMode, TrainerConfig
from .graph import AudioContext, AudioNode

logger = logging.getLogger(__name__)

NoiseProcessorStatus = Literal["idle", "loading", "ready", "error"]
ModuleLoader = Callable[[str], Awaitable[ModuleType]]


class DenoiserLoadError(RuntimeError):
    pass


async def import_denoiser_module(name: str) -> ModuleType:
    """Import off the event loop; the import itself can take seconds."""
    module = await asyncio.to_thread(importlib.import_module, name)
    if not callable(getattr(module, "reduce_noise", None)):
        raise DenoiserLoadError(f"module {name!r} has no reduce_noise()")
    return module


class MLDenoiser(AudioNode):
    """
    Runs a reduce_noise(y=, sr=) style denoiser over a rolling context window
    and returns the tail matching the incoming block.
    """

    def __init__(self, context: AudioContext, module: ModuleType, context_samples: int = 4096) -> None:
        super().__init__(context)
        self.module = module
        self.context_samples = int(context_samples)
        self._history = np.zeros(0, dtype=np.float32)

    def _process(self, block: np.ndarray) -> np.ndarray:
        if block.size == 0:
            return block
        self._history = np.concatenate([self._history, block])[-self.context_samples:]
        if self._history.size < self.context_samples // 2:
            return block
        cleaned = self.module.reduce_noise(y=self._history, sr=self.context.sample_rate, stationary=True)
        cleaned = np.asarray(cleaned, dtype=np.float32).reshape(-1)
        return cleaned[-block.size:]


@dataclass(frozen=True)
class DenoiserState:
    status: NoiseProcessorStatus
    requested_mode: DenoiserMode
    effective_mode: DenoiserMode
    error: Optional[str] = None


class NoiseProcessor:
    """
    The swappable stage between the capture pre-filter and the analyser.

    none -> pass-through, ready at once
    dsp  -> high-pass + compressor, ready at once
    ml   -> loading until the denoiser module is imported; when that fails the
            stage silently becomes a pass-through (effective_mode 'none'), keeps
            the error message and still reports ready.
    """

    def __init__(
        self,
        config: TrainerConfig = TrainerConfig(),
        loader_cache: Optional[AsyncLoaderCache] = None,
        module_loader: ModuleLoader = import_denoiser_module,
    ) -> None:
        self.config = config
        self._cache = loader_cache if loader_cache is not None else AsyncLoaderCache()
        self._load_module = module_loader
        self.node: Optional[AudioNode] = None
        self.status: NoiseProcessorStatus = "idle"
        self.requested_mode: DenoiserMode = config.denoiser_mode
        self.effective_mode: DenoiserMode = "none"
        self.error: Optional[str] = None
        self._generation = 0

    @property
    def state(self) -> DenoiserState:
        return DenoiserState(
            status=self.status,
            requested_mode=self.requested_mode,
            effective_mode=self.effective_mode,
            error=self.error,
        )

    @property
    def ready(self) -> bool:
        return self.status == "ready" and self.node is not None

    def _drop_node(self) -> None:
        if self.node is not None:
            self.node.disconnect()
            self.node = None

    def _build_dsp(self, context: AudioContext) -> AudioNode:
        highpass = context.create_highpass(self.config.dsp_highpass_hz)
        compressor = context.create_compressor(self.config.compressor)
        return context.create_chain([highpass, compressor])

    async def _build_ml(self, context: AudioContext) -> AudioNode:
        name = self.config.ml_module
        module = await self._cache.get(("denoiser", name), lambda: self._load_module(name))
        return MLDenoiser(context, module, context_samples=self.config.ml_context_samples)

    async def configure(self, context: AudioContext, mode: DenoiserMode) -> DenoiserState:
        """
        (Re)build the stage for `mode`. The previous node is disconnected before
        anything new is constructed. A call superseded by a newer configure()
        discards whatever it built.
        """
        self._generation += 1
        generation = self._generation
        self._drop_node()
        self.requested_mode = mode
        self.error = None
        self.status = "loading" if mode == "ml" else "ready"

        try:
            if mode == "dsp":
                node = self._build_dsp(context)
                effective: DenoiserMode = "dsp"
            elif mode == "ml":
                try:
                    node = await self._build_ml(context)
                    effective = "ml"
                except Exception as exc:
                    if generation != self._generation:
                        return self.state
                    logger.warning("ML denoiser unavailable, falling back to raw input: %s", exc)
                    self.error = str(exc) or type(exc).__name__
                    node = context.create_passthrough()
                    effective = "none"
            else:
                node = context.create_passthrough()
                effective = "none"
        except Exception as exc:
            if generation != self._generation:
                return self.state
            logger.error("noise processor setup failed: %s", exc)
            self.node = None
            self.status = "error"
            self.error = str(exc) or type(exc).__name__
            return self.state

        if generation != self._generation:
            node.disconnect()
            return self.state

        self.node = node
        self.effective_mode = effective
        self.status = "ready"
        return self.state

    def process(self, block: np.ndarray) -> np.ndarray:
        if self.node is None:
            raise DenoiserLoadError("noise processor has no active node")
        return self.node.process(block)

    def teardown(self) -> None:
        self._generation += 1
        self._drop_node()
        self.status = "idle"
        self.effective_mode = "none"
        self.error = None
