"""Tests for the noise processor state machine and its ML fallback."""

import asyncio

import numpy as np
import pytest

from conftest import SR, FakeLoader, sine
from vocal_trainer.cache import AsyncLoaderCache
from vocal_trainer.config import TrainerConfig
from vocal_trainer.denoise import MLDenoiser, NoiseProcessor
from vocal_trainer.graph import AudioContext, NodeChain, PassThrough


class TestModes:
    @pytest.mark.asyncio
    async def test_none_is_ready_at_once(self, config: TrainerConfig) -> None:
        proc = NoiseProcessor(config)
        state = await proc.configure(AudioContext(SR), "none")
        assert state.status == "ready"
        assert state.effective_mode == "none"
        assert isinstance(proc.node, PassThrough)

    @pytest.mark.asyncio
    async def test_dsp_builds_highpass_and_compressor(self, config: TrainerConfig) -> None:
        proc = NoiseProcessor(config)
        state = await proc.configure(AudioContext(SR), "dsp")
        assert (state.status, state.effective_mode) == ("ready", "dsp")
        assert isinstance(proc.node, NodeChain)
        assert len(proc.node.nodes) == 2
        assert proc.process(sine(440.0, 512)).shape == (512,)

    @pytest.mark.asyncio
    async def test_ml_success(self, config: TrainerConfig, working_loader: FakeLoader) -> None:
        proc = NoiseProcessor(config, module_loader=working_loader)
        state = await proc.configure(AudioContext(SR), "ml")
        assert (state.status, state.effective_mode, state.error) == ("ready", "ml", None)
        assert isinstance(proc.node, MLDenoiser)

    @pytest.mark.asyncio
    async def test_ml_module_is_configurable(self, working_loader: FakeLoader) -> None:
        """Another denoiser exposing reduce_noise() can stand in for noisereduce."""
        requested = []

        async def loader(name: str):
            requested.append(name)
            return await working_loader(name)

        proc = NoiseProcessor(TrainerConfig(ml_module="rnnoise_wrapper"), module_loader=loader)
        state = await proc.configure(AudioContext(SR), "ml")
        assert requested == ["rnnoise_wrapper"]
        assert state.effective_mode == "ml"

    @pytest.mark.asyncio
    async def test_loading_status_while_ml_loads(self, config: TrainerConfig) -> None:
        gate = asyncio.Event()
        proc = NoiseProcessor(config, module_loader=FakeLoader(gate=gate))
        task = asyncio.ensure_future(proc.configure(AudioContext(SR), "ml"))
        await asyncio.sleep(0)
        assert proc.status == "loading"
        assert not proc.ready
        gate.set()
        await task
        assert proc.ready


class TestMLFallback:
    @pytest.mark.asyncio
    async def test_load_failure_falls_back_to_passthrough(
        self, config: TrainerConfig, failing_loader: FakeLoader
    ) -> None:
        """A missing module is degraded mode, not an error."""
        proc = NoiseProcessor(config, module_loader=failing_loader)
        state = await proc.configure(AudioContext(SR), "ml")
        assert state.status == "ready"
        assert state.requested_mode == "ml"
        assert state.effective_mode == "none"
        assert state.error
        assert isinstance(proc.node, PassThrough)

    @pytest.mark.asyncio
    async def test_module_without_entry_point(self, config: TrainerConfig) -> None:
        """The real importer rejects a module that has no reduce_noise()."""
        proc = NoiseProcessor(TrainerConfig(ml_module="json"))
        state = await proc.configure(AudioContext(SR), "ml")
        assert state.effective_mode == "none"
        assert "reduce_noise" in state.error

    @pytest.mark.asyncio
    async def test_superseded_load_is_discarded(self, config: TrainerConfig) -> None:
        gate = asyncio.Event()
        ctx = AudioContext(SR)
        proc = NoiseProcessor(config, module_loader=FakeLoader(gate=gate))
        slow = asyncio.ensure_future(proc.configure(ctx, "ml"))
        await asyncio.sleep(0)

        await proc.configure(ctx, "none")
        gate.set()
        await slow

        assert proc.effective_mode == "none"
        assert isinstance(proc.node, PassThrough)
        assert not any(isinstance(n, MLDenoiser) for n in ctx.live_nodes)

    @pytest.mark.asyncio
    async def test_loads_are_shared_through_the_cache(self, config: TrainerConfig, working_loader: FakeLoader) -> None:
        cache = AsyncLoaderCache()
        for _ in range(3):
            proc = NoiseProcessor(config, loader_cache=cache, module_loader=working_loader)
            await proc.configure(AudioContext(SR), "ml")
        assert working_loader.calls == 1


class TestRebuild:
    @pytest.mark.asyncio
    async def test_previous_nodes_are_disconnected(self, config: TrainerConfig) -> None:
        ctx = AudioContext(SR)
        proc = NoiseProcessor(config)
        await proc.configure(ctx, "dsp")
        old = proc.node
        await proc.configure(ctx, "none")
        assert not old.connected
        assert all(not n.connected for n in old.nodes)
        assert ctx.live_nodes == [proc.node]

    @pytest.mark.asyncio
    async def test_teardown(self, config: TrainerConfig) -> None:
        proc = NoiseProcessor(config)
        await proc.configure(AudioContext(SR), "dsp")
        proc.teardown()
        assert proc.status == "idle"
        assert proc.node is None


class TestMLDenoiserNode:
    def test_passes_through_until_context_fills(self, working_loader: FakeLoader) -> None:
        module = asyncio.run(working_loader("noisereduce"))
        node = MLDenoiser(AudioContext(SR), module, context_samples=4096)
        block = sine(440.0, 512)
        np.testing.assert_array_equal(node.process(block), block)
        for _ in range(4):
            out = node.process(block)
        np.testing.assert_allclose(out, block * 0.5)
