"""Tests for the additive piano renderer."""

import numpy as np
import pytest

from vocal_trainer.cache import AsyncLoaderCache
from vocal_trainer.piano import (
    AdditivePianoRenderer,
    PianoNoteEvent,
    build_note_voice,
    events_for_sequence,
    mix_to_mono,
)


class TestRender:
    @pytest.mark.asyncio
    async def test_length_covers_notes_gaps_and_release(self) -> None:
        renderer = AdditivePianoRenderer(sample_rate=22050)
        events = events_for_sequence(["C4", "D4", "E4"], 1.0)
        rendering = await renderer.render(events, gap_s=0.05)
        span = 3.0 + 2 * 0.05
        assert rendering.samples.size == int(np.ceil((span + renderer.release_tail_s) * 22050))
        assert rendering.samples.dtype == np.float32
        assert rendering.duration_s == pytest.approx(span + renderer.release_tail_s, abs=1e-3)

    @pytest.mark.asyncio
    async def test_middle_c_is_the_loudest_component(self) -> None:
        renderer = AdditivePianoRenderer(sample_rate=22050)
        rendering = await renderer.render([PianoNoteEvent("C4", 1.0)])
        head = rendering.samples[:22050]
        spectrum = np.abs(np.fft.rfft(head * np.hanning(head.size)))
        freqs = np.fft.rfftfreq(head.size, 1.0 / 22050)
        assert freqs[np.argmax(spectrum)] == pytest.approx(261.63, rel=0.01)

    @pytest.mark.asyncio
    async def test_output_is_never_clipped(self) -> None:
        renderer = AdditivePianoRenderer(sample_rate=22050, master_gain=4.0)
        rendering = await renderer.render(events_for_sequence(["C2", "C3", "C4"], 0.3))
        assert float(np.max(np.abs(rendering.samples))) <= 1.0

    @pytest.mark.asyncio
    async def test_nothing_playable(self) -> None:
        renderer = AdditivePianoRenderer(sample_rate=22050)
        assert await renderer.render([]) is None
        assert await renderer.render([PianoNoteEvent("H9", 1.0), PianoNoteEvent("C4", 0.0)]) is None

    @pytest.mark.asyncio
    async def test_invalid_notes_are_skipped(self) -> None:
        renderer = AdditivePianoRenderer(sample_rate=22050)
        good = await renderer.render([PianoNoteEvent("C4", 0.5)], gap_s=0.0)
        mixed = await renderer.render([PianoNoteEvent("nope", 1.0), PianoNoteEvent("C4", 0.5)], gap_s=0.0)
        assert mixed.samples.size == good.samples.size

    @pytest.mark.asyncio
    async def test_voices_are_cached_per_note(self) -> None:
        cache = AsyncLoaderCache()
        renderer = AdditivePianoRenderer(sample_rate=22050, loader_cache=cache)
        await renderer.render(events_for_sequence(["C4", "E4", "C4"], 0.2))
        await renderer.render(events_for_sequence(["E4"], 0.2))
        assert len(cache) == 2


class TestVoice:
    def test_partials_stay_below_nyquist(self) -> None:
        voice = build_note_voice(105, 8000)
        assert all(f < 4000 for f in voice.partial_hz)
        assert sum(voice.partial_amp) == pytest.approx(1.0)

    def test_overtones_are_stretched(self) -> None:
        voice = build_note_voice(69, 44100)
        assert voice.partial_hz[0] == pytest.approx(440.0, rel=1e-3)
        assert voice.partial_hz[3] > 4 * 440.0


class TestMixToMono:
    def test_average(self) -> None:
        np.testing.assert_allclose(mix_to_mono([np.ones(3), np.zeros(3)]), [0.5, 0.5, 0.5])

    def test_single_and_empty(self) -> None:
        np.testing.assert_array_equal(mix_to_mono([np.arange(3.0)]), [0.0, 1.0, 2.0])
        assert mix_to_mono([]).size == 0
