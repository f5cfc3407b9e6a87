from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from .cache import AsyncLoaderCache
from .notes import midi_to_frequency, note_to_midi

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PianoNoteEvent:
    note: str
    duration_seconds: float


@dataclass(frozen=True)
class PianoRendering:
    samples: np.ndarray     # mono float32
    sample_rate: int

    @property
    def duration_s(self) -> float:
        return len(self.samples) / float(self.sample_rate) if self.sample_rate else 0.0


class PianoRenderer(Protocol):
    async def render(self, events: Sequence[PianoNoteEvent], gap_s: float = 0.05) -> Optional[PianoRendering]:
        """PCM for the events laid out back to back; None when there is nothing to play."""
        ...


def events_for_sequence(notes: Iterable[str], duration_s: float) -> List[PianoNoteEvent]:
    return [PianoNoteEvent(note=n, duration_seconds=duration_s) for n in notes]


def mix_to_mono(channels: Sequence[np.ndarray]) -> np.ndarray:
    """Average equally long channels; a single channel is returned as is."""
    if len(channels) == 0:
        return np.zeros(0, dtype=np.float32)
    if len(channels) == 1:
        return np.asarray(channels[0], dtype=np.float32)
    stacked = np.stack([np.asarray(c, dtype=np.float32) for c in channels])
    return stacked.mean(axis=0).astype(np.float32)


# relative partial strengths per register (bass / mid / treble)
_REGISTER_PARTIALS = (
    (49, (1.00, 0.85, 0.68, 0.48, 0.30, 0.18, 0.10, 0.05)),
    (73, (1.00, 0.78, 0.58, 0.38, 0.22, 0.12, 0.06, 0.03)),
    (109, (1.00, 0.65, 0.42, 0.25, 0.14, 0.07, 0.03, 0.01)),
)
INHARMONICITY_B = 0.00038


@dataclass(frozen=True)
class NoteVoice:
    fundamental_hz: float
    partial_hz: Tuple[float, ...]
    partial_amp: Tuple[float, ...]
    partial_decay: Tuple[float, ...]   # 1/s, higher partials die faster


def build_note_voice(midi: int, sample_rate: int, a4_hz: float = 440.0) -> NoteVoice:
    f0 = midi_to_frequency(midi, a4_hz)
    amps = next(p for upper, p in _REGISTER_PARTIALS if midi < upper)
    freqs, kept, decays = [], [], []
    for h, amp in enumerate(amps, start=1):
        # stiff strings push the overtones slightly sharp
        f = f0 * h * np.sqrt(1.0 + INHARMONICITY_B * h * h)
        if f >= sample_rate / 2:
            break
        freqs.append(float(f))
        kept.append(float(amp))
        decays.append(0.6 + 0.45 * h + f0 / 1000.0)
    total = sum(kept) or 1.0
    return NoteVoice(
        fundamental_hz=f0,
        partial_hz=tuple(freqs),
        partial_amp=tuple(a / total for a in kept),
        partial_decay=tuple(decays),
    )


class AdditivePianoRenderer:
    """
    Offline additive piano: a decaying harmonic piano voice plus a quiet sine
    sustain layer that keeps the pitch audible for the whole note, summed into
    a master gain. The rendering runs past the last note for the release tail.
    """

    def __init__(
        self,
        sample_rate: int = 44100,
        release_s: float = 2.5,
        sustain_release_s: float = 0.6,
        master_gain: float = 0.85,
        sustain_gain: float = 0.35,
        a4_hz: float = 440.0,
        loader_cache: Optional[AsyncLoaderCache] = None,
    ) -> None:
        self.sample_rate = int(sample_rate)
        self.release_s = float(release_s)
        self.sustain_release_s = float(sustain_release_s)
        self.master_gain = float(master_gain)
        self.sustain_gain = float(sustain_gain)
        self.a4_hz = a4_hz
        self._cache = loader_cache if loader_cache is not None else AsyncLoaderCache()

    @property
    def release_tail_s(self) -> float:
        return max(self.release_s, self.sustain_release_s) + 0.5

    async def _voice(self, midi: int) -> NoteVoice:
        key = ("piano-voice", midi, self.sample_rate, self.a4_hz)
        return await self._cache.get(key, lambda: asyncio.to_thread(build_note_voice, midi, self.sample_rate, self.a4_hz))

    async def render(self, events: Sequence[PianoNoteEvent], gap_s: float = 0.05) -> Optional[PianoRendering]:
        playable: List[Tuple[int, float]] = []
        for ev in events:
            if not ev.note or not ev.duration_seconds > 0:
                continue
            try:
                playable.append((note_to_midi(ev.note), float(ev.duration_seconds)))
            except ValueError:
                logger.debug("skipping unplayable note %r", ev.note)
        if not playable:
            return None

        voices = {midi: await self._voice(midi) for midi in {m for m, _ in playable}}
        samples = await asyncio.to_thread(self._render_blocking, playable, voices, gap_s)
        if samples.size == 0:
            return None
        return PianoRendering(samples=samples, sample_rate=self.sample_rate)

    def _render_blocking(self, playable: List[Tuple[int, float]], voices: dict, gap_s: float) -> np.ndarray:
        sr = self.sample_rate
        span = sum(d for _, d in playable) + gap_s * max(0, len(playable) - 1)
        out = np.zeros(int(np.ceil((span + self.release_tail_s) * sr)), dtype=np.float64)

        cursor = 0.0
        for midi, duration in playable:
            start = int(round(cursor * sr))
            note = self._render_note(voices[midi], duration)
            end = min(start + note.size, out.size)
            out[start:end] += note[: end - start]
            cursor += duration + gap_s

        out *= self.master_gain
        peak = float(np.max(np.abs(out))) if out.size else 0.0
        if peak > 1.0:
            out /= peak * 1.01
        return out.astype(np.float32)

    def _render_note(self, voice: NoteVoice, duration: float) -> np.ndarray:
        sr = self.sample_rate
        n_on = int(round(duration * sr))
        tail = max(self.release_s, self.sustain_release_s)
        t = np.arange(n_on + int(round(tail * sr))) / sr

        # hammered string: 5 ms attack, per-partial exponential decay
        attack = np.clip(t / 0.005, 0.0, 1.0)
        piano = np.zeros_like(t)
        for f, a, d in zip(voice.partial_hz, voice.partial_amp, voice.partial_decay):
            piano += a * np.sin(2 * np.pi * f * t) * np.exp(-d * t)
        # damper: falls ~60 dB over the release time after note-off
        released = np.ones_like(t)
        off = t > duration
        released[off] = np.exp(-6.9 * (t[off] - duration) / self.release_s)
        piano *= attack * released * 0.9

        # sustain layer: 10 ms attack, full sustain, linear release
        sustain_env = np.clip(t / 0.01, 0.0, 1.0)
        sustain_env[off] *= np.clip(1.0 - (t[off] - duration) / self.sustain_release_s, 0.0, 1.0)
        sustain = np.sin(2 * np.pi * voice.fundamental_hz * t) * sustain_env * 0.5 * self.sustain_gain

        return piano + sustain
