from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Sequence, Tuple

from .comparison import Verdict, compare
from .config import PlayMode, TrainerConfig, VocalRange, get_vocal_range
from .engine import PitchDetectionEngine, RangeFrequencies
from .exercise import ExerciseNote, can_step_down, can_step_up, normalize_notes, normalize_tempo, prepare_exercise
from .notes import PIANO_KEYS, build_practice_sequence, max_sequence_length, note_index, note_label
from .piano import AdditivePianoRenderer, PianoNoteEvent, PianoRenderer, PianoRendering, events_for_sequence
from .schedule import AlignedTarget, Schedule, ScheduleAligner, Transport, build_practice_schedule, is_playing
from .scheduler import PRIORITY_ALIGNER, PRIORITY_PUBLISH, FrameLoop, Subscription

logger = logging.getLogger(__name__)

SessionMode = Literal["scale", "exercise"]


@dataclass(frozen=True)
class KeyEvent:
    key: str
    in_editable: bool = False   # focus is in a text field / contenteditable
    meta: bool = False
    ctrl: bool = False
    alt: bool = False


@dataclass(frozen=True)
class SessionFrame:
    time_ms: float
    target_note: Optional[str]
    target_label: Optional[str]
    target_frequency: Optional[float]
    active_index: Optional[int]
    voice_frequency: Optional[float]
    verdict: Optional[Verdict]
    voice_detected: bool
    pitch_out_of_range: bool
    playing: bool
    audio_available: bool
    engine_status: str
    denoiser_status: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time_ms": self.time_ms,
            "target_note": self.target_note,
            "target_label": self.target_label,
            "target_frequency": self.target_frequency,
            "active_index": self.active_index,
            "voice_frequency": self.voice_frequency,
            "verdict": self.verdict.value if self.verdict is not None else None,
            "voice_detected": self.voice_detected,
            "pitch_out_of_range": self.pitch_out_of_range,
            "playing": self.playing,
            "audio_available": self.audio_available,
            "engine_status": self.engine_status,
            "denoiser_status": self.denoiser_status,
        }


@dataclass(frozen=True)
class PracticePlan:
    events: Tuple[PianoNoteEvent, ...]
    schedule: Schedule
    sequence_notes: Tuple[str, ...]


class PracticeSession:
    """
    One practice screen: what to sing (sequence, range, transposition),
    the reference audio, and the per-frame comparison of target and voice.
    """

    def __init__(
        self,
        config: TrainerConfig = TrainerConfig(),
        engine: Optional[PitchDetectionEngine] = None,
        renderer: Optional[PianoRenderer] = None,
        transport: Optional[Transport] = None,
    ) -> None:
        self.config = config
        self.engine = engine if engine is not None else PitchDetectionEngine(config)
        self.engine.get_target_frequency = self.current_target_frequency
        self.engine.is_playing = self.is_playing
        self.renderer: PianoRenderer = renderer if renderer is not None else AdditivePianoRenderer(
            sample_rate=config.sample_rate,
            release_s=config.piano_release_s,
            sustain_release_s=config.sustain_release_s,
            a4_hz=config.a4_hz,
        )
        self.transport = transport
        self.aligner = ScheduleAligner(a4_hz=config.a4_hz)

        self.mode: SessionMode = "scale"
        self.play_mode: PlayMode = "single"
        self.vocal_range: VocalRange = get_vocal_range(config.vocal_range)
        self.base_note: str = self.vocal_range.min
        self.note_count: int = config.note_count
        self.note_duration_s: float = config.note_duration_s

        self.exercise_notes: List[ExerciseNote] = []
        self.tempo_bpm: float = config.default_tempo_bpm
        self.transpose: int = 0

        self.plan: Optional[PracticePlan] = None
        self.rendering: Optional[PianoRendering] = None
        self.audio_available = False
        self.target: AlignedTarget = AlignedTarget(None, None, None)
        self.last_frame: Optional[SessionFrame] = None

        self._listeners: List[Callable[[SessionFrame], None]] = []
        self._subscriptions: List[Subscription] = []
        self._render_generation = 0
        self.set_note_count(self.note_count)

    # --- range & sequence ----------------------------------------------------

    @property
    def range_indices(self) -> Tuple[int, int]:
        return note_index(self.vocal_range.min), note_index(self.vocal_range.max)

    def allowed_notes(self) -> List[str]:
        lo, hi = self.range_indices
        return PIANO_KEYS[lo:hi + 1]

    def set_vocal_range(self, key: Optional[str]) -> VocalRange:
        self.vocal_range = get_vocal_range(key)
        self.engine.set_range(RangeFrequencies.from_vocal_range(self.vocal_range, self.config.a4_hz))
        self.select_note(self.base_note)
        return self.vocal_range

    def select_note(self, note: str) -> str:
        """Pick the base note, pulled back inside the vocal range when needed."""
        lo, hi = self.range_indices
        idx = note_index(note)
        if idx == -1:
            idx = lo
        self.base_note = PIANO_KEYS[min(max(idx, lo), hi)]
        self.set_note_count(self.note_count)
        return self.base_note

    @property
    def max_note_count(self) -> int:
        return min(max_sequence_length(self.base_note), self.config.max_note_count)

    def set_note_count(self, count: int) -> int:
        self.note_count = int(min(max(count, 1), self.max_note_count))
        return self.note_count

    def set_note_duration(self, seconds: float) -> float:
        if not seconds > 0:
            raise ValueError("note duration must be positive")
        self.note_duration_s = float(seconds)
        return self.note_duration_s

    def use_scale(self) -> None:
        self.mode = "scale"

    def load_exercise(self, notes: Sequence[Mapping[str, Any]], tempo_bpm: Any = None) -> List[ExerciseNote]:
        self.mode = "exercise"
        self.exercise_notes = normalize_notes(notes)
        self.tempo_bpm = normalize_tempo(tempo_bpm)
        self.transpose = 0
        return self.exercise_notes

    def build_plan(self) -> PracticePlan:
        gap = self.config.gap_seconds
        if self.mode == "exercise":
            prepared = prepare_exercise(self.exercise_notes, self.tempo_bpm, self.transpose, gap)
            events = tuple(PianoNoteEvent(note=n, duration_seconds=d) for n, d in prepared.events)
            return PracticePlan(events=events, schedule=prepared.schedule, sequence_notes=prepared.sequence_notes)
        notes = build_practice_sequence(self.base_note, self.note_count)
        return PracticePlan(
            events=tuple(events_for_sequence(notes, self.note_duration_s)),
            schedule=build_practice_schedule(notes, self.note_duration_s, gap),
            sequence_notes=tuple(notes),
        )

    # --- transposition -------------------------------------------------------

    @property
    def can_step_up(self) -> bool:
        if self.mode == "exercise":
            return can_step_up(self.exercise_notes, self.transpose)
        return note_index(self.base_note) < self.range_indices[1]

    @property
    def can_step_down(self) -> bool:
        if self.mode == "exercise":
            return can_step_down(self.exercise_notes, self.transpose)
        return note_index(self.base_note) > self.range_indices[0]

    def step(self, direction: int) -> bool:
        """Move one semitone up (+1) or down (-1); False when blocked at an edge."""
        if (direction > 0 and not self.can_step_up) or (direction < 0 and not self.can_step_down):
            return False
        if self.mode == "exercise":
            self.transpose += 1 if direction > 0 else -1
        else:
            self.select_note(PIANO_KEYS[note_index(self.base_note) + (1 if direction > 0 else -1)])
        return True

    # --- rendering -----------------------------------------------------------

    async def prepare(self) -> bool:
        """
        Build the plan and render it. Returns whether audio is available; a
        render overtaken by a newer prepare() is dropped.
        """
        self._render_generation += 1
        generation = self._render_generation
        plan = self.build_plan()

        rendering: Optional[PianoRendering] = None
        try:
            rendering = await self.renderer.render(plan.events, self.config.gap_seconds)
        except Exception:
            logger.exception("piano rendering failed")
            rendering = None

        if generation != self._render_generation:
            return False

        self.plan = plan
        default = plan.sequence_notes[0] if plan.sequence_notes else None
        self.aligner.replace(plan.schedule, default_note=default)
        if rendering is None or rendering.samples.size == 0:
            logger.warning("no reference audio for %d note(s)", len(plan.events))
            self.rendering = None
            self.audio_available = False
        else:
            self.rendering = rendering
            self.audio_available = True
        return self.audio_available

    # --- transport & keys ----------------------------------------------------

    def set_transport(self, transport: Optional[Transport]) -> None:
        self.transport = transport

    def is_playing(self) -> bool:
        return self.audio_available and is_playing(self.transport)

    def toggle_pause(self) -> bool:
        toggle = getattr(self.transport, "toggle", None)
        if not self.audio_available or toggle is None:
            return False
        toggle()
        return True

    async def handle_key(self, event: KeyEvent) -> bool:
        """Arrow keys transpose and re-render, Space toggles pause. Returns whether the key was used."""
        if event.in_editable or event.meta or event.ctrl or event.alt:
            return False
        if event.key in ("ArrowUp", "ArrowDown"):
            if not self.step(1 if event.key == "ArrowUp" else -1):
                return False
            await self.prepare()
            return True
        if event.key in (" ", "Space"):
            return self.toggle_pause()
        return False

    # --- per frame -----------------------------------------------------------

    def current_target_frequency(self) -> Optional[float]:
        return self.target.frequency

    def align(self, now_ms: float) -> None:
        self.target = self.aligner.resolve(self.transport)

    def build_frame(self, now_ms: float) -> SessionFrame:
        snap = self.engine.snapshot()
        target = self.target
        return SessionFrame(
            time_ms=now_ms,
            target_note=target.note,
            target_label=note_label(target.note, self.config.notation) if target.note else None,
            target_frequency=target.frequency,
            active_index=target.active_index,
            voice_frequency=snap.voice_frequency,
            verdict=compare(target.frequency, snap.voice_frequency),
            voice_detected=snap.voice_detected,
            pitch_out_of_range=snap.pitch_out_of_range,
            playing=self.is_playing(),
            audio_available=self.audio_available,
            engine_status=self.engine.status,
            denoiser_status=snap.denoiser.status,
        )

    def publish(self, now_ms: float) -> None:
        frame = self.build_frame(now_ms)
        self.last_frame = frame
        for listener in list(self._listeners):
            listener(frame)

    def on_frame(self, listener: Callable[[SessionFrame], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def attach(self, frame_loop: FrameLoop) -> None:
        """Aligner first, then the engine tick, then publishing, every frame."""
        self.detach()
        self._subscriptions = [
            frame_loop.subscribe(self.align, priority=PRIORITY_ALIGNER),
            frame_loop.subscribe(self.publish, priority=PRIORITY_PUBLISH),
        ]
        self.engine.attach(frame_loop)

    def detach(self) -> None:
        for sub in self._subscriptions:
            sub.cancel()
        self._subscriptions = []

    async def start(self) -> None:
        await self.engine.start()

    def stop(self) -> None:
        self.engine.stop()
        self.detach()
