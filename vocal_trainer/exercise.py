from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from .notes import MIDI_A0, MIDI_C8, midi_to_note, note_to_midi
from .schedule import PlaybackSegment, Schedule

DURATION_BEATS = {
    "whole": 4.0,
    "half": 2.0,
    "quarter": 1.0,
    "eighth": 0.5,
    "sixteenth": 0.25,
    "w": 4.0,
    "h": 2.0,
    "q": 1.0,
    "8": 0.5,
    "16": 0.25,
}

DEFAULT_TEMPO_BPM = 120.0


def parse_pitch_to_midi(pitch: Optional[str]) -> Optional[int]:
    """'c#4', 'Eb4' or the staff-editor form 'c#/4'; None when unparseable."""
    if not pitch or not isinstance(pitch, str):
        return None
    try:
        return note_to_midi(pitch.strip().replace("/", "", 1))
    except ValueError:
        return None


def parse_duration_beats(duration: Optional[str]) -> float:
    return DURATION_BEATS.get(str(duration or "").lower(), 1.0)


def _parse_start(value: Any, fallback: float) -> float:
    try:
        start = float(value)
    except (TypeError, ValueError):
        return fallback
    return start if math.isfinite(start) else fallback


def normalize_tempo(tempo: Any) -> float:
    try:
        bpm = float(tempo)
    except (TypeError, ValueError):
        return DEFAULT_TEMPO_BPM
    if not math.isfinite(bpm) or bpm <= 0:
        return DEFAULT_TEMPO_BPM
    return bpm


@dataclass(frozen=True)
class ExerciseNote:
    midi: int
    duration_beats: float
    start: float


def normalize_notes(notes: Optional[Iterable[Mapping[str, Any]]]) -> List[ExerciseNote]:
    """Drop unparseable pitches, default missing starts to the ordinal, sort by start."""
    prepared: List[ExerciseNote] = []
    for i, raw in enumerate(notes or []):
        if not isinstance(raw, Mapping):
            continue
        midi = parse_pitch_to_midi(raw.get("pitch"))
        if midi is None:
            continue
        prepared.append(
            ExerciseNote(
                midi=midi,
                duration_beats=parse_duration_beats(raw.get("duration")),
                start=_parse_start(raw.get("start"), float(i)),
            )
        )
    # sorted() is stable: equal starts keep their authored order
    return sorted(prepared, key=lambda n: n.start)


@dataclass(frozen=True)
class PreparedExercise:
    events: Tuple[Tuple[str, float], ...]     # (note, duration_seconds) for the renderer
    schedule: Schedule
    sequence_notes: Tuple[str, ...]
    tempo_bpm: float
    transpose: int


def prepare_exercise(
    notes: List[ExerciseNote],
    tempo_bpm: Any = DEFAULT_TEMPO_BPM,
    transpose: int = 0,
    gap_s: float = 0.05,
) -> PreparedExercise:
    tempo = normalize_tempo(tempo_bpm)
    seconds_per_beat = 60.0 / tempo
    events: List[Tuple[str, float]] = []
    segments: List[PlaybackSegment] = []
    cursor = 0.0

    for index, note in enumerate(notes):
        midi = note.midi + transpose
        if midi < MIDI_A0 or midi > MIDI_C8:
            continue
        duration_s = note.duration_beats * seconds_per_beat
        if duration_s <= 0:
            continue
        name = midi_to_note(midi)
        events.append((name, duration_s))
        # index points into the displayed (untransposed) staff, so skipped notes leave holes
        segments.append(PlaybackSegment(note=name, start=cursor, end=cursor + duration_s, index=index))
        cursor += duration_s + gap_s

    return PreparedExercise(
        events=tuple(events),
        schedule=tuple(segments),
        sequence_notes=tuple(s.note for s in segments),
        tempo_bpm=tempo,
        transpose=transpose,
    )


def midi_bounds(notes: List[ExerciseNote]) -> Optional[Tuple[int, int]]:
    if not notes:
        return None
    midis = [n.midi for n in notes]
    return min(midis), max(midis)


def can_step_down(notes: List[ExerciseNote], transpose: int) -> bool:
    bounds = midi_bounds(notes)
    return bounds is not None and bounds[0] + transpose - 1 >= MIDI_A0


def can_step_up(notes: List[ExerciseNote], transpose: int) -> bool:
    bounds = midi_bounds(notes)
    return bounds is not None and bounds[1] + transpose + 1 <= MIDI_C8
