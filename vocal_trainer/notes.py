from __future__ import annotations

import math
from typing import List, Optional

import librosa
from librosa.util.exceptions import ParameterError

from .config import NotationMode


NOTE_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]

MAJOR_SCALE_INTERVALS = [2, 2, 1, 2, 2, 2, 1]

MIDI_A0 = 21
MIDI_C8 = 108

NOTE_TO_ITALIAN = {
    "C": "Do", "C#": "Do#",
    "D": "Re", "D#": "Re#",
    "E": "Mi",
    "F": "Fa", "F#": "Fa#",
    "G": "Sol", "G#": "Sol#",
    "A": "La", "A#": "La#",
    "B": "Si",
}


def midi_to_note(midi: int) -> str:
    """Sharp spelling in scientific pitch notation, e.g. 61 -> 'C#4'."""
    midi = int(midi)
    return f"{NOTE_NAMES[midi % 12]}{midi // 12 - 1}"


# Every key of an 88-key piano, lowest first.
PIANO_KEYS: List[str] = [midi_to_note(m) for m in range(MIDI_A0, MIDI_C8 + 1)]
_KEY_INDEX = {name: i for i, name in enumerate(PIANO_KEYS)}


def note_to_midi(name: str) -> int:
    """
    Parse a note name into a MIDI number.
    Accepts sharps/flats ('C#4', 'Db4', 'E♭3'); the octave is mandatory.
    """
    s = (name or "").strip()
    if not s or not s[-1].isdigit():
        raise ValueError(f"Invalid note name: {name!r}")
    try:
        return int(librosa.note_to_midi(s))
    except ParameterError as exc:
        raise ValueError(f"Invalid note name: {name!r}") from exc


def midi_to_frequency(midi: float, a4_hz: float = 440.0) -> float:
    return a4_hz * 2.0 ** ((midi - 69) / 12.0)


def note_to_frequency(name: str, a4_hz: float = 440.0) -> float:
    return midi_to_frequency(note_to_midi(name), a4_hz)


def frequency_to_nearest_note(frequency_hz: Optional[float], a4_hz: float = 440.0) -> Optional[str]:
    if frequency_hz is None or not math.isfinite(frequency_hz) or frequency_hz <= 0:
        return None
    midi = int(round(69 + 12 * math.log2(frequency_hz / a4_hz)))
    midi = min(max(midi, MIDI_A0), MIDI_C8)
    return midi_to_note(midi)


def note_index(name: str) -> int:
    """Position on the keyboard (A0 == 0), -1 when the note is not a piano key."""
    idx = _KEY_INDEX.get(name)
    if idx is not None:
        return idx
    try:
        midi = note_to_midi(name)
    except ValueError:
        return -1
    return midi - MIDI_A0 if MIDI_A0 <= midi <= MIDI_C8 else -1


def build_ascending_run(start: str, count: int) -> List[str]:
    """
    Walk the major-scale interval pattern upwards from `start`.
    Stops early (shorter result) at the top of the keyboard.
    """
    if count <= 0:
        return []
    idx = note_index(start)
    if idx < 0:
        return []
    run = [PIANO_KEYS[idx]]
    for i in range(count - 1):
        idx += MAJOR_SCALE_INTERVALS[i % len(MAJOR_SCALE_INTERVALS)]
        if idx >= len(PIANO_KEYS):
            break
        run.append(PIANO_KEYS[idx])
    return run


def build_practice_sequence(start: str, count: int) -> List[str]:
    """Ascending run mirrored back down without repeating the peak."""
    ascending = build_ascending_run(start, count)
    if len(ascending) <= 1:
        return [start]
    return ascending + ascending[-2::-1]


def max_sequence_length(start: str) -> int:
    run = build_ascending_run(start, len(PIANO_KEYS))
    return len(run) if run else 1


def tolerance_hz(frequency_hz: float, fraction_of_tone: float = 1.0) -> float:
    """
    Width of the in-tune window around `frequency_hz`.
    fraction_of_tone: 1 -> a whole tone, 2 -> a semitone, 4 -> a quarter tone.
    """
    semitones = 2.0 / fraction_of_tone
    return frequency_hz * (2.0 ** (semitones / 12.0) - 1.0)


def cents_between(frequency_hz: float, reference_hz: float) -> float:
    if not (frequency_hz > 0 and reference_hz > 0):
        return float("nan")
    return 1200.0 * math.log2(frequency_hz / reference_hz)


def note_label(name: str, notation: NotationMode = "italian") -> str:
    if notation != "italian":
        return name
    pitch_class = name.rstrip("0123456789-")
    octave = name[len(pitch_class):]
    return f"{NOTE_TO_ITALIAN.get(pitch_class, pitch_class)}{octave}"
