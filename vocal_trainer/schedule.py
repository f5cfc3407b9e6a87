from __future__ import annotations

import bisect
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from .notes import note_to_frequency


@dataclass(frozen=True)
class PlaybackSegment:
    note: str
    start: float   # seconds into the rendered reference
    end: float
    index: int     # ordinal in the displayed sequence, for highlighting


Schedule = Tuple[PlaybackSegment, ...]


class Transport(Protocol):
    """Read-only view of the reference player."""

    @property
    def current_time(self) -> float: ...

    @property
    def paused(self) -> bool: ...

    @property
    def ended(self) -> bool: ...


def is_playing(transport: Optional[Transport]) -> bool:
    return transport is not None and not transport.paused and not transport.ended


def build_practice_schedule(notes: Sequence[str], note_duration_s: float, gap_s: float = 0.05) -> Schedule:
    """Back-to-back segments of equal length, `gap_s` of silence between them."""
    segments: List[PlaybackSegment] = []
    cursor = 0.0
    for i, note in enumerate(notes):
        segments.append(PlaybackSegment(note=note, start=cursor, end=cursor + note_duration_s, index=i))
        cursor += note_duration_s + gap_s
    return tuple(segments)


def schedule_from_events(events: Iterable[Tuple[str, float, int]], gap_s: float = 0.05) -> Schedule:
    """(note, duration_seconds, index) triples laid out in order with a gap between them."""
    segments: List[PlaybackSegment] = []
    cursor = 0.0
    for note, duration_s, index in events:
        segments.append(PlaybackSegment(note=note, start=cursor, end=cursor + duration_s, index=index))
        cursor += duration_s + gap_s
    return tuple(segments)


@dataclass(frozen=True)
class AlignedTarget:
    note: Optional[str]
    frequency: Optional[float]
    active_index: Optional[int]


class ScheduleAligner:
    """
    Resolves "which note should be sounding now" from the transport clock.

    Resolution order: the segment containing t, then the last note that
    matched (held through gaps), then the default note. The schedule is only
    ever replaced as a whole, so a frame sees either the old or the new one.
    """

    def __init__(self, schedule: Sequence[PlaybackSegment] = (), default_note: Optional[str] = None, a4_hz: float = 440.0) -> None:
        self.a4_hz = a4_hz
        self._schedule: Schedule = ()
        self._ends: List[float] = []
        self._default: Optional[str] = None
        self._held: Optional[str] = None
        self.last: AlignedTarget = AlignedTarget(None, None, None)
        self.replace(schedule, default_note)

    @property
    def schedule(self) -> Schedule:
        return self._schedule

    @property
    def default_note(self) -> Optional[str]:
        return self._default

    def replace(self, schedule: Sequence[PlaybackSegment], default_note: Optional[str] = None) -> None:
        segments = tuple(schedule)
        default = default_note if default_note is not None else (segments[0].note if segments else None)
        self._schedule, self._ends, self._default = segments, [s.end for s in segments], default
        self._held = None

    def _target(self, note: Optional[str], index: Optional[int]) -> AlignedTarget:
        freq = None
        if note is not None:
            try:
                freq = note_to_frequency(note, self.a4_hz)
            except ValueError:
                freq = None
        return AlignedTarget(note=note, frequency=freq, active_index=index)

    def find_segment(self, t: float) -> Optional[PlaybackSegment]:
        # first segment whose end is not before t; it matches only if it has started
        i = bisect.bisect_left(self._ends, t)
        if i < len(self._schedule) and self._schedule[i].start <= t:
            return self._schedule[i]
        return None

    def resolve(self, transport: Optional[Transport]) -> AlignedTarget:
        if transport is None or not self._schedule:
            self._held = None
            self.last = self._target(self._default, None)
            return self.last

        t = transport.current_time
        segment = self.find_segment(t) if t is not None and math.isfinite(t) else None
        if segment is not None:
            self._held = segment.note
            self.last = self._target(segment.note, segment.index)
        else:
            self.last = self._target(self._held if self._held is not None else self._default, None)
        return self.last

    def current_frequency(self) -> Optional[float]:
        return self.last.frequency
