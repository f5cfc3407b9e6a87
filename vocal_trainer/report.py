from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .comparison import IN_TUNE_FRACTION_OF_TONE
from .engine import EngineSnapshot, RangeFrequencies
from .notes import note_to_frequency, tolerance_hz

FALLBACK_CHART_BOUNDS = (30.0, 2000.0)
CHART_MARGIN_HZ = 50.0


def chart_frequency_bounds(
    sequence_notes: Sequence[str],
    base_note: Optional[str],
    range_hz: RangeFrequencies,
    a4_hz: float = 440.0,
) -> Tuple[float, float]:
    """
    Y-axis limits for the pitch chart: the base..peak span widened by half of
    itself plus 50 Hz on each side.
    """
    try:
        if sequence_notes:
            freqs = [note_to_frequency(n, a4_hz) for n in sequence_notes]
            seq_min, seq_max = min(freqs), max(freqs)
        else:
            seq_min, seq_max = range_hz.min, range_hz.max
        start = note_to_frequency(base_note, a4_hz) if base_note else seq_min
    except ValueError:
        return FALLBACK_CHART_BOUNDS

    peak = max(seq_max, start)
    if not (np.isfinite(start) and np.isfinite(peak)) or start <= 0:
        return FALLBACK_CHART_BOUNDS
    end = peak if peak - start >= 1.0 else start + 1.0
    span = end - start
    return start - span / 2.0 - CHART_MARGIN_HZ, end + span / 2.0 + CHART_MARGIN_HZ


def chart_series(snapshot: EngineSnapshot, bounds: Tuple[float, float]) -> Dict[str, List[Any]]:
    lo, hi = bounds
    voice = [s.pitch for s in snapshot.pitch_samples]
    target = list(snapshot.target_history)
    n = max(len(voice), len(target))
    voice += [None] * (n - len(voice))
    target += [None] * (n - len(target))
    return {
        "index": list(range(n)),
        "target_hz": target,
        # off-chart voice points are dropped rather than clipped
        "voice_hz": [v if v is not None and lo <= v <= hi else None for v in voice],
    }


@dataclass(frozen=True)
class PracticeSummary:
    samples: int
    voiced_pct: float
    in_tune_pct: float
    median_abs_dev_cents: float
    p95_abs_dev_cents: float


def summarize(snapshot: EngineSnapshot) -> PracticeSummary:
    def _arr(values) -> np.ndarray:
        return np.array([np.nan if v is None else v for v in values], dtype=float)

    voice = _arr(s.pitch for s in snapshot.pitch_samples)
    target = _arr(snapshot.target_history)
    n = len(voice)
    if n == 0:
        return PracticeSummary(0, 0.0, 0.0, float("nan"), float("nan"))

    voiced = np.isfinite(voice) & (voice > 0)
    both = voiced & np.isfinite(target) & (target > 0)
    if both.sum() == 0:
        return PracticeSummary(n, float(voiced.mean() * 100.0), 0.0, float("nan"), float("nan"))

    t, v = target[both], voice[both]
    in_tune = np.abs(t - v) <= tolerance_hz(t, IN_TUNE_FRACTION_OF_TONE)
    dev = np.abs(1200.0 * np.log2(v / t))
    return PracticeSummary(
        samples=n,
        voiced_pct=float(voiced.mean() * 100.0),
        in_tune_pct=float(in_tune.mean() * 100.0),
        median_abs_dev_cents=float(np.median(dev)),
        p95_abs_dev_cents=float(np.percentile(dev, 95)),
    )


def summary_dict(summary: PracticeSummary) -> Dict[str, Any]:
    def _finite_or_none(x):
        return x if isinstance(x, (int, float)) and np.isfinite(x) else None

    return {k: _finite_or_none(v) for k, v in asdict(summary).items()}
