from __future__ import annotations

import math
from enum import Enum
from typing import Optional

from .notes import tolerance_hz


class Verdict(str, Enum):
    IN_TUNE = "✅"
    SING_HIGHER = "⬆️"
    SING_LOWER = "⬇️"


# quarter-tone band around the target
IN_TUNE_FRACTION_OF_TONE = 4


def _usable(hz: Optional[float]) -> bool:
    return hz is not None and math.isfinite(hz) and hz > 0


def compare(target_hz: Optional[float], voice_hz: Optional[float]) -> Optional[Verdict]:
    """
    In-tune / sharp / flat verdict for one frame.
    Returns None when either frequency is missing or not a usable pitch.
    """
    if not (_usable(target_hz) and _usable(voice_hz)):
        return None
    delta = target_hz - voice_hz
    if abs(delta) <= tolerance_hz(target_hz, IN_TUNE_FRACTION_OF_TONE):
        return Verdict.IN_TUNE
    return Verdict.SING_HIGHER if delta > 0 else Verdict.SING_LOWER
