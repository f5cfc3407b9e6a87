"""Tests for the in-tune / sharp / flat verdict."""

import math

import pytest

from vocal_trainer.comparison import Verdict, compare


class TestCompare:
    def test_voice_above_target_says_sing_lower(self) -> None:
        assert compare(440, 470) == Verdict.SING_LOWER == "⬇️"

    def test_voice_below_target_says_sing_higher(self) -> None:
        assert compare(440, 410) == Verdict.SING_HIGHER == "⬆️"

    def test_within_quarter_tone_is_in_tune(self) -> None:
        assert compare(440, 440.4) == Verdict.IN_TUNE == "✅"
        assert compare(440, 452.0) == Verdict.IN_TUNE
        assert compare(440, 428.0) == Verdict.IN_TUNE

    def test_just_outside_quarter_tone(self) -> None:
        """13 Hz off at A4 is past the ~12.8 Hz window."""
        assert compare(440, 453.0) == Verdict.SING_LOWER
        assert compare(440, 427.0) == Verdict.SING_HIGHER

    @pytest.mark.parametrize(
        "target, voice",
        [(None, 440), (440, None), (0, 440), (440, -1), (math.nan, 440), (440, math.inf)],
    )
    def test_no_verdict_for_unusable_input(self, target, voice) -> None:
        assert compare(target, voice) is None
