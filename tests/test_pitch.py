"""Tests for the MPM estimator and the signal-level helpers."""

import numpy as np
import pytest

from conftest import SR, sine
from vocal_trainer.pitch import (
    McLeodPitchDetector,
    compute_spl_db,
    is_below_noise_floor,
    plausible_voice,
)


class TestMcLeodPitchDetector:
    @pytest.mark.parametrize("freq", [110.0, 220.0, 440.0, 659.25])
    def test_pure_tones(self, freq: float) -> None:
        """A clean sine is found within half a percent with high clarity."""
        detector = McLeodPitchDetector(2048)
        pitch, clarity = detector.find_pitch(sine(freq, 2048), SR)
        assert pitch == pytest.approx(freq, rel=0.005)
        assert clarity > 0.8

    def test_harmonic_tone_reports_fundamental(self) -> None:
        """A tone with strong overtones still resolves to its fundamental."""
        x = sine(220.0, 2048) + 0.6 * sine(440.0, 2048) + 0.3 * sine(660.0, 2048)
        pitch, _ = McLeodPitchDetector(2048).find_pitch(x, SR)
        assert pitch == pytest.approx(220.0, rel=0.01)

    def test_silence(self) -> None:
        """An all-zero frame has no pitch."""
        assert McLeodPitchDetector(2048).find_pitch(np.zeros(2048), SR) == (0.0, 0.0)

    def test_wrong_frame_length(self) -> None:
        with pytest.raises(ValueError):
            McLeodPitchDetector(2048).find_pitch(np.zeros(1024), SR)


class TestSignalLevel:
    def test_unit_rms_is_zero_db(self) -> None:
        assert compute_spl_db(np.ones(2048)) == pytest.approx(0.0, abs=1e-9)

    def test_silence_maps_to_floor_not_infinity(self) -> None:
        """All zeros give a finite value below any slider setting."""
        db = compute_spl_db(np.zeros(2048))
        assert np.isfinite(db)
        assert db < -100.0
        assert is_below_noise_floor(db, 0)

    def test_noise_floor_cutoff(self) -> None:
        """Cutoff is -100 + threshold."""
        assert is_below_noise_floor(-80.0, 30)      # cutoff -70
        assert not is_below_noise_floor(-80.0, 10)  # cutoff -90
        assert not is_below_noise_floor(-80.0, 0)

    def test_empty_frame(self) -> None:
        assert compute_spl_db(None) == compute_spl_db(np.zeros(0)) < -100.0


class TestPlausibleVoice:
    def test_band(self) -> None:
        """Only 30 < f < 2000 counts as a voice."""
        assert plausible_voice(440.0) == 440.0
        assert plausible_voice(30.0) is None
        assert plausible_voice(2000.0) is None
        assert plausible_voice(float("nan")) is None
