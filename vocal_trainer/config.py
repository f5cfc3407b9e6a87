from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Literal

DenoiserMode = Literal["none", "dsp", "ml"]
NotationMode = Literal["italian", "english"]
PlayMode = Literal["single", "loop"]
VocalRangeKey = Literal["soprano", "mezzo-soprano", "contralto", "tenor", "baritone", "bass"]


@dataclass(frozen=True)
class VocalRange:
    label: str
    min: str
    max: str


VOCAL_RANGES: Dict[str, VocalRange] = {
    "soprano": VocalRange(label="Soprano", min="C4", max="A5"),
    "mezzo-soprano": VocalRange(label="Mezzo-soprano", min="A3", max="F#5"),
    "contralto": VocalRange(label="Contralto", min="F3", max="D5"),
    "tenor": VocalRange(label="Tenore", min="C3", max="A4"),
    "baritone": VocalRange(label="Baritono", min="A2", max="F4"),
    "bass": VocalRange(label="Basso", min="F2", max="E4"),
}

DEFAULT_VOCAL_RANGE = "mezzo-soprano"


def get_vocal_range(key: str | None) -> VocalRange:
    # unknown or missing keys fall back to the default range
    return VOCAL_RANGES.get(key or "", VOCAL_RANGES[DEFAULT_VOCAL_RANGE])


@dataclass(frozen=True)
class CompressorSettings:
    threshold_db: float = -50.0
    knee_db: float = 40.0
    ratio: float = 12.0
    attack_s: float = 0.003
    release_s: float = 0.25


@dataclass(frozen=True)
class TrainerConfig:
    # Tuning
    a4_hz: float = 440.0

    # Capture / analysis graph
    sample_rate: int = 44100
    block_size: int = 512             # frames per capture callback
    fft_size: int = 2048              # analyser frame length fed to the estimator
    prefilter_cutoff_hz: float = 40.0 # removes sub-40Hz rumble before the denoiser

    # Estimator
    clarity_threshold: float = 0.9    # key-maximum pick relative to the highest NSDF peak
    min_voice_hz: float = 30.0        # candidates outside (min, max) are ignored
    max_voice_hz: float = 2000.0

    # Gating / hysteresis
    noise_threshold: int = 30         # 0..100 slider, cutoff dB = -100 + threshold
    silence_debounce_ms: float = 500.0
    out_of_range_debounce_ms: float = 500.0

    # Rolling chart histories
    history_capacity: int = 150

    # Denoiser
    denoiser_mode: DenoiserMode = "none"
    dsp_highpass_hz: float = 100.0
    compressor: CompressorSettings = field(default_factory=CompressorSettings)
    ml_module: str = "noisereduce"    # imported lazily; must expose reduce_noise(y=, sr=)
    ml_context_samples: int = 4096    # audio context handed to the ML denoiser per block

    # Reference playback
    gap_seconds: float = 0.05
    note_duration_s: float = 1.0
    note_count: int = 3
    max_note_count: int = 16
    default_tempo_bpm: float = 120.0
    piano_release_s: float = 2.5
    sustain_release_s: float = 0.6

    # Frame loop
    frame_rate_hz: float = 60.0

    # Display
    notation: NotationMode = "italian"
    vocal_range: str = DEFAULT_VOCAL_RANGE
