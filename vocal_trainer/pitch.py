from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np


# 20*log10(1e-8): an all-zero frame maps here instead of -inf
SILENCE_RMS = 1e-8


@dataclass(frozen=True)
class PitchSample:
    pitch: Optional[float]
    clarity: float


def rms_from_samples(samples: Optional[np.ndarray]) -> float:
    if samples is None or len(samples) == 0:
        return 0.0
    x = np.asarray(samples, dtype=np.float64)
    return float(np.sqrt(np.mean(x * x)))


def spl_from_rms(rms: float) -> float:
    return float(20.0 * np.log10(rms or SILENCE_RMS))


def compute_spl_db(samples: Optional[np.ndarray]) -> float:
    return spl_from_rms(rms_from_samples(samples))


def is_below_noise_floor(spl_db: float, noise_threshold: float) -> bool:
    # slider: 0 lets everything through, 100 blocks nearly everything
    cutoff_db = -100.0 + noise_threshold
    return spl_db < cutoff_db


def _nsdf(x: np.ndarray) -> np.ndarray:
    """
    Normalized square difference function (McLeod & Wyvill):
      n(tau) = 2 r(tau) / m(tau)
    r via FFT autocorrelation, m via cumulative energy.
    """
    n = len(x)
    size = 1 << int(np.ceil(np.log2(2 * n - 1)))
    spec = np.fft.rfft(x, n=size)
    acf = np.fft.irfft(spec * np.conj(spec), n=size)[:n]

    energy = np.cumsum(x * x)
    total = energy[-1]
    head = energy[::-1]                                # sum_{j <= n-1-tau} x_j^2
    tail = total - np.concatenate(([0.0], energy[:-1]))  # sum_{j >= tau} x_j^2
    m = head + tail
    out = np.zeros(n, dtype=np.float64)
    good = m > 0
    out[good] = 2.0 * acf[good] / m[good]
    return out


def _key_maxima(nsdf: np.ndarray) -> List[int]:
    """Highest point of every positive lobe that is closed by a negative-going zero crossing."""
    if nsdf.size < 3:
        return []
    inner = nsdf[:-1]
    positive = inner > 0
    # i in [1, n-2]: rising when nsdf[i-1] <= 0 < nsdf[i], falling when nsdf[i-1] > 0 >= nsdf[i]
    rising = np.flatnonzero(~positive[:-1] & positive[1:]) + 1
    falling = np.flatnonzero(positive[:-1] & ~positive[1:]) + 1

    out: List[int] = []
    j = 0
    for start in rising:
        while j < len(falling) and falling[j] <= start:
            j += 1
        if j >= len(falling):
            break
        end = falling[j]
        out.append(int(start + np.argmax(nsdf[start:end])))
    return out


def _refine(index: int, data: np.ndarray) -> Tuple[float, float]:
    """Parabolic interpolation around a peak."""
    if index <= 0 or index >= len(data) - 1:
        return float(index), float(data[index])
    y0, y1, y2 = float(data[index - 1]), float(data[index]), float(data[index + 1])
    denom = y0 - 2.0 * y1 + y2
    if denom == 0.0:
        return float(index), y1
    delta = 0.5 * (y0 - y2) / denom
    return index + delta, y1 - 0.25 * (y0 - y2) * delta


class McLeodPitchDetector:
    """
    Autocorrelation-style (MPM) fundamental frequency estimator for one frame.
    find_pitch returns (frequency_hz, clarity); (0.0, 0.0) when no periodicity is found.
    """

    def __init__(self, input_length: int, clarity_threshold: float = 0.9) -> None:
        self.input_length = int(input_length)
        self.clarity_threshold = float(clarity_threshold)

    def find_pitch(self, frame: np.ndarray, sample_rate: float) -> Tuple[float, float]:
        x = np.asarray(frame, dtype=np.float64).reshape(-1)
        if x.size != self.input_length:
            raise ValueError(f"expected {self.input_length} samples, got {x.size}")

        nsdf = _nsdf(x)
        peaks = _key_maxima(nsdf)
        if not peaks:
            return 0.0, 0.0

        n_max = max(nsdf[i] for i in peaks)
        chosen = next(i for i in peaks if nsdf[i] >= self.clarity_threshold * n_max)
        lag, clarity = _refine(chosen, nsdf)
        if lag <= 0:
            return 0.0, 0.0
        return float(sample_rate / lag), float(min(clarity, 1.0))


def plausible_voice(pitch_hz: float, min_hz: float = 30.0, max_hz: float = 2000.0) -> Optional[float]:
    # outside a sane vocal band means "no detection this frame"
    if np.isfinite(pitch_hz) and min_hz < pitch_hz < max_hz:
        return float(pitch_hz)
    return None
