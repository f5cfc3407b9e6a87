from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Iterator

import librosa
import numpy as np
import soundfile as sf


@dataclass(frozen=True)
class AudioData:
    y: np.ndarray
    sr: int
    duration_s: float


def load_audio_mono(path: str, target_sr: int, normalize: bool = False) -> AudioData:
    # librosa loads float32 in [-1, 1]
    y, sr = librosa.load(path, sr=target_sr, mono=True)
    if normalize:
        # changes the level the noise gate sees, so it is opt-in
        y = librosa.util.normalize(y)
    duration_s = float(len(y) / sr)
    return AudioData(y=y.astype(np.float32), sr=int(sr), duration_s=duration_s)


def iter_blocks(y: np.ndarray, block_size: int) -> Iterator[np.ndarray]:
    """Fixed-size blocks as a capture callback would deliver them; the last may be short."""
    for start in range(0, len(y), block_size):
        yield y[start:start + block_size]


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    buf = io.BytesIO()
    sf.write(buf, np.asarray(samples, dtype=np.float32), int(sample_rate), format="WAV", subtype="PCM_16")
    return buf.getvalue()


def decode_pcm_float32(payload: bytes) -> np.ndarray:
    """Little-endian float32 mono PCM as sent by the browser client."""
    if len(payload) % 4:
        raise ValueError(f"PCM payload of {len(payload)} bytes is not a whole number of float32 samples")
    return np.frombuffer(payload, dtype="<f4").astype(np.float32)
