from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Literal, Optional, Tuple

import numpy as np

from .capture import CaptureConstraints, CaptureStream, Microphone, SoundDeviceMicrophone
from .config import DenoiserMode, TrainerConfig, VocalRange, get_vocal_range
from .denoise import DenoiserState, NoiseProcessor
from .graph import Analyser, AudioContext, AudioNode
from .notes import note_to_frequency
from .pitch import (
    SILENCE_RMS,
    McLeodPitchDetector,
    PitchSample,
    compute_spl_db,
    is_below_noise_floor,
    plausible_voice,
    spl_from_rms,
)
from .scheduler import PRIORITY_ENGINE, FrameLoop, Subscription, monotonic_ms

logger = logging.getLogger(__name__)

EngineStatus = Literal["idle", "starting", "ready", "error"]


@dataclass(frozen=True)
class RangeFrequencies:
    min: float
    max: float

    @classmethod
    def from_vocal_range(cls, vocal_range: VocalRange, a4_hz: float = 440.0) -> "RangeFrequencies":
        return cls(
            min=note_to_frequency(vocal_range.min, a4_hz),
            max=note_to_frequency(vocal_range.max, a4_hz),
        )

    def contains(self, frequency_hz: float) -> bool:
        return self.min <= frequency_hz <= self.max


@dataclass
class DetectionState:
    voice_frequency: Optional[float] = None
    voice_detected: bool = True
    pitch_out_of_range: bool = False
    silence_ms: float = 0.0
    out_of_range_ms: float = 0.0
    last_tick_ms: Optional[float] = None


def update_detection(
    state: DetectionState,
    now_ms: float,
    candidate_hz: Optional[float],
    spl_db: float,
    noise_threshold: float,
    range_hz: RangeFrequencies,
    silence_debounce_ms: float = 500.0,
    out_of_range_debounce_ms: float = 500.0,
) -> Optional[float]:
    """
    Advance the gates by one tick and return the gated voice frequency.

    The noise gate runs first: a frame below the floor has no voice whatever
    the estimator said, so it can never move the range gate on its own.
    """
    delta_ms = 0.0 if state.last_tick_ms is None else max(0.0, now_ms - state.last_tick_ms)
    state.last_tick_ms = now_ms

    has_signal = not is_below_noise_floor(spl_db, noise_threshold)
    voice = candidate_hz if has_signal else None

    # present on the first loud frame, absent only after a sustained silence
    if has_signal:
        state.silence_ms = 0.0
        state.voice_detected = True
    else:
        state.silence_ms += delta_ms
        if state.silence_ms >= silence_debounce_ms:
            state.voice_detected = False

    state.voice_frequency = voice
    if voice is not None and not range_hz.contains(voice):
        state.out_of_range_ms += delta_ms
        state.pitch_out_of_range = state.out_of_range_ms >= out_of_range_debounce_ms
    else:
        state.out_of_range_ms = 0.0
        state.pitch_out_of_range = False
    return voice


@dataclass(frozen=True)
class EngineSnapshot:
    status: EngineStatus
    error: Optional[str]
    voice_frequency: Optional[float]
    voice_detected: bool
    pitch_out_of_range: bool
    pitch_samples: Tuple[PitchSample, ...]
    target_history: Tuple[Optional[float], ...]
    denoiser: DenoiserState
    noise_threshold: float
    range_hz: RangeFrequencies

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "error": self.error,
            "voice_frequency": self.voice_frequency,
            "voice_detected": self.voice_detected,
            "pitch_out_of_range": self.pitch_out_of_range,
            "pitch_samples": [{"pitch": s.pitch, "clarity": s.clarity} for s in self.pitch_samples],
            "target_history": list(self.target_history),
            "denoiser": {
                "status": self.denoiser.status,
                "requested_mode": self.denoiser.requested_mode,
                "effective_mode": self.denoiser.effective_mode,
                "error": self.denoiser.error,
            },
            "noise_threshold": self.noise_threshold,
            "range_hz": {"min": self.range_hz.min, "max": self.range_hz.max},
        }


def _never_playing() -> bool:
    return False


def _no_target() -> Optional[float]:
    return None


class PitchDetectionEngine:
    """
    Microphone -> 40 Hz high-pass -> noise processor -> analyser -> estimator.

    start() and set_denoiser_mode() are awaited off the hot path; tick() runs
    once per frame, synchronously, and never raises.
    """

    def __init__(
        self,
        config: TrainerConfig = TrainerConfig(),
        microphone: Optional[Microphone] = None,
        noise_processor: Optional[NoiseProcessor] = None,
        clock: Callable[[], float] = monotonic_ms,
        get_target_frequency: Callable[[], Optional[float]] = _no_target,
        is_playing: Callable[[], bool] = _never_playing,
        context_factory: Callable[[int], AudioContext] = AudioContext,
    ) -> None:
        self.config = config
        self.microphone: Microphone = microphone if microphone is not None else SoundDeviceMicrophone()
        self.noise_processor = noise_processor if noise_processor is not None else NoiseProcessor(config)
        self.clock = clock
        self.get_target_frequency = get_target_frequency
        self.is_playing = is_playing
        self._context_factory = context_factory
        self.constraints = CaptureConstraints()

        self.status: EngineStatus = "idle"
        self.error: Optional[str] = None
        self.denoiser_mode: DenoiserMode = config.denoiser_mode
        self.noise_threshold: float = float(min(max(config.noise_threshold, 0), 100))
        self.range_hz = RangeFrequencies.from_vocal_range(get_vocal_range(config.vocal_range), config.a4_hz)

        self.detection = DetectionState()
        self.pitch_samples: Deque[PitchSample] = deque(maxlen=config.history_capacity)
        self.target_history: Deque[Optional[float]] = deque(maxlen=config.history_capacity)

        self._stream: Optional[CaptureStream] = None
        self._context: Optional[AudioContext] = None
        self._prefilter: Optional[AudioNode] = None
        self._analyser: Optional[Analyser] = None
        self._detector: Optional[McLeodPitchDetector] = None
        self._frame_loop: Optional[FrameLoop] = None
        self._subscription: Optional[Subscription] = None
        self._session = 0

    # --- lifecycle -----------------------------------------------------------

    def attach(self, frame_loop: FrameLoop) -> None:
        """Drive tick() from `frame_loop`; takes effect now if already ready."""
        self._frame_loop = frame_loop
        if self.status == "ready":
            self._subscribe()

    def _subscribe(self) -> None:
        if self._frame_loop is None or self._subscription is not None:
            return
        self._subscription = self._frame_loop.subscribe(self.tick, priority=PRIORITY_ENGINE)

    def _reset_detection(self) -> None:
        self.detection = DetectionState()
        self.pitch_samples.clear()
        self.target_history.clear()

    async def start(self) -> None:
        if self.status in ("starting", "ready"):
            return
        self._session += 1
        session = self._session
        self.status = "starting"
        self.error = None
        cfg = self.config

        try:
            stream = await self.microphone.open(self.constraints, cfg.sample_rate, cfg.block_size)
        except Exception as exc:
            if session == self._session:
                self._fail(exc)
            return
        if session != self._session:
            # stopped while the device was opening
            stream.stop()
            return

        self._stream = stream
        try:
            context = self._context_factory(stream.sample_rate)
            self._context = context
            self._prefilter = context.create_highpass(cfg.prefilter_cutoff_hz)
            self._analyser = context.create_analyser(cfg.fft_size)
            self._detector = McLeodPitchDetector(self._analyser.fft_size, cfg.clarity_threshold)
        except Exception as exc:
            self._fail(exc)
            return

        self._reset_detection()
        self.status = "ready"
        self._subscribe()
        logger.info("pitch detection ready at %d Hz", stream.sample_rate)
        await self.noise_processor.configure(context, self.denoiser_mode)

    def _fail(self, exc: BaseException) -> None:
        logger.error("cannot start pitch detection: %s", exc)
        self._release()
        self.status = "error"
        self.error = str(exc) or type(exc).__name__

    def _release(self) -> None:
        if self._stream is not None:
            self._stream.stop()
            self._stream = None
        if self._context is not None:
            self._context.close()
            self._context = None
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        self.noise_processor.teardown()
        self._prefilter = None
        self._analyser = None
        self._detector = None

    def stop(self) -> None:
        """Stop capture, close the audio context, then leave the frame loop."""
        self._session += 1
        self._release()
        self.status = "idle"

    async def restart(self) -> None:
        self.stop()
        self.error = None
        await self.start()

    # --- controls ------------------------------------------------------------

    async def set_denoiser_mode(self, mode: DenoiserMode) -> DenoiserState:
        """Swap only the noise stage; detection state and histories start over."""
        self.denoiser_mode = mode
        self._reset_detection()
        if self._context is None or self._context.state == "closed":
            return self.noise_processor.state
        return await self.noise_processor.configure(self._context, mode)

    def set_noise_threshold(self, value: float) -> float:
        self.noise_threshold = float(min(max(value, 0.0), 100.0))
        return self.noise_threshold

    def set_range(self, range_hz: RangeFrequencies) -> None:
        self.range_hz = range_hz

    # --- per frame -----------------------------------------------------------

    def _pull_frame(self) -> np.ndarray:
        block = self._stream.read() if self._stream is not None else np.zeros(0, dtype=np.float32)
        if block.size:
            block = self._prefilter.process(block)
            block = self.noise_processor.process(block)
            self._analyser.write(block)
        return self._analyser.get_float_time_domain_data()

    def _estimate(self, frame: np.ndarray) -> Tuple[Optional[float], float]:
        try:
            pitch, clarity = self._detector.find_pitch(frame, self._context.sample_rate)
        except Exception:
            logger.debug("estimator failed for this frame", exc_info=True)
            return None, 0.0
        candidate = plausible_voice(pitch, self.config.min_voice_hz, self.config.max_voice_hz)
        return candidate, float(clarity)

    def tick(self, now_ms: Optional[float] = None) -> None:
        if self.status != "ready" or not self.noise_processor.ready or self._analyser is None:
            return
        now = self.clock() if now_ms is None else now_ms
        try:
            try:
                frame = self._pull_frame()
            except Exception:
                # the analyser still holds the previous frame; a failed block is silence
                logger.debug("graph processing failed for this frame", exc_info=True)
                candidate, clarity, spl_db = None, 0.0, spl_from_rms(SILENCE_RMS)
            else:
                candidate, clarity = self._estimate(frame)
                spl_db = compute_spl_db(frame)

            voice = update_detection(
                self.detection,
                now_ms=now,
                candidate_hz=candidate,
                spl_db=spl_db,
                noise_threshold=self.noise_threshold,
                range_hz=self.range_hz,
                silence_debounce_ms=self.config.silence_debounce_ms,
                out_of_range_debounce_ms=self.config.out_of_range_debounce_ms,
            )

            if self.is_playing():
                target = self.get_target_frequency()
                self.pitch_samples.append(PitchSample(pitch=voice, clarity=clarity))
                self.target_history.append(target)
        except Exception:
            logger.debug("pitch tick failed", exc_info=True)

    def snapshot(self) -> EngineSnapshot:
        d = self.detection
        return EngineSnapshot(
            status=self.status,
            error=self.error,
            voice_frequency=d.voice_frequency,
            voice_detected=d.voice_detected,
            pitch_out_of_range=d.pitch_out_of_range,
            pitch_samples=tuple(self.pitch_samples),
            target_history=tuple(self.target_history),
            denoiser=self.noise_processor.state,
            noise_threshold=self.noise_threshold,
            range_hz=self.range_hz,
        )
