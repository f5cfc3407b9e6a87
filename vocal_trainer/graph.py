from __future__ import annotations

from typing import List, Sequence

import numpy as np
from scipy import signal

from .config import CompressorSettings


class GraphError(RuntimeError):
    pass


class AudioNode:
    """
    One processing stage. Blocks are mono float32 arrays; nodes keep their own
    state between blocks so a stream can be processed piecewise.
    """

    def __init__(self, context: "AudioContext") -> None:
        self.context = context
        self.connected = True
        context._register(self)

    def process(self, block: np.ndarray) -> np.ndarray:
        if not self.connected:
            raise GraphError(f"{type(self).__name__} is disconnected")
        return self._process(np.asarray(block, dtype=np.float32).reshape(-1))

    def _process(self, block: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def disconnect(self) -> None:
        self.connected = False


class PassThrough(AudioNode):
    def _process(self, block: np.ndarray) -> np.ndarray:
        return block


class HighPassFilter(AudioNode):
    """
    Streaming 2nd-order Butterworth high-pass (Q = 1/sqrt(2), like a biquad
    'highpass' node). Filter state carries across blocks.
    """

    def __init__(self, context: "AudioContext", cutoff_hz: float, order: int = 2) -> None:
        super().__init__(context)
        self.cutoff_hz = float(cutoff_hz)
        self._sos = signal.butter(order, self.cutoff_hz, btype="highpass", fs=context.sample_rate, output="sos")
        self._zi = np.zeros((self._sos.shape[0], 2), dtype=np.float64)

    def _process(self, block: np.ndarray) -> np.ndarray:
        if block.size == 0:
            return block
        y, self._zi = signal.sosfilt(self._sos, block, zi=self._zi)
        return y.astype(np.float32)


class DynamicsCompressor(AudioNode):
    """
    Feed-forward compressor with a soft knee. Gain reduction is smoothed with
    separate attack/release time constants, one step per sample.
    """

    def __init__(self, context: "AudioContext", settings: CompressorSettings) -> None:
        super().__init__(context)
        self.settings = settings
        sr = float(context.sample_rate)
        self._attack = float(np.exp(-1.0 / max(settings.attack_s * sr, 1e-9)))
        self._release = float(np.exp(-1.0 / max(settings.release_s * sr, 1e-9)))
        self._gain_db = 0.0

    def static_curve(self, level_db: np.ndarray) -> np.ndarray:
        s = self.settings
        t, w, r = s.threshold_db, s.knee_db, s.ratio
        x = np.asarray(level_db, dtype=np.float64)
        out = x.copy()
        over = x - t
        knee = np.abs(over) <= w / 2.0
        above = over > w / 2.0
        if w > 0:
            out[knee] = x[knee] + (1.0 / r - 1.0) * (over[knee] + w / 2.0) ** 2 / (2.0 * w)
        out[above] = t + over[above] / r
        return out

    def _process(self, block: np.ndarray) -> np.ndarray:
        if block.size == 0:
            return block
        level_db = 20.0 * np.log10(np.maximum(np.abs(block), 1e-9))
        target = self.static_curve(level_db) - level_db

        gains = np.empty_like(target)
        g = self._gain_db
        for i, tgt in enumerate(target):
            coeff = self._attack if tgt < g else self._release
            g = coeff * g + (1.0 - coeff) * tgt
            gains[i] = g
        self._gain_db = g
        return (block * np.power(10.0, gains / 20.0)).astype(np.float32)


class NodeChain(AudioNode):
    """Serial composition; disconnecting the chain disconnects every member."""

    def __init__(self, context: "AudioContext", nodes: Sequence[AudioNode]) -> None:
        super().__init__(context)
        self.nodes = list(nodes)

    def _process(self, block: np.ndarray) -> np.ndarray:
        for node in self.nodes:
            block = node.process(block)
        return block

    def disconnect(self) -> None:
        for node in self.nodes:
            node.disconnect()
        super().disconnect()


class Analyser:
    """Keeps the most recent `fft_size` samples (zeros until filled)."""

    def __init__(self, fft_size: int) -> None:
        self.fft_size = int(fft_size)
        self._buffer = np.zeros(self.fft_size, dtype=np.float32)

    def write(self, block: np.ndarray) -> None:
        block = np.asarray(block, dtype=np.float32).reshape(-1)
        if block.size >= self.fft_size:
            self._buffer[:] = block[-self.fft_size:]
            return
        self._buffer = np.roll(self._buffer, -block.size)
        self._buffer[-block.size:] = block

    def get_float_time_domain_data(self) -> np.ndarray:
        return self._buffer.copy()


class AudioContext:
    """
    Owns the nodes of one capture session. Closing the context disconnects
    everything it created; a closed context refuses new nodes.
    """

    def __init__(self, sample_rate: int) -> None:
        self.sample_rate = int(sample_rate)
        self.state = "running"
        self._nodes: List[AudioNode] = []

    def _register(self, node: AudioNode) -> None:
        if self.state == "closed":
            raise GraphError("AudioContext is closed")
        self._nodes.append(node)

    def create_passthrough(self) -> PassThrough:
        return PassThrough(self)

    def create_highpass(self, cutoff_hz: float) -> HighPassFilter:
        return HighPassFilter(self, cutoff_hz)

    def create_compressor(self, settings: CompressorSettings) -> DynamicsCompressor:
        return DynamicsCompressor(self, settings)

    def create_chain(self, nodes: Sequence[AudioNode]) -> NodeChain:
        return NodeChain(self, nodes)

    def create_analyser(self, fft_size: int) -> Analyser:
        return Analyser(fft_size)

    @property
    def live_nodes(self) -> List[AudioNode]:
        return [n for n in self._nodes if n.connected]

    def close(self) -> None:
        if self.state == "closed":
            return
        for node in self._nodes:
            node.disconnect()
        self._nodes.clear()
        self.state = "closed"
