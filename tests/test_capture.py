"""Tests for capture queues and the sounddevice error mapping."""

import sys
import types

import numpy as np
import pytest

from vocal_trainer.capture import (
    AudioBackendUnavailableError,
    CaptureConstraints,
    FrameQueue,
    MicrophoneUnavailableError,
    PushedMicrophone,
    SoundDeviceMicrophone,
)


class TestFrameQueue:
    def test_read_drains_everything_in_order(self) -> None:
        q = FrameQueue(44100)
        q.push([1.0, 2.0])
        q.push([3.0])
        np.testing.assert_array_equal(q.read(), [1.0, 2.0, 3.0])
        assert q.read().size == 0

    def test_stereo_is_averaged(self) -> None:
        q = FrameQueue(44100)
        q.push(np.array([[1.0, 0.0], [0.5, 0.5]]))
        np.testing.assert_allclose(q.read(), [0.5, 0.5])

    def test_overflow_drops_oldest(self) -> None:
        q = FrameQueue(44100, max_blocks=2)
        for v in (1.0, 2.0, 3.0):
            q.push([v])
        np.testing.assert_array_equal(q.read(), [2.0, 3.0])
        assert q.dropped == 1

    def test_push_after_stop_is_ignored(self) -> None:
        q = FrameQueue(44100)
        q.stop()
        q.push([1.0])
        assert q.read().size == 0

    def test_constraints_round_trip_to_dict(self) -> None:
        assert CaptureConstraints().to_dict() == {
            "noise_suppression": True,
            "echo_cancellation": True,
            "auto_gain_control": False,
        }


class TestPushedMicrophone:
    @pytest.mark.asyncio
    async def test_push_reaches_the_open_stream(self) -> None:
        mic = PushedMicrophone(16000)
        mic.push([9.0])
        stream = await mic.open(CaptureConstraints(), 44100, 1024)
        assert stream.sample_rate == 16000
        mic.push([1.0, 2.0])
        np.testing.assert_array_equal(stream.read(), [1.0, 2.0])


def _fake_sounddevice(fail: bool):
    sd = types.ModuleType("sounddevice")

    class PortAudioError(Exception):
        pass

    class InputStream:
        def __init__(self, samplerate, blocksize, channels, dtype, device, callback):
            if fail:
                raise PortAudioError("no default input device")
            self.samplerate = samplerate
            self.callback = callback
            self.started = self.closed = False

        def start(self):
            self.started = True

        def stop(self):
            self.started = False

        def close(self):
            self.closed = True

    sd.PortAudioError = PortAudioError
    sd.InputStream = InputStream
    return sd


class TestSoundDeviceMicrophone:
    @pytest.mark.asyncio
    async def test_device_error_maps_to_microphone_unavailable(self, monkeypatch) -> None:
        monkeypatch.setitem(sys.modules, "sounddevice", _fake_sounddevice(fail=True))
        with pytest.raises(MicrophoneUnavailableError):
            await SoundDeviceMicrophone().open(CaptureConstraints(), 44100, 1024)

    @pytest.mark.asyncio
    async def test_missing_portaudio_maps_to_backend_unavailable(self, monkeypatch) -> None:
        class Finder:
            def find_spec(self, name, path=None, target=None):
                if name == "sounddevice":
                    raise OSError("PortAudio library not found")
                return None

        monkeypatch.delitem(sys.modules, "sounddevice", raising=False)
        monkeypatch.setattr(sys, "meta_path", [Finder()] + sys.meta_path)
        with pytest.raises(AudioBackendUnavailableError):
            await SoundDeviceMicrophone().open(CaptureConstraints(), 44100, 1024)

    @pytest.mark.asyncio
    async def test_callback_feeds_the_queue_and_stop_closes(self, monkeypatch) -> None:
        monkeypatch.setitem(sys.modules, "sounddevice", _fake_sounddevice(fail=False))
        stream = await SoundDeviceMicrophone().open(CaptureConstraints(), 48000, 512)
        pa_stream = stream._stream
        assert pa_stream.started
        assert stream.sample_rate == 48000
        stream._callback(np.ones((4, 1), dtype=np.float32), 4, None, None)
        np.testing.assert_array_equal(stream.read(), np.ones(4))
        stream.stop()
        assert pa_stream.closed
        assert stream.stopped
