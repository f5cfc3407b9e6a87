"""End-to-end tests for the command line entry point."""

import json

import pytest
import soundfile as sf

from conftest import sine
from vocal_trainer.cli import main
from vocal_trainer.player import ManualTransport


def _run(capsys, argv):
    main(argv)
    return json.loads(capsys.readouterr().out)


class TestSequence:
    def test_default_scale(self, capsys) -> None:
        out = _run(capsys, ["sequence", "--base-note", "C4", "--count", "3", "--notation", "english"])
        assert out["sequence"] == ["C4", "D4", "E4", "D4", "C4"]
        assert out["labels"] == out["sequence"]
        assert out["schedule"][1]["start"] == pytest.approx(1.05)

    def test_range_clamps_base_note(self, capsys) -> None:
        out = _run(capsys, ["sequence", "--base-note", "C2", "--range", "tenor", "--count", "1"])
        assert out["base_note"] == "C3"
        assert out["labels"] == ["Do3"]

    def test_exercise_file(self, capsys, tmp_path) -> None:
        path = tmp_path / "ex.json"
        path.write_text(json.dumps({"notes": [{"pitch": "g/4", "duration": "h"}], "tempo": 60}), encoding="utf-8")
        out = _run(capsys, ["sequence", "--exercise", str(path), "--transpose", "-2"])
        assert out["mode"] == "exercise"
        assert out["sequence"] == ["F4"]
        assert out["schedule"][0]["end"] == pytest.approx(2.0)


class TestRender:
    def test_writes_wav(self, capsys, tmp_path) -> None:
        wav = tmp_path / "ref.wav"
        out = _run(capsys, ["render", "--base-note", "A3", "--count", "1", "--duration", "0.2", "--out", str(wav)])
        assert out["audio_available"] is True
        assert wav.read_bytes()[:4] == b"RIFF"
        assert sf.info(str(wav)).duration == pytest.approx(out["duration_s"], abs=1e-3)


class TestReplay:
    def test_in_tune_take(self, capsys, tmp_path) -> None:
        wav = tmp_path / "take.wav"
        sf.write(str(wav), sine(440.0, 3 * 44100), 44100)
        out = _run(capsys, ["replay", str(wav), "--base-note", "A4", "--count", "1"])
        assert out["engine"]["status"] == "ready"
        assert out["summary"]["in_tune_pct"] > 80.0
        assert out["summary"]["median_abs_dev_cents"] < 10.0
        assert len(out["graph"]["voice_hz"]) == 150

    def test_flat_take(self, capsys, tmp_path) -> None:
        wav = tmp_path / "take.wav"
        sf.write(str(wav), sine(392.0, 2 * 44100), 44100)
        out = _run(capsys, ["replay", str(wav), "--base-note", "A4", "--count", "1"])
        assert out["summary"]["in_tune_pct"] < 5.0


class TestManualTransport:
    def test_toggle_and_update(self) -> None:
        t = ManualTransport()
        assert t.paused
        t.toggle()
        assert not t.paused
        t.update(current_time=1.5, ended=True)
        assert (t.current_time, t.ended) == (1.5, True)
        t.play()
        assert not t.ended
