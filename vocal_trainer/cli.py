from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .audio import encode_wav, iter_blocks, load_audio_mono
from .capture import PushedMicrophone, SoundDeviceMicrophone
from .config import VOCAL_RANGES, TrainerConfig
from .engine import PitchDetectionEngine
from .notes import note_label
from .player import ManualTransport, SoundDevicePlayer
from .report import chart_frequency_bounds, chart_series, summarize, summary_dict
from .scheduler import FrameLoop
from .session import PracticeSession

logger = logging.getLogger(__name__)


def _add_session_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--base-note", default=None, help="Starting note e.g. 'C4' (defaults to the bottom of the range)")
    p.add_argument("--count", type=int, default=3, help="Notes in the ascending run")
    p.add_argument("--duration", type=float, default=1.0, help="Seconds per note")
    p.add_argument("--range", dest="vocal_range", default=None, choices=sorted(VOCAL_RANGES))
    p.add_argument("--exercise", type=str, default=None, help="JSON file with {notes: [...], tempo?}")
    p.add_argument("--transpose", type=int, default=0, help="Semitones, exercises only")
    p.add_argument("--notation", default="italian", choices=["italian", "english"])


def _build_config(args: argparse.Namespace) -> TrainerConfig:
    cfg = TrainerConfig(notation=args.notation)
    if args.vocal_range:
        cfg = dataclasses.replace(cfg, vocal_range=args.vocal_range)
    if getattr(args, "denoiser", None):
        cfg = dataclasses.replace(cfg, denoiser_mode=args.denoiser)
    if getattr(args, "noise_threshold", None) is not None:
        cfg = dataclasses.replace(cfg, noise_threshold=int(args.noise_threshold))
    return cfg


def _configure_session(session: PracticeSession, args: argparse.Namespace) -> None:
    session.set_vocal_range(session.config.vocal_range)
    if args.exercise:
        payload = json.loads(Path(args.exercise).read_text(encoding="utf-8"))
        session.load_exercise(payload.get("notes") or [], payload.get("tempo"))
        session.transpose = int(args.transpose)
        return
    if args.base_note:
        session.select_note(args.base_note)
    session.set_note_count(args.count)
    session.set_note_duration(args.duration)


def _plan_json(session: PracticeSession) -> Dict[str, Any]:
    plan = session.plan or session.build_plan()
    return {
        "mode": session.mode,
        "base_note": session.base_note if session.mode == "scale" else None,
        "sequence": list(plan.sequence_notes),
        "labels": [note_label(n, session.config.notation) for n in plan.sequence_notes],
        "schedule": [dataclasses.asdict(s) for s in plan.schedule],
        "max_note_count": session.max_note_count,
    }


def _report_json(session: PracticeSession) -> Dict[str, Any]:
    snap = session.engine.snapshot()
    plan = session.plan or session.build_plan()
    bounds = chart_frequency_bounds(
        plan.sequence_notes, plan.sequence_notes[0] if plan.sequence_notes else None,
        snap.range_hz, session.config.a4_hz,
    )
    return {
        "engine": {"status": snap.status, "error": snap.error, "denoiser": dataclasses.asdict(snap.denoiser)},
        "summary": summary_dict(summarize(snap)),
        "chart_bounds": list(bounds),
        "graph": chart_series(snap, bounds),
    }


def cmd_sequence(args: argparse.Namespace) -> Dict[str, Any]:
    session = PracticeSession(_build_config(args))
    _configure_session(session, args)
    return _plan_json(session)


async def cmd_render(args: argparse.Namespace) -> Dict[str, Any]:
    session = PracticeSession(_build_config(args))
    _configure_session(session, args)
    available = await session.prepare()
    out: Dict[str, Any] = {"audio_available": available, **_plan_json(session)}
    if available:
        path = Path(args.out)
        path.write_bytes(encode_wav(session.rendering.samples, session.rendering.sample_rate))
        out.update(path=str(path), duration_s=session.rendering.duration_s)
    return out


async def cmd_replay(args: argparse.Namespace) -> Dict[str, Any]:
    """Run the live engine over a recording, as if it had been sung along with the reference."""
    cfg = _build_config(args)
    audio = load_audio_mono(args.wav_path, cfg.sample_rate)

    microphone = PushedMicrophone(audio.sr)
    transport = ManualTransport()
    session = PracticeSession(cfg, engine=PitchDetectionEngine(cfg, microphone=microphone), transport=transport)
    _configure_session(session, args)
    await session.prepare()

    frame_loop = FrameLoop(fps=cfg.frame_rate_hz)
    session.attach(frame_loop)
    await session.start()

    # one analysis frame per capture block, timed by the recording itself
    transport.play()
    for i, block in enumerate(iter_blocks(audio.y, cfg.block_size)):
        pos_s = i * cfg.block_size / audio.sr
        transport.update(current_time=pos_s)
        microphone.push(block)
        frame_loop.run_frame(now_ms=pos_s * 1000.0)
    transport.update(ended=True)

    out = _report_json(session)
    out["duration_s"] = audio.duration_s
    session.stop()
    return out


async def cmd_practice(args: argparse.Namespace) -> Dict[str, Any]:
    cfg = _build_config(args)
    engine = PitchDetectionEngine(cfg, microphone=SoundDeviceMicrophone(args.input_device))
    session = PracticeSession(cfg, engine=engine)
    _configure_session(session, args)
    if not await session.prepare():
        return {"audio_available": False, **_plan_json(session)}

    player = SoundDevicePlayer(session.rendering, mode="loop" if args.loop else "single", device=args.output_device)
    session.set_transport(player)
    frame_loop = FrameLoop(fps=cfg.frame_rate_hz)
    session.attach(frame_loop)

    frames: List[Dict[str, Any]] = []
    if args.verbose:
        session.on_frame(lambda f: frames.append(f.to_dict()) if f.playing else None)

    await session.start()
    if session.engine.status == "error":
        session.stop()
        return {"engine": {"status": "error", "error": session.engine.error}}

    frame_loop.start()
    player.play()
    try:
        await asyncio.to_thread(player.wait)
    finally:
        frame_loop.cancel()
        player.stop()
    out = _report_json(session)
    if frames:
        out["frames"] = frames
    session.stop()
    return out


def main(argv: Optional[List[str]] = None) -> None:
    p = argparse.ArgumentParser(description="Vocal trainer: reference playback, live pitch tracking, comparison")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    ps = sub.add_parser("sequence", help="Print the practice sequence and its playback schedule")
    _add_session_args(ps)

    pr = sub.add_parser("render", help="Render the piano reference to a WAV file")
    _add_session_args(pr)
    pr.add_argument("--out", required=True, type=str)

    pp = sub.add_parser("practice", help="Play the reference and track the microphone live")
    _add_session_args(pp)
    pp.add_argument("--denoiser", choices=["none", "dsp", "ml"], default=None)
    pp.add_argument("--noise-threshold", type=float, default=None, help="0..100")
    pp.add_argument("--loop", action="store_true")
    pp.add_argument("--input-device", default=None)
    pp.add_argument("--output-device", default=None)

    pl = sub.add_parser("replay", help="Run the detector offline over a recorded take")
    _add_session_args(pl)
    pl.add_argument("wav_path", type=str, help="Recorded take (any format librosa reads)")
    pl.add_argument("--denoiser", choices=["none", "dsp", "ml"], default=None)
    pl.add_argument("--noise-threshold", type=float, default=None, help="0..100")

    pv = sub.add_parser("serve", help="Run the HTTP/WebSocket API")
    pv.add_argument("--host", default="127.0.0.1")
    pv.add_argument("--port", type=int, default=8000)

    args = p.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        import uvicorn

        uvicorn.run("vocal_trainer.api:app", host=args.host, port=args.port)
        return

    if args.command == "sequence":
        result = cmd_sequence(args)
    elif args.command == "render":
        result = asyncio.run(cmd_render(args))
    elif args.command == "practice":
        result = asyncio.run(cmd_practice(args))
    elif args.command == "replay":
        result = asyncio.run(cmd_replay(args))
    else:
        p.error(f"unknown command {args.command!r}")
        return

    print(json.dumps(result, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
