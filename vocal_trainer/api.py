from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from typing import Any, Dict, List, Literal, Optional, Set

from fastapi import FastAPI, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from .audio import decode_pcm_float32, encode_wav
from .cache import AsyncLoaderCache
from .capture import PushedMicrophone
from .comparison import compare
from .config import DEFAULT_VOCAL_RANGE, VOCAL_RANGES, TrainerConfig
from .denoise import ModuleLoader, NoiseProcessor, import_denoiser_module
from .engine import PitchDetectionEngine, RangeFrequencies
from .exercise import can_step_down, can_step_up, normalize_notes, prepare_exercise
from .notes import note_label
from .piano import AdditivePianoRenderer, PianoNoteEvent
from .player import ManualTransport
from .report import chart_frequency_bounds, chart_series, summarize, summary_dict
from .scheduler import FrameLoop
from .session import KeyEvent, PracticeSession

logger = logging.getLogger(__name__)


# --- request / response models ---

class SequenceRequest(BaseModel):
    base_note: str
    note_count: int = Field(3, ge=1)
    note_duration_s: float = Field(1.0, gt=0)
    vocal_range: Optional[str] = None
    notation: Literal["italian", "english"] = "italian"


class InboundNote(BaseModel):
    pitch: Optional[str] = None
    duration: Optional[str] = None
    start: Optional[float] = None


class ExerciseRequest(BaseModel):
    notes: List[InboundNote]
    tempo: Optional[float] = None
    transpose: int = 0


class RenderEvent(BaseModel):
    note: str
    duration_seconds: float


class RenderRequest(BaseModel):
    events: List[RenderEvent]
    gap_s: float = Field(0.05, ge=0)


class CompareRequest(BaseModel):
    target_hz: Optional[float] = None
    voice_hz: Optional[float] = None


class ConfigureMessage(BaseModel):
    sample_rate: Optional[int] = Field(None, gt=0)
    vocal_range: Optional[str] = None
    base_note: Optional[str] = None
    note_count: Optional[int] = Field(None, ge=1)
    note_duration_s: Optional[float] = Field(None, gt=0)
    denoiser_mode: Optional[Literal["none", "dsp", "ml"]] = None
    noise_threshold: Optional[float] = None
    exercise: Optional[ExerciseRequest] = None


class TransportMessage(BaseModel):
    current_time: Optional[float] = None
    paused: Optional[bool] = None
    ended: Optional[bool] = None


class KeyMessage(BaseModel):
    key: str
    in_editable: bool = False
    meta: bool = False
    ctrl: bool = False
    alt: bool = False


def _schedule_payload(schedule) -> List[Dict[str, Any]]:
    return [dataclasses.asdict(s) for s in schedule]


def _plan_payload(session: PracticeSession) -> Dict[str, Any]:
    plan = session.plan or session.build_plan()
    return {
        "mode": session.mode,
        "base_note": session.base_note,
        "transpose": session.transpose,
        "sequence": list(plan.sequence_notes),
        "labels": [note_label(n, session.config.notation) for n in plan.sequence_notes],
        "schedule": _schedule_payload(plan.schedule),
        "audio_available": session.audio_available,
        "can_step_up": session.can_step_up,
        "can_step_down": session.can_step_down,
        "chart_bounds": list(chart_frequency_bounds(
            plan.sequence_notes, plan.sequence_notes[0] if plan.sequence_notes else None,
            session.engine.range_hz, session.config.a4_hz,
        )),
    }


def create_app(
    config: TrainerConfig = TrainerConfig(),
    loader_cache: Optional[AsyncLoaderCache] = None,
    module_loader: ModuleLoader = import_denoiser_module,
) -> FastAPI:
    app = FastAPI(title="Vocal Trainer API", version="0.1.0")

    # --- CORS (for React/Vite dev server) ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    cache = loader_cache if loader_cache is not None else AsyncLoaderCache()
    renderer = AdditivePianoRenderer(
        sample_rate=config.sample_rate,
        release_s=config.piano_release_s,
        sustain_release_s=config.sustain_release_s,
        a4_hz=config.a4_hz,
        loader_cache=cache,
    )
    app.state.config = config
    app.state.loader_cache = cache
    app.state.renderer = renderer

    def _new_session(cfg: TrainerConfig, microphone=None) -> PracticeSession:
        engine = PitchDetectionEngine(
            cfg,
            microphone=microphone,
            noise_processor=NoiseProcessor(cfg, loader_cache=cache, module_loader=module_loader),
        )
        return PracticeSession(cfg, engine=engine, renderer=renderer)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/ranges")
    def ranges():
        out = {}
        for key, vr in VOCAL_RANGES.items():
            hz = RangeFrequencies.from_vocal_range(vr, config.a4_hz)
            out[key] = {"label": vr.label, "min": vr.min, "max": vr.max, "min_hz": hz.min, "max_hz": hz.max}
        return {"default": DEFAULT_VOCAL_RANGE, "ranges": out}

    @app.post("/sequence")
    def sequence(req: SequenceRequest):
        cfg = dataclasses.replace(config, notation=req.notation)
        session = _new_session(cfg)
        session.set_vocal_range(req.vocal_range or cfg.vocal_range)
        session.select_note(req.base_note)
        session.set_note_count(req.note_count)
        session.set_note_duration(req.note_duration_s)
        payload = _plan_payload(session)
        payload["max_note_count"] = session.max_note_count
        return payload

    @app.post("/exercise/prepare")
    def exercise_prepare(req: ExerciseRequest):
        notes = normalize_notes([n.model_dump() for n in req.notes])
        prepared = prepare_exercise(notes, req.tempo, req.transpose, config.gap_seconds)
        return {
            "tempo": prepared.tempo_bpm,
            "transpose": prepared.transpose,
            "events": [{"note": n, "duration_seconds": d} for n, d in prepared.events],
            "schedule": _schedule_payload(prepared.schedule),
            "sequence": list(prepared.sequence_notes),
            "can_step_up": can_step_up(notes, req.transpose),
            "can_step_down": can_step_down(notes, req.transpose),
        }

    @app.post("/render")
    async def render(req: RenderRequest):
        events = [PianoNoteEvent(note=e.note, duration_seconds=e.duration_seconds) for e in req.events]
        try:
            rendering = await renderer.render(events, req.gap_s)
        except Exception:
            logger.exception("render failed")
            rendering = None
        if rendering is None or rendering.samples.size == 0:
            return Response(status_code=204)
        return Response(content=encode_wav(rendering.samples, rendering.sample_rate), media_type="audio/wav")

    @app.post("/compare")
    def compare_pitch(req: CompareRequest):
        verdict = compare(req.target_hz, req.voice_hz)
        return {"verdict": verdict.value if verdict is not None else None}

    @app.websocket("/ws/practice")
    async def practice_socket(websocket: WebSocket):
        await websocket.accept()
        microphone = PushedMicrophone(config.sample_rate)
        transport = ManualTransport()
        session = _new_session(config, microphone)
        session.set_transport(transport)
        frame_loop = FrameLoop(fps=config.frame_rate_hz)
        session.attach(frame_loop)

        # setup and re-renders run beside the receive loop so frames keep flowing
        setup_lock = asyncio.Lock()
        tasks: Set[asyncio.Task] = set()

        await websocket.send_json({"type": "constraints", "data": session.engine.constraints.to_dict()})

        async def send_error(message: str) -> None:
            await websocket.send_json({"type": "error", "data": {"message": message}})

        def spawn(coro) -> None:
            task = asyncio.ensure_future(coro)
            tasks.add(task)
            task.add_done_callback(tasks.discard)

        async def run_configure(cfg: ConfigureMessage) -> None:
            async with setup_lock:
                try:
                    await _configure(cfg)
                except (TypeError, ValueError) as exc:
                    await send_error(str(exc))
                    return
                await websocket.send_json({"type": "configured", "data": _plan_payload(session)})

        async def run_key(event: KeyEvent) -> None:
            async with setup_lock:
                handled = await session.handle_key(event)
                await websocket.send_json({"type": "key", "data": {"handled": handled, **_plan_payload(session)}})

        async def handle_text(raw: str) -> None:
            try:
                msg = json.loads(raw)
                kind, data = msg.get("type"), msg.get("data") or {}
            except (json.JSONDecodeError, AttributeError):
                await send_error("messages must be JSON objects with a 'type'")
                return

            try:
                if kind == "configure":
                    spawn(run_configure(ConfigureMessage(**data)))
                elif kind == "transport":
                    t = TransportMessage(**data)
                    transport.update(t.current_time, t.paused, t.ended)
                elif kind == "key":
                    k = KeyMessage(**data)
                    spawn(run_key(KeyEvent(**k.model_dump())))
                elif kind == "summary":
                    snap = session.engine.snapshot()
                    plan = session.plan or session.build_plan()
                    bounds = chart_frequency_bounds(
                        plan.sequence_notes, plan.sequence_notes[0] if plan.sequence_notes else None,
                        snap.range_hz, config.a4_hz,
                    )
                    await websocket.send_json({"type": "summary", "data": {
                        "summary": summary_dict(summarize(snap)),
                        "chart": chart_series(snap, bounds),
                        "chart_bounds": list(bounds),
                    }})
                else:
                    await send_error(f"unknown message type {kind!r}")
            except (ValidationError, TypeError, ValueError) as exc:
                await send_error(str(exc))

        async def _configure(cfg: ConfigureMessage) -> None:
            engine = session.engine
            if cfg.sample_rate is not None and engine.status == "idle":
                microphone.sample_rate = cfg.sample_rate
            if cfg.vocal_range is not None:
                session.set_vocal_range(cfg.vocal_range)
            if cfg.base_note is not None:
                session.use_scale()
                session.select_note(cfg.base_note)
            if cfg.note_count is not None:
                session.set_note_count(cfg.note_count)
            if cfg.note_duration_s is not None:
                session.set_note_duration(cfg.note_duration_s)
            if cfg.exercise is not None:
                session.load_exercise([n.model_dump() for n in cfg.exercise.notes], cfg.exercise.tempo)
                session.transpose = cfg.exercise.transpose
            if cfg.noise_threshold is not None:
                engine.set_noise_threshold(cfg.noise_threshold)
            if engine.status in ("idle", "error"):
                if cfg.denoiser_mode is not None:
                    engine.denoiser_mode = cfg.denoiser_mode
                await engine.start()
            elif cfg.denoiser_mode is not None:
                await engine.set_denoiser_mode(cfg.denoiser_mode)
            await session.prepare()

        try:
            while True:
                message = await websocket.receive()
                if message.get("type") == "websocket.disconnect":
                    break
                if message.get("bytes") is not None:
                    try:
                        block = decode_pcm_float32(message["bytes"])
                    except ValueError as exc:
                        await send_error(str(exc))
                        continue
                    microphone.push(block)
                    frame_loop.run_frame()
                    frame = session.last_frame
                    await websocket.send_json({"type": "frame", "data": frame.to_dict() if frame else None})
                elif message.get("text") is not None:
                    await handle_text(message["text"])
        except WebSocketDisconnect:
            pass
        finally:
            for task in list(tasks):
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            session.stop()

    return app


app = create_app()
