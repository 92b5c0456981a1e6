from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from .guide_engine import GuideEngine
from .logging_config import get_logger
from .models import GuideSnapshot

logger = get_logger()


class BeaconOut(BaseModel):
    identity: str
    name: Optional[str]
    rssi: float
    distance: float
    tier: str
    qualifies: bool
    known: bool


class StatusOut(BaseModel):
    session_active: bool
    state: str
    current_beacon: Optional[str]
    current_clip: Optional[str]
    status_note: Optional[str]
    pending_stop_deadline: Optional[float]
    narration_cursor: dict
    qualifying: List[BeaconOut]
    visible: List[BeaconOut]


class BeaconsOut(BaseModel):
    qualifying: List[BeaconOut]
    visible: List[BeaconOut]


class HealthOut(BaseModel):
    status: str
    timestamp: str
    session_active: bool
    notes: int
    errors: int
    last_error: Optional[str]


def create_app(engine: GuideEngine) -> FastAPI:
    app = FastAPI(title="Audium Guide Status")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"],
    )

    subscribers: List[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []

    def _broadcast(snap: GuideSnapshot):
        # called on the engine thread
        payload = snap.to_dict()
        for loop, q in list(subscribers):
            loop.call_soon_threadsafe(q.put_nowait, payload)

    engine.add_listener(_broadcast)

    @app.get("/api/status", response_model=StatusOut)
    def status():
        return StatusOut(**engine.snapshot().to_dict())

    @app.get("/api/beacons", response_model=BeaconsOut)
    def beacons():
        d = engine.snapshot().to_dict()
        return BeaconsOut(qualifying=d['qualifying'], visible=d['visible'])

    @app.get("/api/health", response_model=HealthOut)
    def health():
        log = get_logger().get_status()
        last = log["last_error"]
        return HealthOut(
            status="degraded" if last else "healthy",
            timestamp=datetime.now(timezone.utc).isoformat(),
            session_active=engine.snapshot().session_active,
            notes=log["notes"],
            errors=log["errors"],
            last_error=f"[{last['component']}] {last['message']}" if last else None,
        )

    @app.post("/api/session/start")
    def start_session():
        engine.start_session()
        logger.info("Session start requested", "API")
        return {"ok": True}

    @app.post("/api/session/stop")
    def stop_session():
        engine.stop_session()
        logger.info("Session stop requested", "API")
        return {"ok": True}

    @app.get("/api/stream")
    async def sse_stream():
        async def event_generator(q: asyncio.Queue):
            try:
                yield f"data: {json.dumps(engine.snapshot().to_dict())}\n\n"
                while True:
                    evt = await q.get()
                    yield f"data: {json.dumps(evt)}\n\n"
            except asyncio.CancelledError:
                pass
            finally:
                if entry in subscribers:
                    subscribers.remove(entry)

        q: asyncio.Queue = asyncio.Queue()
        entry = (asyncio.get_running_loop(), q)
        subscribers.append(entry)
        return StreamingResponse(event_generator(q), media_type="text/event-stream")

    return app
