import asyncio
import json
import logging
from contextlib import contextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import router
from .config import settings
from .db import get_session, init_db
from .engine import OrbitWatchEngine
from .errors import InvalidRequest, OrbitWatchError, TLESourceError
from .services.alert_stream import frame

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(router)


def _error(status_code: int, kind: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"kind": kind, "message": message}},
    )


@app.exception_handler(OrbitWatchError)
async def orbitwatch_error_handler(_request: Request, exc: OrbitWatchError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.warning("Request failed: kind=%s message=%s", exc.kind, exc.message)
    return _error(exc.http_status, exc.kind, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}" for error in exc.errors()
    )
    return _error(422, "invalid_request", details or "Invalid request")


@app.exception_handler(Exception)
async def unexpected_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error: %s", exc)
    return _error(500, "internal_error", "Internal server error")


@contextmanager
def session_scope():
    """Open a session the same way request handlers get one, overrides included."""
    provider = app.dependency_overrides.get(get_session, get_session)
    sessions = provider()
    try:
        yield next(sessions)
    finally:
        sessions.close()


def _persist(engine: OrbitWatchEngine) -> None:
    with session_scope() as db:
        engine.persist(db)


async def ingestion_loop(engine: OrbitWatchEngine) -> None:
    while True:
        try:
            summary = await engine.refresh_catalog()
            logger.info("Ingested TLE records: inserted=%d superseded=%d", summary.inserted, summary.superseded)
            await asyncio.to_thread(_persist, engine)
        except TLESourceError as exc:
            logger.warning("Ingestion skipped: %s", exc)
        except Exception as exc:
            logger.exception("Ingestion failed: %s", exc)
        await asyncio.sleep(settings.ingestion_interval_hours * 3600)


async def screening_loop(engine: OrbitWatchEngine) -> None:
    while True:
        await asyncio.sleep(settings.screening_interval_minutes * 60)
        try:
            result = await asyncio.to_thread(engine.run_screening)
            logger.info("Scheduled screening: events=%d truncated=%s", len(result.events), result.truncated)
            await asyncio.to_thread(_persist, engine)
        except Exception as exc:
            logger.exception("Screening failed: %s", exc)


async def reentry_loop(engine: OrbitWatchEngine) -> None:
    while True:
        await asyncio.sleep(settings.reentry_interval_minutes * 60)
        try:
            result, events = await engine.reentry_cycle()
            logger.info("Scheduled re-entry sweep: predictions=%d alert_events=%d", len(result.predictions), len(events))
            await asyncio.to_thread(_persist, engine)
        except Exception as exc:
            logger.exception("Re-entry sweep failed: %s", exc)


async def escalation_loop(engine: OrbitWatchEngine) -> None:
    while True:
        await asyncio.sleep(settings.escalation_check_interval_seconds)
        try:
            events = engine.check_escalations()
            if events:
                await asyncio.to_thread(_persist, engine)
        except Exception as exc:
            logger.exception("Escalation check failed: %s", exc)


@app.on_event("startup")
async def startup_event() -> None:
    init_db()
    engine = OrbitWatchEngine(settings)
    with session_scope() as db:
        engine.restore(db)
    await engine.start()
    app.state.engine = engine
    app.state.background_tasks = []
    if settings.background_tasks_enabled:
        app.state.background_tasks = [
            asyncio.create_task(ingestion_loop(engine), name="ingestion-loop"),
            asyncio.create_task(screening_loop(engine), name="screening-loop"),
            asyncio.create_task(reentry_loop(engine), name="reentry-loop"),
            asyncio.create_task(escalation_loop(engine), name="escalation-loop"),
        ]


@app.on_event("shutdown")
async def shutdown_event() -> None:
    for task in app.state.background_tasks:
        task.cancel()
    await asyncio.gather(*app.state.background_tasks, return_exceptions=True)
    await app.state.engine.stop()
    await asyncio.to_thread(_persist, app.state.engine)


@app.get("/")
def root() -> dict:
    return {
        "name": settings.app_name,
        "status": "ok",
        "disclaimer": "Public TLE only. Screening-grade outputs from SGP4 states and estimated covariances.",
    }


@app.websocket("/ws/alerts")
async def alert_stream(websocket: WebSocket) -> None:
    hub = websocket.app.state.engine.hub
    await hub.connect(websocket)
    try:
        while True:
            try:
                message = json.loads(await websocket.receive_text())
            except ValueError:
                await websocket.send_json(frame("error", {"message": "Messages must be JSON"}))
                continue
            message_type = message.get("type") if isinstance(message, dict) else None
            if message_type == "subscribe":
                try:
                    filters = hub.subscribe(websocket, message.get("payload"))
                except InvalidRequest as exc:
                    await websocket.send_json(frame("error", {"kind": exc.kind, "message": str(exc)}))
                    continue
                await websocket.send_json(frame("subscribed", {"filter": filters.to_dict()}))
            elif message_type == "ping":
                await websocket.send_json(frame("pong", {}))
            else:
                await websocket.send_json(frame("error", {"message": f"Unknown message type '{message_type}'"}))
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket)
