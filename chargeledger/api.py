import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from . import config
from .errors import SessionError
from .ledger import LedgerHandle
from .ledger_queue import LedgerQueue
from .lifecycle import SessionLifecycle
from .models import iso, utc_now
from .notifier import Broadcaster
from .store import SessionStore


@dataclass
class Services:
    store: SessionStore
    ledger: LedgerHandle
    broadcaster: Broadcaster
    queue: LedgerQueue
    lifecycle: SessionLifecycle
    backend: str = "memory"
    run_queue: bool = True
    on_startup: List[Callable[[], Awaitable[Any]]] = field(default_factory=list)
    on_shutdown: List[Callable[[], Awaitable[Any]]] = field(default_factory=list)


def build_services(
    store: SessionStore,
    ledger: LedgerHandle,
    backend: str = "memory",
    run_queue: bool = True,
    clock=utc_now,
    **queue_options,
) -> Services:
    broadcaster = Broadcaster(clock=clock)
    queue = LedgerQueue(store, ledger, broadcaster, clock=clock, **queue_options)
    lifecycle = SessionLifecycle(store, queue, broadcaster, clock=clock)
    return Services(
        store=store,
        ledger=ledger,
        broadcaster=broadcaster,
        queue=queue,
        lifecycle=lifecycle,
        backend=backend,
        run_queue=run_queue,
    )


class StartReq(BaseModel):
    ev_id: str | None = Field(default=None, alias="evId")
    power_required: float | None = Field(default=None, alias="powerRequired", strict=True)
    hours: float | None = Field(default=None, strict=True)

    model_config = ConfigDict(populate_by_name=True)


class SessionReq(BaseModel):
    ev_id: str | None = Field(default=None, alias="evId")
    session_id: str | None = Field(default=None, alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)


class ResumeReq(SessionReq):
    resume_token: str | None = Field(default=None, alias="resumeToken")


class RetryReq(BaseModel):
    session_id: str | None = Field(default=None, alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)


def create_app(services: Services) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for hook in services.on_startup:
            await hook()
        if services.run_queue:
            await services.queue.start()
        try:
            yield
        finally:
            if services.run_queue:
                await services.queue.stop()
            for hook in services.on_shutdown:
                await hook()

    app = FastAPI(title="EV Session Ledger API", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    lifecycle = services.lifecycle
    queue = services.queue
    broadcaster = services.broadcaster

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logging.info(f">>> {request.method} {request.url.path}")
        try:
            response = await call_next(request)
            logging.info(f"<<< {request.method} {request.url.path} -> {response.status_code}")
            return response
        except Exception:
            logging.exception("Handler crashed")
            raise

    @app.exception_handler(SessionError)
    async def session_error_handler(request: Request, exc: SessionError):
        logging.info(f"{request.url.path} rejected: {exc.kind} ({exc.detail})")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
            for err in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content={"ok": False, "kind": "validation_error", "error": problems or "invalid request"},
        )

    # ------------------------------------------------------------------
    # Lifecycle commands
    # ------------------------------------------------------------------

    @app.post("/api/sessions/start")
    async def api_start(req: StartReq):
        try:
            result = await lifecycle.start(req.ev_id, req.power_required, req.hours)
            return result.to_dict()
        except SessionError:
            raise
        except Exception as e:
            logging.exception("start failed")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/api/sessions/pause")
    async def api_pause(req: SessionReq):
        try:
            result = await lifecycle.pause(req.ev_id, req.session_id)
            return result.to_dict()
        except SessionError:
            raise
        except Exception as e:
            logging.exception("pause failed")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/api/sessions/resume")
    async def api_resume(req: ResumeReq):
        try:
            result = await lifecycle.resume(req.ev_id, req.session_id, req.resume_token)
            return result.to_dict()
        except SessionError:
            raise
        except Exception as e:
            logging.exception("resume failed")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/api/sessions/stop")
    async def api_stop(req: SessionReq):
        try:
            result = await lifecycle.stop(req.ev_id, req.session_id)
            return result.to_dict()
        except SessionError:
            raise
        except Exception as e:
            logging.exception("stop failed")
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/api/sessions/{session_id}")
    async def api_session(session_id: str, ev_id: str | None = Query(default=None, alias="evId")):
        try:
            snapshot = await lifecycle.get_session(ev_id, session_id)
        except SessionError:
            raise
        except Exception as e:
            logging.exception("session read failed")
            raise HTTPException(status_code=500, detail=str(e))
        return {"ok": True, "session": snapshot}

    # ------------------------------------------------------------------
    # Queue administration
    # ------------------------------------------------------------------

    @app.get("/api/queue/status")
    async def api_queue_status():
        try:
            counts = await queue.get_status()
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {
            "ok": True,
            "queue": counts,
            "stats": dict(queue.stats),
            "ledgerAvailable": services.ledger.available,
        }

    @app.post("/api/queue/retry")
    async def api_queue_retry(req: RetryReq | None = None):
        session_id = req.session_id if req else None
        try:
            count = await queue.retry_dead_events(session_id)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"ok": True, "retriedCount": count}

    @app.get("/api/queue/events")
    async def api_queue_events(session_id: str = Query(alias="sessionId")):
        try:
            events = await queue.list_events(session_id)
        except Exception as e:
            logging.exception("queue event listing failed")
            raise HTTPException(status_code=500, detail=str(e))
        return {"ok": True, "events": [e.to_dict() for e in events]}

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @app.get("/health")
    def health():
        return {"ok": True, "time": iso(utc_now())}

    @app.get("/health/db")
    async def health_db():
        try:
            reachable = await asyncio.wait_for(services.store.ping(), timeout=config.STORE_TIMEOUT_SEC)
        except Exception as e:
            logging.warning(f"Store health check failed: {e}")
            reachable = False
        if not reachable:
            return JSONResponse(status_code=503, content={"ok": False, "db": services.backend})
        return {"ok": True, "db": services.backend}

    # ------------------------------------------------------------------
    # Live subscriptions
    # ------------------------------------------------------------------

    @app.get("/events")
    async def events(request: Request):
        sub = broadcaster.subscribe()

        async def stream():
            try:
                async for message in sub:
                    if await request.is_disconnected():
                        break
                    yield f"data: {json.dumps(message)}\n\n"
            finally:
                sub.close()

        headers: Dict[str, str] = {
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
        return StreamingResponse(stream(), media_type="text/event-stream", headers=headers)

    @app.websocket("/ws/events")
    async def ws_events(websocket: WebSocket):
        await websocket.accept()
        sub = broadcaster.subscribe()
        try:
            async for message in sub:
                await websocket.send_json(message)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logging.info(f"WebSocket subscriber closed: {e}")
        finally:
            sub.close()

    return app
