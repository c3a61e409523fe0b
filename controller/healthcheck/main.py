"""FastAPI entry-point for the screening kiosk controller."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from .config import Settings, get_settings
from .logging_config import configure_logging
from .session_manager import SessionManager
from .state import Stage
from .submission import SubmissionOutcome

logger = logging.getLogger(__name__)


class StageRequest(BaseModel):
    stage: Stage


class TelemetryRequest(BaseModel):
    channel: str
    data: Any = None


class IdentityRequest(BaseModel):
    token: Optional[str] = None


class AbortRequest(BaseModel):
    reason: str = "operator_abort"


def _outcome_payload(outcome: SubmissionOutcome) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"outcome": outcome.kind.value}
    if outcome.ack:
        payload["status_code"] = outcome.ack.status_code
        payload["ack"] = outcome.ack.body
    if outcome.error:
        payload["error"] = outcome.error.user_message
    return payload


def create_app(manager: Optional[SessionManager] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the controller app; the lifespan starts and stops the session manager."""
    settings = settings or (manager.settings if manager else get_settings())
    if manager is None:
        configure_logging(settings.log_level, settings.log_directory, settings.log_retention_days)
        manager = SessionManager(settings=settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        try:
            await manager.start()
            logger.info("Application started successfully")
        except Exception as e:
            logger.exception("Failed to start session manager: %s", e)
        yield
        try:
            await manager.stop()
            logger.info("Application shutdown complete")
        except Exception as e:
            logger.exception("Error during shutdown: %s", e)

    app = FastAPI(title="healthcheck-controller", version="0.1.0", lifespan=lifespan)
    app.state.manager = manager

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
        """Catch-all exception handler to prevent application crashes."""
        logger.exception("Unhandled exception in %s: %s", request.url.path, exc)
        return PlainTextResponse(
            f"Internal server error: {exc}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Validation error in %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc)},
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/healthz")
    async def healthcheck() -> JSONResponse:
        snapshot = manager.snapshot()
        return JSONResponse({
            "status": "ok",
            "active": manager.active,
            "stage": snapshot.current_stage.value if snapshot.current_stage else None,
            "session_number": manager.session_number,
        })

    @app.get("/state")
    async def get_state() -> JSONResponse:
        return JSONResponse(manager.snapshot_dict())

    @app.post("/advance")
    async def advance() -> JSONResponse:
        completed = await manager.advance()
        return JSONResponse({"completed": completed, "state": manager.snapshot_dict()})

    @app.post("/stage")
    async def set_stage(payload: StageRequest) -> JSONResponse:
        applied = await manager.set_stage(payload.stage)
        if not applied:
            return JSONResponse(
                {"status": "ignored", "state": manager.snapshot_dict()},
                status_code=status.HTTP_409_CONFLICT,
            )
        return JSONResponse({"status": "ok", "state": manager.snapshot_dict()})

    @app.post("/submit")
    async def submit() -> JSONResponse:
        outcome = await manager.submit()
        return JSONResponse(_outcome_payload(outcome))

    @app.post("/session/restart")
    async def restart_session() -> JSONResponse:
        await manager.restart()
        return JSONResponse({"status": "ok", "session_number": manager.session_number})

    @app.post("/session/abort")
    async def abort_session(payload: AbortRequest) -> JSONResponse:
        await manager.abort(payload.reason)
        return JSONResponse({"status": "ok", "active": manager.active})

    @app.post("/telemetry")
    async def push_telemetry(payload: TelemetryRequest) -> JSONResponse:
        """Accept a pushed reading on a database-style path (e.g. sensors/temperature)."""
        if manager.push_transport is None:
            return JSONResponse(
                {"status": "error", "message": "push transport disabled"},
                status_code=status.HTTP_404_NOT_FOUND,
            )
        routed = await manager.push_transport.push(payload.channel, payload.data)
        return JSONResponse({"routed": routed, "state": manager.snapshot_dict()})

    @app.put("/identity")
    async def put_identity(payload: IdentityRequest) -> JSONResponse:
        try:
            manager.set_identity(payload.token)
        except TypeError as e:
            return JSONResponse({"status": "error", "message": str(e)}, status_code=status.HTTP_409_CONFLICT)
        return JSONResponse({"status": "ok", "has_identity": payload.token is not None})

    @app.get("/results")
    async def last_results() -> JSONResponse:
        record = manager.record_store.read_results()
        if record is None:
            return JSONResponse({"results": None}, status_code=status.HTTP_404_NOT_FOUND)
        return JSONResponse({"results": record.model_dump(mode="json")})

    @app.websocket("/ws/ui")
    async def ui_socket(ws: WebSocket) -> None:
        await ws.accept()
        queue = manager.register_ui()
        try:
            snapshot = manager.snapshot()
            await ws.send_json({
                "type": "state",
                "stage": snapshot.current_stage.value if snapshot.current_stage else None,
                "data": manager.snapshot_dict(),
            })
            while True:
                event = await queue.get()
                payload = {
                    "type": event.type,
                    "stage": event.stage.value if event.stage else None,
                    "data": event.data,
                }
                if event.error:
                    payload["error"] = event.error
                try:
                    await ws.send_json(payload)
                except Exception as e:
                    logger.debug("WebSocket send failed (client disconnected): %s", e)
                    break
        except WebSocketDisconnect:
            pass
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Unexpected error in UI websocket: %s", e)
        finally:
            manager.unregister_ui(queue)
            try:
                await ws.close()
            except Exception:
                pass

    return app


def run() -> None:
    settings = get_settings()
    uvicorn.run(create_app(settings=settings), host=settings.controller_host, port=settings.controller_port)


if __name__ == "__main__":
    run()
