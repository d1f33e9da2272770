import json
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import anyio
from anyio.abc import TaskGroup
from fastapi import FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
import uvicorn

from .errors import AuthorizationError, NotFoundError, TickRelayError
from .models import record_to_dict
from .services.completion import CompletionSource, OpenAICompletionSource
from .services.session_store import SessionStore, close_session_store, create_session_store
from .services.tick_processor import TickProcessor
from .settings import Settings, get_settings
from .viewer import SessionViewer


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("tickrelay")
    if logger.handlers:
        return logging.getLogger("tickrelay.server")

    logger.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logging.getLogger("tickrelay.server")


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


def _cors_headers(allowed: list[str], origin: str | None) -> dict[str, str]:
    if "*" in allowed:
        allow_origin = "*"
    elif origin and origin in allowed:
        allow_origin = origin
    else:
        return {}
    return {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
    }


settings = get_settings()
LOGGER = setup_server_logging(settings.log_level)


def _error_response(error: TickRelayError, session_id: str | None = None) -> JSONResponse:
    body: dict[str, Any] = {"success": False, "error": error.message}
    if session_id:
        body["sessionId"] = session_id
    return JSONResponse(body, status_code=error.status_code)


def create_app(
    app_settings: Settings | None = None,
    store: SessionStore | None = None,
    completion_source: CompletionSource | None = None,
) -> FastAPI:
    """Build the FastAPI app. Store and completion source are created at startup unless given."""
    cfg = app_settings or settings
    allowed_origins = _cors_origins_list(cfg.cors_origins)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the session store and completion client at startup; close what we opened on shutdown."""
        owned_store = store is None
        owned_completion = completion_source is None

        LOGGER.info("Opening session store...")
        app.state.store = store if store is not None else await create_session_store(cfg)
        app.state.completion_source = (
            completion_source if completion_source is not None else OpenAICompletionSource(cfg)
        )
        app.state.tick_processor = TickProcessor(app.state.store, app.state.completion_source)
        LOGGER.info("Relay ready model=%s", cfg.model)

        yield

        LOGGER.info("Shutting down...")
        if owned_completion:
            await app.state.completion_source.aclose()
        if owned_store:
            await close_session_store(app.state.store)

    app = FastAPI(
        title="Tick Relay",
        version="0.1.0",
        debug=cfg.debug,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def add_cors_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.update(_cors_headers(allowed_origins, request.headers.get("origin")))
        return response

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check for load balancers and monitoring.

        Returns:
            dict[str, Any]: JSON response with status field.
        """
        return {"status": "ok"}

    @app.api_route("/", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
    @app.api_route("/onTick", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
    async def on_tick(request: Request) -> Response:
        """Tick endpoint: relay one prompt into the session record.

        Expected Input (JSON):
            {
                "sessionId": str,
                "prompt": str,
                "organizationId": str,
                "userId": str,
                "context": object (optional) - merged into the session's shared context
            }

        Responses:
            200 {"success": true, "sessionId", "message"}
            400 / 403 / 500 {"success": false, "error"}
        """
        if request.method == "OPTIONS":
            return Response(status_code=204)
        if request.method != "POST":
            return JSONResponse({"error": "Method not allowed"}, status_code=405)

        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            LOGGER.error("Invalid tick payload (not JSON): %s", e)
            return JSONResponse({"success": False, "error": "Invalid JSON payload"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"success": False, "error": "Invalid JSON payload"}, status_code=400)

        processor: TickProcessor = request.app.state.tick_processor
        result = await processor.process_tick(
            session_id=body.get("sessionId"),
            prompt=body.get("prompt"),
            organization_id=body.get("organizationId"),
            user_id=body.get("userId"),
            extra_context=body.get("context"),
        )
        if result.success:
            return JSONResponse(result.to_dict(), status_code=200)
        status_code = result.error.status_code if result.error is not None else 500
        return JSONResponse(result.to_dict(), status_code=status_code)

    @app.get("/sessions/{session_id}")
    async def get_session(
        request: Request,
        session_id: str,
        organization_id: str = Query(..., alias="organizationId"),
    ) -> Response:
        """Return the current session record for the owning organization."""
        store: SessionStore = request.app.state.store
        try:
            record = await store.get(session_id)
        except TickRelayError as e:
            LOGGER.exception("Session read failed session_id=%s: %s", session_id, e)
            return _error_response(e, session_id)
        if record is None:
            return _error_response(NotFoundError(f'Session "{session_id}" not found'), session_id)
        if record.organization_id != organization_id:
            return _error_response(
                AuthorizationError("Session does not belong to this organization"), session_id
            )
        return JSONResponse({"sessionId": session_id, **record_to_dict(record)})

    @app.websocket("/ws/sessions/{session_id}")
    async def session_ws(websocket: WebSocket, session_id: str) -> None:
        """WebSocket viewer: streams a session's transcript, fragments and typewriter frames.

        Query parameters:
            organizationId: tenant the viewer belongs to (required).
            speed: typewriter milliseconds per character (optional).

        Client messages (JSON):
            {"type": "scroll", "panel": "fragment" | "transcript",
             "scrollTop": float, "scrollHeight": float, "clientHeight": float}

        Server messages are the viewer events: transcript, fragment,
        typewriter, autoscroll and error.
        """
        await websocket.accept()
        organization_id = (websocket.query_params.get("organizationId") or "").strip()
        if not organization_id:
            await websocket.send_json(
                {"type": "error", "kind": "validation", "message": "organizationId is required",
                 "sessionId": session_id, "organizationId": None}
            )
            await websocket.close()
            return
        try:
            speed = float(websocket.query_params.get("speed") or cfg.typewriter_speed_ms)
        except ValueError:
            speed = cfg.typewriter_speed_ms

        viewer = SessionViewer(
            websocket.app.state.store,
            session_id,
            organization_id,
            send=websocket.send_json,
            typewriter_speed_ms=speed,
            typewriter_startup_delay_ms=cfg.typewriter_startup_delay_ms,
            autoscroll_threshold=cfg.autoscroll_threshold,
        )
        LOGGER.info("WS viewer start session_id=%s organization_id=%s", session_id, organization_id)

        viewer_finished = False

        async def follow_session(tg: TaskGroup) -> None:
            nonlocal viewer_finished
            await viewer.run()
            viewer_finished = True
            tg.cancel_scope.cancel()

        async def read_client(tg: TaskGroup) -> None:
            await _pump_client_messages(websocket, viewer)
            tg.cancel_scope.cancel()

        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(follow_session, tg)
                tg.start_soon(read_client, tg)
        finally:
            with anyio.CancelScope(shield=True):
                await viewer.aclose()
                if viewer_finished:
                    try:
                        await websocket.close()
                    except (OSError, RuntimeError) as e:
                        LOGGER.debug("WS close after viewer end failed: %s", e)
                LOGGER.info("WS viewer end session_id=%s", session_id)

    return app


async def _pump_client_messages(websocket: WebSocket, viewer: SessionViewer) -> None:
    """Feed display messages (scroll reports) to the viewer until the socket closes."""
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError as e:
                LOGGER.error("Invalid WS payload (not JSON): %s", e)
                continue
            if isinstance(payload, dict):
                await viewer.handle_client_message(payload)
    except WebSocketDisconnect:
        LOGGER.info("WS disconnect")


app = create_app()


def run() -> None:
    """Serve the app with uvicorn using HOST / PORT from settings."""
    uvicorn.run("tickrelay.main:app", host=settings.host, port=settings.port)
