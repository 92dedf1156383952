"""Main FastAPI application module."""

import asyncio
import logging
import time
import traceback
import uuid
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security.api_key import APIKeyHeader

from mosaic import __version__
from mosaic.core.broadcast import EventBroadcaster
from mosaic.core.config import Settings, load_event_system_config, load_settings
from mosaic.core.events import (
    DeadLetterEvent,
    EnhancedEventSystem,
    EventBatch,
    EventHandlerResult,
    EventQueueFullError,
)
from mosaic.core.plugins import PluginManager
from mosaic.models import EmitEventRequest, PublishEventRequest, RetryDeadLetterRequest
from mosaic.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

# HTTP Status Codes
HTTP_UNAUTHORIZED = 403
HTTP_NOT_FOUND = 404
HTTP_UNPROCESSABLE_ENTITY = 422
HTTP_SERVICE_UNAVAILABLE = 503

SHUTDOWN_STEP_TIMEOUT = 5.0


async def _shutdown_step(name: str, step: Awaitable[Any], timeout: float = SHUTDOWN_STEP_TIMEOUT) -> None:
    logger.info(f"Shutting down {name}")
    try:
        await asyncio.shield(asyncio.wait_for(step, timeout=timeout))
    except TimeoutError:
        logger.warning(f"{name.capitalize()} shutdown timed out after {timeout} seconds")
    except asyncio.CancelledError:
        logger.warning(f"{name.capitalize()} shutdown cancelled")
    except Exception as e:
        logger.error(
            f"Error shutting down {name}",
            extra={"error": str(e), "traceback": traceback.format_exc()},
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for FastAPI application startup and shutdown."""
    settings = load_settings()

    # Setup logging first
    setup_logging(log_dir=settings.log_dir, level=settings.log_level)

    logger.info("Initializing event system")
    event_system = EnhancedEventSystem(load_event_system_config())
    await event_system.start()

    logger.info("Initializing plugin manager")
    plugin_manager = PluginManager(settings.plugin_dir, event_system=event_system)
    await plugin_manager.discover_plugins()
    await plugin_manager.initialize_plugins()

    broadcaster = EventBroadcaster(event_system)
    broadcaster.start()

    app.state.settings = settings
    app.state.event_system = event_system
    app.state.plugin_manager = plugin_manager
    app.state.broadcaster = broadcaster

    await plugin_manager.call_hook("on_startup", app=app)
    logger.info("Startup complete")

    try:
        yield
    finally:
        logger.info("Starting application shutdown")
        await _shutdown_step("plugin hooks", plugin_manager.call_hook("on_shutdown", app=app))
        await _shutdown_step("broadcaster", broadcaster.stop())
        await _shutdown_step("plugins", plugin_manager.shutdown_plugins())
        await _shutdown_step(
            "event system",
            event_system.shutdown(timeout=SHUTDOWN_STEP_TIMEOUT),
            timeout=SHUTDOWN_STEP_TIMEOUT * 2,
        )
        logger.info("Shutdown complete")


app = FastAPI(
    title="Mosaic Events API",
    description="Admin API for the Mosaic enhanced event system",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=load_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API key security
API_KEY_NAME = "X-API-Key"
api_key_header = APIKeyHeader(name=API_KEY_NAME, auto_error=True)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_event_system(request: Request) -> EnhancedEventSystem:
    return request.app.state.event_system


async def get_api_key(
    api_key: str = Depends(api_key_header),
    settings: Settings = Depends(get_settings),
) -> str:
    """Validate API key from request header.

    Raises:
        HTTPException: If API key is invalid or none is configured
    """
    if settings.api_key and api_key.lower() == settings.api_key.lower():
        return api_key
    raise HTTPException(
        status_code=HTTP_UNAUTHORIZED,
        detail="Could not validate API key",
    )


@app.middleware("http")
async def api_logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log every request with method, path, status and duration."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    started = time.perf_counter()

    try:
        response = await call_next(request)
    except asyncio.CancelledError:
        logger.info(
            "Request cancelled during shutdown",
            extra={"request_id": request_id, "method": request.method, "path": request.url.path},
        )
        return Response(status_code=HTTP_SERVICE_UNAVAILABLE, content="Service shutting down")
    except Exception as e:
        logger.error(
            "Error processing request",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "error": str(e),
                "traceback": traceback.format_exc(),
            },
        )
        raise

    logger.info(
        "API request completed",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration": time.perf_counter() - started,
        },
    )
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle validation errors in request data."""
    errors = jsonable_encoder(exc.errors())
    logger.error(
        "Validation error",
        extra={"path": request.url.path, "errors": errors},
    )
    return JSONResponse(
        status_code=HTTP_UNPROCESSABLE_ENTITY,
        content={"detail": errors},
    )


def _result_to_dict(result: EventHandlerResult) -> dict[str, Any]:
    data = result.model_dump(mode="json", exclude={"result"})
    try:
        data["result"] = jsonable_encoder(result.result)
    except (TypeError, ValueError):
        data["result"] = repr(result.result)
    return data


def _dead_letter_to_dict(dead_letter: DeadLetterEvent) -> dict[str, Any]:
    return dead_letter.model_dump(mode="json")


@app.get("/health")
async def health_check(
    request: Request,
    api_key: str = Depends(get_api_key),
    event_system: EnhancedEventSystem = Depends(get_event_system),
) -> dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": __version__,
        "processing": event_system.is_processing,
        "queue_size": event_system.queue_size,
        "plugins": sorted(request.app.state.plugin_manager.plugins),
        "websocket_clients": request.app.state.broadcaster.connection_count,
    }


@app.post("/api/events")
async def publish_event(
    body: PublishEventRequest,
    api_key: str = Depends(get_api_key),
    event_system: EnhancedEventSystem = Depends(get_event_system),
) -> dict[str, Any]:
    """Queue one event."""
    try:
        event_id = event_system.publish(body.type, body.payload, **body.publish_options())
    except EventQueueFullError as e:
        raise HTTPException(status_code=HTTP_SERVICE_UNAVAILABLE, detail=str(e)) from e

    logger.info("Event published via API", extra={"event_id": event_id, "event_type": body.type})
    return {"status": "success", "event_id": event_id}


@app.post("/api/events/batch")
async def publish_batch(
    batch: EventBatch,
    api_key: str = Depends(get_api_key),
    event_system: EnhancedEventSystem = Depends(get_event_system),
) -> dict[str, Any]:
    """Queue several events. Events before a full queue stay published."""
    try:
        event_ids = event_system.publish_batch(batch)
    except EventQueueFullError as e:
        raise HTTPException(status_code=HTTP_SERVICE_UNAVAILABLE, detail=str(e)) from e
    return {"status": "success", "event_ids": event_ids}


@app.post("/api/events/emit")
async def emit_event(
    body: EmitEventRequest,
    api_key: str = Depends(get_api_key),
    event_system: EnhancedEventSystem = Depends(get_event_system),
) -> dict[str, Any]:
    """Dispatch immediately and return every handler result."""
    results = await event_system.emit_async(
        body.type,
        body.payload,
        source=body.source,
        correlation_id=body.correlation_id,
        metadata=body.metadata,
        timeout=body.timeout,
    )
    return {"status": "success", "results": [_result_to_dict(r) for r in results]}


@app.get("/api/events/metrics")
async def get_metrics(
    api_key: str = Depends(get_api_key),
    event_system: EnhancedEventSystem = Depends(get_event_system),
) -> dict[str, Any]:
    return event_system.get_metrics().model_dump(mode="json")


@app.get("/api/events/stats")
async def get_stats(
    event_type: str | None = None,
    api_key: str = Depends(get_api_key),
    event_system: EnhancedEventSystem = Depends(get_event_system),
) -> dict[str, Any]:
    stats = event_system.get_stats(event_type)
    if event_type is not None:
        return stats.model_dump(mode="json")
    return {name: entry.model_dump(mode="json") for name, entry in stats.items()}


@app.get("/api/events/history")
async def get_history(
    event_type: str | None = None,
    limit: int | None = None,
    api_key: str = Depends(get_api_key),
    event_system: EnhancedEventSystem = Depends(get_event_system),
) -> list[dict[str, Any]]:
    if limit is not None and limit < 0:
        raise HTTPException(status_code=HTTP_UNPROCESSABLE_ENTITY, detail="limit must be non-negative")
    return [event.model_dump(mode="json") for event in event_system.get_history(event_type, limit)]


@app.get("/api/events/subscriptions")
async def get_subscriptions(
    event_type: str | None = None,
    api_key: str = Depends(get_api_key),
    event_system: EnhancedEventSystem = Depends(get_event_system),
) -> list[dict[str, Any]]:
    return [subscription.describe() for subscription in event_system.get_subscriptions(event_type)]


@app.get("/api/events/dead-letter")
async def get_dead_letter_queue(
    api_key: str = Depends(get_api_key),
    event_system: EnhancedEventSystem = Depends(get_event_system),
) -> list[dict[str, Any]]:
    return [_dead_letter_to_dict(d) for d in event_system.get_dead_letter_queue()]


@app.post("/api/events/dead-letter/retry")
async def retry_dead_letter_events(
    body: RetryDeadLetterRequest | None = None,
    api_key: str = Depends(get_api_key),
    event_system: EnhancedEventSystem = Depends(get_event_system),
) -> dict[str, Any]:
    """Re-enqueue dead-lettered events, optionally selected by id or type."""
    body = body or RetryDeadLetterRequest()
    event_ids = set(body.event_ids) if body.event_ids is not None else None

    def selected(dead_letter: DeadLetterEvent) -> bool:
        event = dead_letter.original_event
        if event_ids is not None and event.id not in event_ids:
            return False
        return body.event_type is None or event.type == body.event_type

    retried = event_system.retry_dead_letter_events(selected)
    if event_ids and not retried:
        raise HTTPException(status_code=HTTP_NOT_FOUND, detail="No matching dead letter events")
    return {"status": "success", "event_ids": retried}


@app.delete("/api/events/dead-letter")
async def clear_dead_letter_queue(
    api_key: str = Depends(get_api_key),
    event_system: EnhancedEventSystem = Depends(get_event_system),
) -> dict[str, Any]:
    cleared = len(event_system.get_dead_letter_queue())
    event_system.clear_dead_letter_queue()
    return {"status": "success", "cleared": cleared}


@app.post("/api/events/pause")
async def pause_processing(
    api_key: str = Depends(get_api_key),
    event_system: EnhancedEventSystem = Depends(get_event_system),
) -> dict[str, Any]:
    event_system.pause()
    return {"status": "paused", "queue_size": event_system.queue_size}


@app.post("/api/events/resume")
async def resume_processing(
    api_key: str = Depends(get_api_key),
    event_system: EnhancedEventSystem = Depends(get_event_system),
) -> dict[str, Any]:
    event_system.resume()
    return {"status": "processing", "queue_size": event_system.queue_size}


@app.websocket("/ws/events")
async def events_websocket(websocket: WebSocket) -> None:
    """Stream every delivered event to the client as JSON."""
    broadcaster: EventBroadcaster = websocket.app.state.broadcaster
    client_id = await broadcaster.connect(websocket)
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(client_id)


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    uvicorn.run("mosaic.main:app", host=settings.api_host, port=settings.api_port)
