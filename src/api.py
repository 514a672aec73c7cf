"""
Health and status API.

A small FastAPI app served next to the controller: liveness and readiness
probes, the per-resource reconcile state table and an SSE stream of
reconcile events.
"""

import asyncio
import logging
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from config import APIConfig
from controller import Controller
from events import EventBus, ReconcileEvent
from models import ResourceKey

logger = logging.getLogger(__name__)


class ResourceStateResponse(BaseModel):
    """Response model for one entry of the reconcile state table."""

    kind: str
    name: str
    state: str
    success: Optional[bool] = None
    message: str = ""
    action: str = ""


class KindInfo(BaseModel):
    """Response model for a device plugin kind."""

    name: str
    kind: str
    plural: str


def _state_response(controller: Controller, key: ResourceKey) -> ResourceStateResponse:
    state = controller.get_state(key)
    result = controller.last_result(key)
    return ResourceStateResponse(
        kind=key.kind,
        name=key.name,
        state=state.value if state else "",
        success=result.success if result else None,
        message=result.message if result else "",
        action=result.action if result else "",
    )


def create_app(controller: Controller, event_bus: Optional[EventBus] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Routes:
    - Probes: GET /healthz, GET /readyz
    - Kinds: GET /api/v1/kinds
    - State table: GET /api/v1/resources, GET /api/v1/resources/{kind}/{name}
    - Events: GET /api/v1/events (SSE)
    """
    app = FastAPI(
        title="Device Plugin Operator API",
        description="Health and reconcile status of the device plugin operator",
        version="1.0.0",
    )

    @app.get("/healthz")
    async def healthz():
        """Liveness probe."""
        return {"status": "ok", "service": "deviceplugin-operator"}

    @app.get("/readyz")
    async def readyz():
        """Readiness probe; ready once the controller is running."""
        if not controller.running:
            return JSONResponse(
                status_code=503, content={"status": "not ready"}
            )
        return {"status": "ready"}

    @app.get("/api/v1/kinds", response_model=List[KindInfo])
    async def list_kinds():
        """List the device plugin kinds being reconciled."""
        return [
            KindInfo(name=k.name, kind=k.kind, plural=k.plural)
            for k in controller.enabled_kinds()
        ]

    @app.get("/api/v1/resources", response_model=List[ResourceStateResponse])
    async def list_resources(kind: Optional[str] = None):
        """List the reconcile state of every known resource."""
        keys = sorted(controller.states().keys())
        if kind:
            keys = [k for k in keys if k.kind == kind]
        return [_state_response(controller, key) for key in keys]

    @app.get(
        "/api/v1/resources/{kind}/{name}", response_model=ResourceStateResponse
    )
    async def get_resource(kind: str, name: str):
        """Get the reconcile state of one resource."""
        key = ResourceKey(kind, name)
        if controller.get_state(key) is None:
            raise HTTPException(status_code=404, detail="Resource not found")
        return _state_response(controller, key)

    @app.get("/api/v1/events")
    async def stream_events(
        kind: Optional[str] = None, name: Optional[str] = None, replay: bool = False
    ):
        """SSE stream of reconcile events.

        Optionally filter by resource kind and name. With replay, the latest
        event of every matching resource is sent first.
        """
        if not event_bus:
            raise HTTPException(
                status_code=503,
                detail="Event streaming not available",
            )

        def filter_fn(event: ReconcileEvent) -> bool:
            if kind and event.kind != kind:
                return False
            return not name or event.name == name

        subscriber_id, subscription = await event_bus.subscribe(filter_fn, replay=replay)

        async def event_generator():
            try:
                async for event in subscription:
                    yield event.to_sse()
            except asyncio.CancelledError:
                logger.debug(f"Event stream {subscriber_id} cancelled")
            finally:
                await event_bus.unsubscribe(subscriber_id)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    return app


class ApiServer:
    """Runs the API app under uvicorn inside the operator's event loop."""

    def __init__(
        self,
        controller: Controller,
        event_bus: Optional[EventBus] = None,
        config: Optional[APIConfig] = None,
    ):
        self.config = config or APIConfig()
        self.app = create_app(controller, event_bus)
        self.server: Optional[uvicorn.Server] = None

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting API server on {self.config.host}:{self.config.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping API server")
        if self.server:
            self.server.should_exit = True
