"""HTTP surface over the coordination root for agents running out of process."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from convoy.bus.mailbox import MessageBus
from convoy.config.settings import Settings, get_settings
from convoy.gateway.protocol import (
    AckParams,
    ErrorData,
    ErrorResponse,
    InboxResponse,
    MessageData,
    ProjectStatusResponse,
    SendMessageParams,
    StatusData,
    StatusParams,
)
from convoy.infra.errors import ConvoyError, GatewayError
from convoy.infra.init_workspace import init_workspace
from convoy.infra.layout import ProjectLayout
from convoy.infra.logging import setup_logging
from convoy.status.store import StatusStore
from convoy.supervisor.events import EventLog, project
from convoy.worker.registry import FeatureRegistry

logger = structlog.get_logger()

_STATUS_CODES = {
    "INVALID_TRANSITION": 409,
    "NOT_FOUND": 404,
    "MALFORMED_MESSAGE": 422,
}


def create_app(settings: Settings | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan: open the coordination root on startup."""
        resolved = settings or get_settings()
        setup_logging(json_output=resolved.log_json, log_level=resolved.log_level)
        layout = ProjectLayout.from_settings(resolved)
        init_workspace(layout)

        app.state.layout = layout
        app.state.bus = MessageBus(
            layout.mailbox,
            layout.cursors_dir,
            delivery_mode=resolved.bus.delivery_mode,
            poll_interval_s=resolved.bus.poll_interval_s,
        )
        app.state.statuses = StatusStore(layout.status_dir)
        app.state.registry = FeatureRegistry(layout)
        app.state.events = EventLog(layout.events_file)
        logger.info(
            "gateway_started",
            host=resolved.gateway.host,
            port=resolved.gateway.port,
            root=str(layout.root),
        )

        yield

        logger.info("gateway_stopped")

    app = FastAPI(title="convoy gateway", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(ConvoyError)
    async def _convoy_error(request: Request, exc: ConvoyError) -> JSONResponse:
        logger.warning("request_error", code=exc.code, error=str(exc), path=request.url.path)
        body = ErrorResponse(error=ErrorData(code=exc.code, message=str(exc)))
        return JSONResponse(status_code=_STATUS_CODES.get(exc.code, 400), content=body.model_dump())

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    # filesystem-only routes are plain functions so FastAPI runs them in its threadpool

    @app.get("/status")
    def project_status(request: Request) -> ProjectStatusResponse:
        state = request.app.state
        names = state.registry.names()
        snapshot = state.statuses.snapshot(names)
        projection = project(state.events.read())
        return ProjectStatusResponse(
            features={
                name: StatusData.from_status(status) if status else None
                for name, status in snapshot.items()
            },
            cycles=projection.cycles,
            terminal=projection.terminal,
            reason=projection.reason,
            markers=sorted(projection.markers),
            pr_outcome=projection.pr_outcome,
        )

    @app.post("/messages")
    async def send_message(request: Request, params: SendMessageParams) -> MessageData:
        bus: MessageBus = request.app.state.bus
        message = await bus.send(params.sender, params.recipient, params.body)
        return MessageData.from_message(message)

    @app.get("/messages/{agent}")
    async def inbox(
        request: Request, agent: str, wait: float = 0.0, history: bool = False
    ) -> InboxResponse:
        bus: MessageBus = request.app.state.bus
        if history:
            messages = await asyncio.to_thread(bus.history, agent)
        elif wait > 0:
            messages = await bus.wait(agent, timeout=wait)
        else:
            messages = await asyncio.to_thread(bus.receive, agent)
        return InboxResponse(
            agent=agent,
            cursor=await asyncio.to_thread(bus.cursor, agent),
            messages=[MessageData.from_message(message) for message in messages],
        )

    @app.post("/messages/{agent}/ack")
    def ack(request: Request, agent: str, params: AckParams) -> InboxResponse:
        bus: MessageBus = request.app.state.bus
        target = next((m for m in bus.history(agent) if m.seq == params.seq), None)
        if target is None:
            raise GatewayError(f"no message {params.seq} for {agent}", code="NOT_FOUND")
        bus.ack(agent, target)
        return InboxResponse(
            agent=agent,
            cursor=bus.cursor(agent),
            messages=[MessageData.from_message(message) for message in bus.receive(agent)],
        )

    @app.post("/status/{agent}")
    def post_status(request: Request, agent: str, params: StatusParams) -> StatusData:
        statuses: StatusStore = request.app.state.statuses
        entry = statuses.append(agent, params.state, params.note)
        return StatusData.from_status(entry)

    return app
