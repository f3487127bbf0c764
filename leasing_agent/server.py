from __future__ import annotations

import contextlib
import logging
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from .clock import Clock, RealClock
from .config import AgentConfig
from .conversation_store import ConversationStore, build_conversation_store
from .dispatcher import AckAction, SessionEventDispatcher
from .llm_client import LLMClient
from .logs import configure_logging, log_event
from .metrics import CompositeMetrics, M, Metrics
from .prom_export import GLOBAL_PROM
from .prompt import build_system_prompt, build_welcome_message
from .protocol import WebhookValidationError, parse_webhook_json
from .provider import build_booking_service, build_listing_provider, build_llm_client
from .runtime_config import RuntimeConfigError, get_runtime_config, set_runtime_config, validate_update
from .sessions import SessionBusyError, SessionRegistry
from .tools import BookingService, ListingProvider, ToolRegistry


_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def create_app(
    *,
    cfg: Optional[AgentConfig] = None,
    clock: Optional[Clock] = None,
    llm: Optional[LLMClient] = None,
    store: Optional[ConversationStore] = None,
    listings: Optional[ListingProvider] = None,
    booking: Optional[BookingService] = None,
    metrics: Optional[Metrics] = None,
) -> FastAPI:
    cfg = cfg or AgentConfig.from_env()
    clock = clock or RealClock()
    local_metrics = metrics if metrics is not None else Metrics()
    sink = CompositeMetrics(local_metrics, GLOBAL_PROM)
    llm = llm or build_llm_client(cfg)
    store = store or build_conversation_store(cfg, metrics=sink)
    listings = listings or build_listing_provider(cfg, llm=llm, clock=clock)
    booking = booking or build_booking_service(cfg)
    registry = SessionRegistry(store, max_pending=cfg.session_queue_max, metrics=sink)

    def tools_for_session(session_id: str) -> ToolRegistry:
        return ToolRegistry(
            session_id=session_id,
            clock=clock,
            listings=listings,
            booking=booking,
            timeout_ms=cfg.tool_timeout_ms,
            listing_count=cfg.listing_count,
            metrics=sink,
        )

    dispatcher = SessionEventDispatcher(
        cfg=cfg,
        registry=registry,
        llm=llm,
        tools_for_session=tools_for_session,
        system_prompt=lambda: build_system_prompt(get_runtime_config()),
        welcome_message=lambda: build_welcome_message(get_runtime_config()),
        clock=clock,
        metrics=sink,
    )

    @contextlib.asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        log_event("server", "startup", llm_provider=cfg.llm_provider, store_backend=cfg.store_backend)
        try:
            yield
        finally:
            await dispatcher.cancel_all()
            await llm.aclose()
            log_event("server", "shutdown")

    app = FastAPI(lifespan=lifespan)
    app.state.cfg = cfg
    app.state.metrics = local_metrics
    app.state.dispatcher = dispatcher
    app.state.registry = registry
    app.state.store = store

    @app.get("/healthz")
    async def healthz() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/metrics")
    async def metrics_route() -> PlainTextResponse:
        return PlainTextResponse(GLOBAL_PROM.render())

    @app.post("/api/agent")
    async def agent_webhook(request: Request) -> Response:
        raw = await request.body()
        try:
            event = parse_webhook_json(raw)
        except WebhookValidationError as e:
            sink.inc(M["events_invalid_total"], 1)
            log_event("server", "webhook_rejected", level=logging.WARNING, reason=str(e))
            return JSONResponse({"error": str(e)}, status_code=400)

        try:
            action = dispatcher.handle(event)
        except SessionBusyError as e:
            return JSONResponse({"error": "session busy", "session_id": e.session_id}, status_code=429)

        if isinstance(action, AckAction):
            return PlainTextResponse("OK", status_code=200)
        return StreamingResponse(
            action.stream.iter_sse(),
            media_type="text/event-stream",
            headers=_SSE_HEADERS,
        )

    @app.post("/api/runtime-config")
    async def runtime_config_route(request: Request) -> JSONResponse:
        try:
            body: Any = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid request payload."}, status_code=400)
        try:
            update = validate_update(body)
        except RuntimeConfigError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        set_runtime_config(docs_url=update.docs_url, company_name=update.company_name)
        log_event("server", "runtime_config_updated", company_name=update.company_name)
        return JSONResponse({"success": True})

    return app


def build_default_app() -> FastAPI:
    cfg = AgentConfig.from_env()
    configure_logging(structured=cfg.structured_logging)
    return create_app(cfg=cfg)
