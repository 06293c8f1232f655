"""Webhook server - receives inbound SMS and delivery receipts from the SMS bridge."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel, ConfigDict, Field

from database.db import db
from orchestrator.config import Config
from orchestrator.container import ServiceContainer
from orchestrator.main import Orchestrator

# Don't configure logging here - it's configured in orchestrator/main.py
logger = logging.getLogger(__name__)


class _InboundSmsPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_phone: str = Field(alias="from", min_length=1)
    to_phone: Optional[str] = Field(default=None, alias="to")
    message: str


class _StatusPayload(BaseModel):
    message_id: int
    status: str = Field(pattern="^(sent|delivered|failed)$")
    error: Optional[str] = None


def _truncate(s: str, *, max_len: int = 140) -> str:
    s = (s or "").replace("\n", " ").strip()
    if len(s) <= max_len:
        return s
    return s[: max_len - 1] + "..."


def create_app(config: Optional[Config] = None, container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the webhook app.

    With `container` given, the caller owns the services and the app only
    routes requests; otherwise the lifespan starts and stops a full
    orchestrator.
    """
    config = config or (container.config if container else Config.from_env())
    state = {"container": container}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if state["container"] is not None:
            yield
            return

        logger.info("Starting webhook server...")
        orchestrator = Orchestrator(config)
        await orchestrator.initialize()
        await orchestrator.start()
        state["container"] = orchestrator.container
        try:
            yield
        finally:
            logger.info("Shutting down webhook server...")
            await orchestrator.stop()
            state["container"] = None

    app = FastAPI(
        lifespan=lifespan,
        title="SMS Orchestrator",
        description="Inbound SMS webhook for programs, live agents and broadcasts",
        version="1.0.0",
    )

    def _require_container() -> ServiceContainer:
        if state["container"] is None:
            raise HTTPException(status_code=503, detail="orchestrator not ready")
        return state["container"]

    def _authorized(request: Request) -> bool:
        if not config.bridge_api_key:
            return True
        return request.headers.get("X-API-Key", "") == config.bridge_api_key

    @app.post("/sms/inbound")
    async def inbound_sms(payload: _InboundSmsPayload, request: Request):
        """Inbound SMS delivered by the bridge."""
        if not _authorized(request):
            logger.warning("Rejected inbound SMS: invalid or missing API key")
            return Response(status_code=401)
        container = _require_container()
        logger.info(f"sms_in from={payload.from_phone} len={len(payload.message)} text=\"{_truncate(payload.message)}\"")
        handled_by = await container.inbound_router.process_incoming_message(
            payload.from_phone, payload.message, payload.to_phone
        )
        return {"ok": handled_by != "error", "handled_by": handled_by}

    @app.post("/sms/status")
    async def delivery_status(payload: _StatusPayload, request: Request):
        """Delivery receipt for a message the gateway sent."""
        if not _authorized(request):
            logger.warning("Rejected status update: invalid or missing API key")
            return Response(status_code=401)
        container = _require_container()
        updated = await container.gateway.update_message_status(payload.message_id, payload.status, payload.error)
        if not updated:
            raise HTTPException(status_code=404, detail="message not found")
        return {"ok": True}

    @app.get("/health")
    async def health():
        database_ok = await db.health_check()
        container = state["container"]
        transport_ok = await container.transport.health() if container is not None else False
        return {
            "status": "ok" if database_ok and transport_ok else "degraded",
            "database": database_ok,
            "transport": transport_ok,
            "ready": state["container"] is not None,
            "environment": config.environment,
        }

    return app


app = create_app()
