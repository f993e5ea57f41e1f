"""FastAPI application exposing gateway management and the inbound webhook."""

from __future__ import annotations

import json
import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from src.connection.manager import ConnectionManager, DisconnectNotConfirmedError
from src.connection.state import InvalidTransitionError
from src.gateway.client import DEFAULT_SESSION, GatewayClient
from src.gateway.transport import GatewayRequestError
from src.models import GatewayConfig, GatewayType
from src.registry.store import GatewayNotFoundError, GatewayRegistry

logger = logging.getLogger(__name__)


class GatewayCreateRequest(BaseModel):
    name: str
    server_url: str
    api_key: str
    type: GatewayType = GatewayType.CUSTOMERS
    is_default: bool = False
    is_active: bool = True


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    db_path = os.environ.get("GATEWAY_DB_PATH", "data/gateways.db")
    timeout = float(os.environ.get("GATEWAY_HTTP_TIMEOUT", "30"))

    registry = GatewayRegistry(db_path)

    def client_factory(gateway: GatewayConfig) -> GatewayClient:
        return GatewayClient(gateway.server_url, gateway.api_key, timeout=timeout)

    manager = ConnectionManager(registry, client_factory=client_factory)
    return create_app(registry, manager)


async def _json_body(request: Request) -> dict[str, object]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def create_app(
    registry: GatewayRegistry,
    manager: ConnectionManager | None = None,
) -> FastAPI:
    """Create the gateway management app."""
    manager = manager or ConnectionManager(registry)
    app = FastAPI(docs_url=None, redoc_url=None)

    @app.exception_handler(GatewayNotFoundError)
    async def not_found(request: Request, exc: GatewayNotFoundError) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=404)

    @app.exception_handler(GatewayRequestError)
    async def upstream_failed(request: Request, exc: GatewayRequestError) -> JSONResponse:
        logger.warning("Gateway call failed on %s: %s", request.url.path, exc.message)
        return JSONResponse({"error": exc.message}, status_code=502)

    @app.exception_handler(InvalidTransitionError)
    async def conflicting_state(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=409)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/gateways")
    async def list_gateways(
        type: GatewayType | None = None, active_only: bool = False,
    ) -> JSONResponse:
        gateways = registry.list(type=type, active_only=active_only)
        return JSONResponse([g.public_dict() for g in gateways])

    @app.post("/gateways")
    async def create_gateway(request: Request) -> JSONResponse:
        try:
            data = GatewayCreateRequest.model_validate(await _json_body(request))
        except ValidationError as exc:
            return JSONResponse(
                {"error": "Invalid gateway", "details": [e["msg"] for e in exc.errors()]},
                status_code=422,
            )
        gateway = registry.create(**data.model_dump())
        logger.info("Created gateway %s (%s)", gateway.name, gateway.id)
        return JSONResponse(gateway.public_dict(), status_code=201)

    @app.get("/gateways/{gateway_id}")
    async def get_gateway(gateway_id: str) -> JSONResponse:
        return JSONResponse(registry.get(gateway_id).public_dict())

    @app.delete("/gateways/{gateway_id}")
    async def delete_gateway(gateway_id: str) -> JSONResponse:
        registry.delete(gateway_id)
        return JSONResponse({"status": "deleted", "id": gateway_id})

    @app.post("/gateways/{gateway_id}/connect")
    async def connect(gateway_id: str) -> JSONResponse:
        result = await manager.connect(gateway_id)
        return JSONResponse({
            "state": manager.state_of(gateway_id).value,
            "result": result.model_dump(mode="json"),
        })

    @app.post("/gateways/{gateway_id}/disconnect")
    async def disconnect(gateway_id: str, request: Request) -> JSONResponse:
        body = await _json_body(request)
        try:
            await manager.disconnect(gateway_id, confirm=body.get("confirm") is True)
        except DisconnectNotConfirmedError as exc:
            return JSONResponse({"error": str(exc)}, status_code=409)
        return JSONResponse({"state": manager.state_of(gateway_id).value})

    @app.post("/gateways/{gateway_id}/send")
    async def send(gateway_id: str, request: Request) -> JSONResponse:
        body = await _json_body(request)
        phone = body.get("phone")
        text = body.get("text")
        if not isinstance(phone, str) or not isinstance(text, str) or not phone or not text:
            return JSONResponse({"error": "phone and text are required"}, status_code=400)
        ack = await manager.send_and_count(gateway_id, phone, text)
        return JSONResponse({"status": "sent", "ack": ack})

    @app.get("/gateways/{gateway_id}/qr")
    async def qr(gateway_id: str) -> JSONResponse:
        client = manager.client_for(registry.get(gateway_id))
        return JSONResponse(await client.get_qr())

    @app.get("/gateways/{gateway_id}/messages")
    async def messages(gateway_id: str, limit: int = 20) -> JSONResponse:
        client = manager.client_for(registry.get(gateway_id))
        return JSONResponse(await client.get_all_messages(DEFAULT_SESSION, limit))

    @app.post("/gateways/{gateway_id}/webhook")
    async def setup_webhook(gateway_id: str, request: Request) -> JSONResponse:
        body = await _json_body(request)
        url = body.get("webhook_url")
        if not isinstance(url, str) or not url:
            return JSONResponse({"error": "webhook_url is required"}, status_code=400)
        ok = await manager.setup_webhook(gateway_id, url)
        return JSONResponse({"configured": ok}, status_code=200 if ok else 502)

    @app.post("/webhook/{gateway_id}")
    async def inbound(gateway_id: str, request: Request) -> JSONResponse:
        registry.get(gateway_id)
        counted = manager.record_inbound_event(gateway_id, await _json_body(request))
        return JSONResponse({"counted": counted})

    return app
