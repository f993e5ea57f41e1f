"""Shared test fixtures for the WhatsApp gateway connector."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest

from src.gateway.client import GatewayClient
from src.models import GatewayConfig
from src.registry.store import GatewayRegistry

SERVER_URL = "http://waha.test"
API_KEY = "secret-key-1234"

Route = tuple[int, Any] | Callable[[httpx.Request], httpx.Response]


class FakeGateway:
    """Route table served through httpx.MockTransport; records every request.

    Routes map ``(method, path)`` to either ``(status, body)`` or a
    callable returning a response. Dict/list bodies are sent as JSON,
    strings as plain text, None as an empty body. Unknown routes get 404.
    """

    def __init__(self, routes: dict[tuple[str, str], Route] | None = None) -> None:
        self.routes: dict[tuple[str, str], Route] = dict(routes or {})
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "Not Found"})
        if callable(route):
            return route(request)
        status, body = route
        if body is None:
            return httpx.Response(status)
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    @property
    def calls(self) -> list[tuple[str, str]]:
        return [(r.method, r.url.path) for r in self.requests]

    def json_body(self, index: int = -1) -> Any:
        return json.loads(self.requests[index].content)

    def client(self, server_url: str = SERVER_URL, api_key: str = API_KEY) -> GatewayClient:
        return GatewayClient(server_url, api_key, transport=self.transport)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def registry_path(tmp_path: Path) -> str:
    """Temporary database path for registry tests."""
    return str(tmp_path / "gateways.db")


@pytest.fixture
def registry(registry_path: str) -> Iterator[GatewayRegistry]:
    reg = GatewayRegistry(registry_path)
    yield reg
    reg.close()


# --- Factory functions for test data ---


def make_gateway(registry: GatewayRegistry, **kwargs: Any) -> GatewayConfig:
    """Create a gateway record with sensible defaults."""
    defaults: dict[str, Any] = {
        "name": "Main line",
        "server_url": SERVER_URL,
        "api_key": API_KEY,
    }
    defaults.update(kwargs)
    return registry.create(**defaults)


def make_upstream_message(**kwargs: Any) -> dict[str, Any]:
    """Factory for a message as the gateway returns it."""
    defaults: dict[str, Any] = {
        "id": "false_967770123456@c.us_AAA",
        "from": "967770123456@c.us",
        "fromMe": False,
        "timestamp": 1_700_000_000,
        "body": "hello",
        "hasMedia": False,
    }
    defaults.update(kwargs)
    return defaults
