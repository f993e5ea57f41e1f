"""Tests for the gateway CLI."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

from click.testing import CliRunner

from src.connection.cli import cli
from src.gateway.client import GatewayClient
from src.models import GatewayStatus
from src.registry.store import GatewayRegistry
from tests.conftest import FakeGateway


def _invoke(tmp_path: Path, *args: str, input: str | None = None):
    runner = CliRunner()
    return runner.invoke(
        cli,
        ["--db", str(tmp_path / "gw.db"), *args],
        input=input,
    )


def _add(tmp_path: Path, name: str = "Main") -> str:
    result = _invoke(tmp_path, "add", name, "http://waha.test", "secret-key-1234")
    assert result.exit_code == 0
    return result.output.strip()


def _stored(tmp_path: Path, gateway_id: str):
    registry = GatewayRegistry(str(tmp_path / "gw.db"))
    try:
        return registry.get(gateway_id)
    finally:
        registry.close()


def _patched_client(fake: FakeGateway):
    return patch(
        "src.connection.cli.GatewayClient",
        side_effect=lambda url, key, timeout: GatewayClient(url, key, transport=fake.transport),
    )


def test_add_and_list(tmp_path: Path) -> None:
    gateway_id = _add(tmp_path)
    result = _invoke(tmp_path, "list")
    assert result.exit_code == 0
    listed = json.loads(result.output)
    assert listed[0]["id"] == gateway_id
    assert listed[0]["status"] == "disconnected"
    assert "api_key" not in listed[0]


def test_list_filters_by_type(tmp_path: Path) -> None:
    _add(tmp_path)
    result = _invoke(tmp_path, "list", "--type", "providers")
    assert json.loads(result.output) == []


def test_remove_unknown_fails(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "remove", "nope")
    assert result.exit_code != 0
    assert "Gateway not found" in result.output


def test_connect_success(tmp_path: Path) -> None:
    gateway_id = _add(tmp_path)
    fake = FakeGateway({("GET", "/api/sessions"): (200, [])})
    with _patched_client(fake):
        result = _invoke(tmp_path, "connect", gateway_id)
    assert result.exit_code == 0
    assert "/api/sessions" in result.output
    assert _stored(tmp_path, gateway_id).status is GatewayStatus.CONNECTED


def test_connect_failure_exits_nonzero(tmp_path: Path) -> None:
    gateway_id = _add(tmp_path)
    with _patched_client(FakeGateway()):
        result = _invoke(tmp_path, "connect", gateway_id)
    assert result.exit_code == 1
    assert "connection failed" in result.output
    assert _stored(tmp_path, gateway_id).status is GatewayStatus.ERROR


def test_disconnect_prompt_declined(tmp_path: Path) -> None:
    gateway_id = _add(tmp_path)
    result = _invoke(tmp_path, "disconnect", gateway_id, input="n\n")
    assert result.exit_code == 1
    assert "Disconnect gateway 'Main'?" in result.output


def test_disconnect_with_yes(tmp_path: Path) -> None:
    gateway_id = _add(tmp_path)
    result = _invoke(tmp_path, "disconnect", gateway_id, "--yes")
    assert result.exit_code == 0
    assert _stored(tmp_path, gateway_id).status is GatewayStatus.DISCONNECTED


def test_send_counts_message(tmp_path: Path) -> None:
    gateway_id = _add(tmp_path)
    fake = FakeGateway({("POST", "/api/sendText"): (201, {"id": "m1"})})
    with _patched_client(fake):
        result = _invoke(tmp_path, "send", gateway_id, "+967 770-123456", "Hello")
    assert result.exit_code == 0
    assert json.loads(result.output) == {"id": "m1"}
    assert fake.json_body()["chatId"] == "967770123456@c.us"
    assert _stored(tmp_path, gateway_id).messages_sent == 1


def test_send_failure_reports_gateway_error(tmp_path: Path) -> None:
    gateway_id = _add(tmp_path)
    fake = FakeGateway({("POST", "/api/sendText"): (500, {"message": "not ready"})})
    with _patched_client(fake):
        result = _invoke(tmp_path, "send", gateway_id, "1234", "Hello")
    assert result.exit_code == 1
    assert "not ready" in result.output
    assert _stored(tmp_path, gateway_id).messages_sent == 0


def test_probe_without_registering(tmp_path: Path) -> None:
    fake = FakeGateway({("GET", "/sessions"): (200, [])})
    with _patched_client(fake):
        result = _invoke(tmp_path, "probe", "http://waha.test", "k")
    assert result.exit_code == 0
    assert json.loads(result.output)["matched_endpoint"] == "/sessions"
