"""Click CLI for managing gateways and driving their connections."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Coroutine
from typing import Any, TypeVar

import click

from src.connection.manager import ConnectionManager
from src.connection.state import InvalidTransitionError
from src.gateway.client import DEFAULT_SESSION, GatewayClient
from src.gateway.transport import GatewayRequestError
from src.models import GatewayConfig, GatewayType
from src.registry.store import GatewayNotFoundError, GatewayRegistry

T = TypeVar("T")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except GatewayRequestError as exc:
        raise click.ClickException(f"Gateway error: {exc.message}") from exc
    except (GatewayNotFoundError, InvalidTransitionError) as exc:
        raise click.ClickException(str(exc)) from exc


def _get(ctx: click.Context, gateway_id: str) -> GatewayConfig:
    registry: GatewayRegistry = ctx.obj["registry"]
    try:
        return registry.get(gateway_id)
    except GatewayNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(data: object) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


@click.group()
@click.option("--db", default="data/gateways.db", envvar="GATEWAY_DB_PATH",
              help="Gateway registry database path.")
@click.option("--timeout", default=30.0, type=float, envvar="GATEWAY_HTTP_TIMEOUT",
              help="Per-request timeout in seconds.")
@click.pass_context
def cli(ctx: click.Context, db: str, timeout: float) -> None:
    """WhatsApp gateway connection CLI."""
    ctx.ensure_object(dict)
    registry = GatewayRegistry(db)

    def client_factory(gateway: GatewayConfig) -> GatewayClient:
        return GatewayClient(gateway.server_url, gateway.api_key, timeout=timeout)

    ctx.obj["registry"] = registry
    ctx.obj["client_factory"] = client_factory
    ctx.obj["manager"] = ConnectionManager(registry, client_factory=client_factory)
    ctx.call_on_close(registry.close)


@cli.command()
@click.argument("name")
@click.argument("server_url")
@click.argument("api_key")
@click.option("--type", "gateway_type", default=GatewayType.CUSTOMERS.value,
              type=click.Choice([t.value for t in GatewayType]), help="Routing tag.")
@click.option("--default", "is_default", is_flag=True, help="Default gateway for its type.")
@click.pass_context
def add(
    ctx: click.Context,
    name: str,
    server_url: str,
    api_key: str,
    gateway_type: str,
    is_default: bool,
) -> None:
    """Register a gateway (starts disconnected)."""
    registry: GatewayRegistry = ctx.obj["registry"]
    gateway = registry.create(
        name=name,
        server_url=server_url,
        api_key=api_key,
        type=GatewayType(gateway_type),
        is_default=is_default,
    )
    click.echo(gateway.id)


@cli.command("list")
@click.option("--type", "gateway_type", default=None,
              type=click.Choice([t.value for t in GatewayType]))
@click.pass_context
def list_gateways(ctx: click.Context, gateway_type: str | None) -> None:
    """List registered gateways."""
    registry: GatewayRegistry = ctx.obj["registry"]
    gateways = registry.list(type=GatewayType(gateway_type) if gateway_type else None)
    _echo_json([
        {
            "id": g.id,
            "name": g.name,
            "type": g.type.value,
            "status": g.status.value,
            "messages_sent": g.messages_sent,
            "messages_received": g.messages_received,
        }
        for g in gateways
    ])


@cli.command()
@click.argument("gateway_id")
@click.pass_context
def remove(ctx: click.Context, gateway_id: str) -> None:
    """Delete a gateway record."""
    registry: GatewayRegistry = ctx.obj["registry"]
    try:
        registry.delete(gateway_id)
    except GatewayNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Removed: {gateway_id}")


@cli.command()
@click.argument("server_url")
@click.argument("api_key")
@click.pass_context
def probe(ctx: click.Context, server_url: str, api_key: str) -> None:
    """Test a server URL and key without registering them."""
    client = GatewayClient(server_url, api_key, timeout=ctx.parent.params["timeout"])
    result = _run(client.probe_connectivity())
    _echo_json(result.model_dump(mode="json"))
    if not result.success:
        ctx.exit(1)


@cli.command()
@click.argument("gateway_id")
@click.pass_context
def connect(ctx: click.Context, gateway_id: str) -> None:
    """Probe a gateway and mark it connected or errored."""
    manager: ConnectionManager = ctx.obj["manager"]
    result = _run(manager.connect(gateway_id))
    if result.success:
        click.echo(f"Connected via {result.matched_endpoint}")
    else:
        raise click.ClickException(f"{result.error}: {result.details or ''}".rstrip(": "))


@cli.command()
@click.argument("gateway_id")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
@click.pass_context
def disconnect(ctx: click.Context, gateway_id: str, yes: bool) -> None:
    """Mark a gateway disconnected (the upstream session keeps running)."""
    gateway = _get(ctx, gateway_id)
    if not yes:
        click.confirm(f"Disconnect gateway '{gateway.name}'?", abort=True)
    manager: ConnectionManager = ctx.obj["manager"]
    _run(manager.disconnect(gateway_id, confirm=True))
    click.echo(f"Disconnected: {gateway.name}")


@cli.command()
@click.argument("gateway_id")
@click.argument("phone")
@click.argument("text")
@click.pass_context
def send(ctx: click.Context, gateway_id: str, phone: str, text: str) -> None:
    """Send a text message and count it."""
    manager: ConnectionManager = ctx.obj["manager"]
    ack = _run(manager.send_and_count(gateway_id, phone, text))
    _echo_json(ack)


@cli.command()
@click.argument("gateway_id")
@click.pass_context
def qr(ctx: click.Context, gateway_id: str) -> None:
    """Print the pairing code of the gateway's session."""
    client: GatewayClient = ctx.obj["client_factory"](_get(ctx, gateway_id))
    _echo_json(_run(client.get_qr()))


@cli.command()
@click.argument("gateway_id")
@click.option("--limit", default=20, show_default=True, help="Maximum messages to show.")
@click.pass_context
def messages(ctx: click.Context, gateway_id: str, limit: int) -> None:
    """Show recent messages across the gateway's 1:1 chats."""
    client: GatewayClient = ctx.obj["client_factory"](_get(ctx, gateway_id))
    _echo_json(_run(client.get_all_messages(DEFAULT_SESSION, limit)))
