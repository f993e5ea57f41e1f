"""Connection manager: per-gateway connection state and message counters.

Each gateway record gets its own in-memory state; nothing mutable is
shared between gateways, so operations on different gateways can run
concurrently. Results are persisted back to the gateway registry.
"""

from __future__ import annotations

import inspect
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any

from src.connection.state import (
    ConnectionEvent,
    from_status,
    to_status,
    transition,
)
from src.gateway.client import (
    DEFAULT_SESSION,
    PROBE_FAILURE_ERROR,
    GatewayClient,
)
from src.gateway.transport import GatewayRequestError
from src.models import (
    ConnectionAttemptResult,
    ConnectionState,
    GatewayConfig,
    RemoteMessage,
)
from src.registry.store import GatewayNotFoundError, GatewayRegistry

logger = logging.getLogger(__name__)

ClientFactory = Callable[[GatewayConfig], GatewayClient]
Observer = Callable[[GatewayConfig, ConnectionState], Any]
MessageHandler = Callable[[RemoteMessage], Awaitable[Any]]

WEBHOOK_EVENTS = ["message", "message.any"]
SEEN_MESSAGE_LIMIT = 1000


class DisconnectNotConfirmedError(Exception):
    """Raised when disconnect() is called without explicit confirmation."""

    def __init__(self, gateway_id: str) -> None:
        self.gateway_id = gateway_id
        super().__init__(f"Disconnect of gateway {gateway_id} requires confirmation")


def default_client_factory(gateway: GatewayConfig) -> GatewayClient:
    return GatewayClient(gateway.server_url, gateway.api_key)


def _phone_from_session(session: Any) -> str | None:
    if not isinstance(session, dict):
        return None
    me = session.get("me")
    if not isinstance(me, dict) or not me.get("id"):
        return None
    return str(me["id"]).split("@", 1)[0]


def _remember(seen: OrderedDict[str, None], key: str) -> bool:
    """Add ``key`` to a bounded seen-set; False if it was already there."""
    if key in seen:
        return False
    seen[key] = None
    if len(seen) > SEEN_MESSAGE_LIMIT:
        seen.popitem(last=False)
    return True


def _message_key(message: RemoteMessage, chat_id: str) -> str:
    if message.id:
        return message.id
    return f"{chat_id}:{message.timestamp}:{message.body}"


class ConnectionManager:
    """Drives connect/disconnect/send for the gateways held in a registry."""

    def __init__(
        self,
        registry: GatewayRegistry,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._registry = registry
        self._client_factory = client_factory or default_client_factory
        self._states: dict[str, ConnectionState] = {}
        self._watermarks: dict[str, dict[str, float]] = {}
        self._processed: dict[str, OrderedDict[str, None]] = {}
        self._seen_events: dict[str, OrderedDict[str, None]] = {}
        self._observers: list[Observer] = []

    # ---- state ----

    def add_observer(self, observer: Observer) -> None:
        """Register a callback invoked with (gateway, state) after connect/disconnect."""
        self._observers.append(observer)

    def state_of(self, gateway_id: str) -> ConnectionState:
        state = self._states.get(gateway_id)
        if state is not None:
            return state
        return from_status(self._registry.get(gateway_id).status)

    def client_for(self, gateway: GatewayConfig) -> GatewayClient:
        return self._client_factory(gateway)

    # ---- connect / disconnect ----

    async def connect(self, gateway_id: str) -> ConnectionAttemptResult:
        """Probe the gateway and persist the outcome.

        A successful probe is followed by a session lookup to learn the
        paired phone number, so a connect makes up to two upstream calls.
        Re-connecting an already connected gateway simply re-probes it.
        If the call is cancelled while connecting the previous state is restored.
        """
        gateway = self._registry.get(gateway_id)
        current = self._states.get(gateway_id, from_status(gateway.status))
        client = self.client_for(gateway)
        self._states[gateway_id] = transition(current, ConnectionEvent.CONNECT)
        logger.info("Connecting gateway %s (%s)", gateway.name, gateway_id)

        try:
            result, fields = await self._check_connectivity(gateway_id, client)
        except BaseException:
            self._states[gateway_id] = current
            raise

        event = ConnectionEvent.PROBE_OK if result.success else ConnectionEvent.PROBE_FAIL
        state = transition(ConnectionState.CONNECTING, event)
        self._states[gateway_id] = state

        updated = self._persist(gateway_id, "connect", status=to_status(state), **fields)
        self._record(
            gateway_id,
            "connect",
            "success" if result.success else "failure",
            matched_endpoint=result.matched_endpoint,
            error=result.error,
        )
        await self._notify(updated or gateway, state)
        return result

    async def _check_connectivity(
        self,
        gateway_id: str,
        client: GatewayClient,
    ) -> tuple[ConnectionAttemptResult, dict[str, Any]]:
        try:
            result = await client.probe_connectivity()
        except Exception as exc:
            logger.exception("Unexpected failure probing gateway %s", gateway_id)
            result = ConnectionAttemptResult(
                success=False, error=str(exc) or PROBE_FAILURE_ERROR,
            )

        if not result.success:
            return result, {"error_message": result.error or PROBE_FAILURE_ERROR}

        fields: dict[str, Any] = {"session_id": DEFAULT_SESSION, "error_message": None}
        phone = _phone_from_session(await client.get_session())
        if phone:
            fields["phone_number"] = phone
        return result, fields

    async def disconnect(self, gateway_id: str, confirm: bool = False) -> GatewayConfig | None:
        """Mark the gateway disconnected. The upstream session is left running."""
        if not confirm:
            raise DisconnectNotConfirmedError(gateway_id)

        gateway = self._registry.get(gateway_id)
        current = self._states.get(gateway_id, from_status(gateway.status))
        state = transition(current, ConnectionEvent.DISCONNECT)
        self._states[gateway_id] = state

        updated = self._persist(
            gateway_id, "disconnect", status=to_status(state), session_id=None,
        )
        self._record(gateway_id, "disconnect", "success")
        await self._notify(updated or gateway, state)
        return updated

    # ---- sending ----

    async def send_and_count(self, gateway_id: str, phone: str, text: str) -> Any:
        """Send a text; on success add exactly one to messages_sent."""
        return await self._send_and_count(
            gateway_id,
            "send_text",
            lambda client: client.send_text(DEFAULT_SESSION, phone, text),
        )

    async def send_image_and_count(
        self,
        gateway_id: str,
        phone: str,
        image_url: str,
        caption: str | None = None,
    ) -> Any:
        return await self._send_and_count(
            gateway_id,
            "send_image",
            lambda client: client.send_image(DEFAULT_SESSION, phone, image_url, caption),
        )

    async def send_file_and_count(
        self,
        gateway_id: str,
        phone: str,
        file_url: str,
        filename: str | None = None,
    ) -> Any:
        return await self._send_and_count(
            gateway_id,
            "send_file",
            lambda client: client.send_file(DEFAULT_SESSION, phone, file_url, filename),
        )

    async def _send_and_count(
        self,
        gateway_id: str,
        action: str,
        send: Callable[[GatewayClient], Awaitable[Any]],
    ) -> Any:
        gateway = self._registry.get(gateway_id)
        ack = await send(self.client_for(gateway))
        self._count(gateway_id, sent=1)
        self._record(gateway_id, action, "success")
        return ack

    # ---- receiving ----

    async def receive_and_acknowledge(
        self,
        gateway_id: str,
        handler: MessageHandler,
        limit: int = 20,
    ) -> list[RemoteMessage]:
        """Hand new incoming messages to ``handler``, then acknowledge them.

        A message is acknowledged and counted only after the handler
        returns. If the handler raises, that message stays unacknowledged
        and the exception propagates; earlier messages remain processed.
        Messages are recognised by id, so several messages sharing one
        timestamp are each delivered once.
        """
        gateway = self._registry.get(gateway_id)
        client = self.client_for(gateway)
        raw_messages = await client.get_all_messages(DEFAULT_SESSION, limit)
        watermarks = self._watermarks.setdefault(gateway_id, {})
        seen = self._processed.setdefault(gateway_id, OrderedDict())

        # Oldest first so the per-chat watermark only moves forward.
        incoming = sorted(
            (RemoteMessage.from_upstream(m) for m in raw_messages),
            key=lambda m: m.timestamp,
        )
        processed: list[RemoteMessage] = []
        for message in incoming:
            if message.from_me or not (message.body or "").strip():
                continue
            chat_id = message.chat_id or message.from_ or ""
            last_seen = watermarks.get(chat_id)
            if last_seen is not None and message.timestamp < last_seen:
                continue
            key = _message_key(message, chat_id)
            if key in seen:
                continue

            await handler(message)

            try:
                await client.mark_messages_as_read(
                    DEFAULT_SESSION, chat_id, [message.id] if message.id else None,
                )
            except GatewayRequestError as exc:
                logger.warning(
                    "Read receipt for %s in %s failed: %s", message.id, chat_id, exc,
                )

            _remember(seen, key)
            watermarks[chat_id] = message.timestamp
            self._count(gateway_id, received=1)
            processed.append(message)

        if processed:
            self._record(gateway_id, "receive", "success", count=len(processed))
        return processed

    def record_inbound_event(self, gateway_id: str, event: dict[str, Any]) -> bool:
        """Count a message pushed by the gateway's webhook.

        Only ``message`` events from other parties count, and each message
        id only once. Returns True when the counter was incremented.
        """
        if event.get("event") != "message":
            return False
        payload = event.get("payload")
        if not isinstance(payload, dict) or payload.get("fromMe"):
            return False

        message_id = payload.get("id")
        if message_id:
            seen = self._seen_events.setdefault(gateway_id, OrderedDict())
            if not _remember(seen, str(message_id)):
                return False

        if self._count(gateway_id, received=1) is None:
            return False
        self._record(gateway_id, "webhook", "success", message_id=message_id)
        return True

    # ---- webhook setup ----

    async def setup_webhook(self, gateway_id: str, webhook_url: str) -> bool:
        """Point the gateway's session webhooks at ``webhook_url``.

        A working session gets its config patched; otherwise a failed
        session is removed and a new one is created with the webhook.
        """
        gateway = self._registry.get(gateway_id)
        client = self.client_for(gateway)
        webhook = {
            "url": webhook_url,
            "events": WEBHOOK_EVENTS,
            "headers": {"X-Gateway-Id": gateway.id},
        }

        try:
            session = await client.get_session()
            status = session.get("status") if isinstance(session, dict) else None
            if status == "WORKING":
                await client.update_session_config({"webhooks": [webhook]})
            else:
                if status == "FAILED":
                    await client.delete_session()
                await client.create_session(config={"webhooks": [webhook]})
        except GatewayRequestError as exc:
            self._record(gateway_id, "setup_webhook", "failure", error=exc.message)
            return False

        if self._persist(gateway_id, "setup_webhook", webhook_url=webhook_url) is None:
            return False
        self._record(gateway_id, "setup_webhook", "success", webhook_url=webhook_url)
        return True

    # ---- helpers ----

    def _persist(self, gateway_id: str, operation: str, **fields: Any) -> GatewayConfig | None:
        try:
            return self._registry.update(gateway_id, **fields)
        except GatewayNotFoundError:
            logger.warning(
                "Gateway %s was deleted during %s; result not persisted",
                gateway_id, operation,
            )
            return None

    def _count(self, gateway_id: str, sent: int = 0, received: int = 0) -> GatewayConfig | None:
        try:
            return self._registry.increment_counters(gateway_id, sent=sent, received=received)
        except GatewayNotFoundError:
            logger.warning("Gateway %s was deleted; counters not updated", gateway_id)
            return None

    async def _notify(self, gateway: GatewayConfig, state: ConnectionState) -> None:
        for observer in self._observers:
            try:
                outcome = observer(gateway, state)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Connection observer failed for gateway %s", gateway.id)

    def _record(self, gateway_id: str, action: str, result: str, **details: Any) -> None:
        level = logging.INFO if result == "success" else logging.WARNING
        logger.log(
            level,
            "Gateway %s %s %s%s",
            gateway_id,
            action,
            result,
            "".join(f" {k}={v}" for k, v in details.items() if v is not None),
        )
