"""Per-gateway connection state machine."""

from __future__ import annotations

from enum import Enum

from src.models import ConnectionState, GatewayStatus


class ConnectionEvent(str, Enum):
    CONNECT = "connect"
    PROBE_OK = "probe_ok"
    PROBE_FAIL = "probe_fail"
    DISCONNECT = "disconnect"


class InvalidTransitionError(Exception):
    """Raised when an event is not allowed in the current state."""

    def __init__(self, state: ConnectionState, event: ConnectionEvent) -> None:
        self.state = state
        self.event = event
        super().__init__(f"Cannot apply '{event.value}' in state '{state.value}'")


TRANSITIONS: dict[tuple[ConnectionState, ConnectionEvent], ConnectionState] = {
    (ConnectionState.DISCONNECTED, ConnectionEvent.CONNECT): ConnectionState.CONNECTING,
    (ConnectionState.ERROR, ConnectionEvent.CONNECT): ConnectionState.CONNECTING,
    # Re-probe of a live connection
    (ConnectionState.CONNECTED, ConnectionEvent.CONNECT): ConnectionState.CONNECTING,
    (ConnectionState.CONNECTING, ConnectionEvent.PROBE_OK): ConnectionState.CONNECTED,
    (ConnectionState.CONNECTING, ConnectionEvent.PROBE_FAIL): ConnectionState.ERROR,
    (ConnectionState.CONNECTED, ConnectionEvent.DISCONNECT): ConnectionState.DISCONNECTED,
    (ConnectionState.ERROR, ConnectionEvent.DISCONNECT): ConnectionState.DISCONNECTED,
    (ConnectionState.DISCONNECTED, ConnectionEvent.DISCONNECT): ConnectionState.DISCONNECTED,
}


def transition(state: ConnectionState, event: ConnectionEvent) -> ConnectionState:
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(state, event) from None


def from_status(status: GatewayStatus) -> ConnectionState:
    return ConnectionState(status.value)


def to_status(state: ConnectionState) -> GatewayStatus:
    """Map a settled state to its persisted status; CONNECTING has none."""
    if state is ConnectionState.CONNECTING:
        raise ValueError("The connecting state is never persisted")
    return GatewayStatus(state.value)
