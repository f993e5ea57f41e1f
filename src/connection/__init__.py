"""Per-gateway connection management.

This package provides:
- The connection state machine (disconnected/connecting/connected/error)
- The connection manager that persists outcomes and counters
"""

from src.connection.manager import (
    ConnectionManager,
    DisconnectNotConfirmedError,
    default_client_factory,
)
from src.connection.state import (
    ConnectionEvent,
    InvalidTransitionError,
    transition,
)

__all__ = [
    "ConnectionEvent",
    "ConnectionManager",
    "DisconnectNotConfirmedError",
    "InvalidTransitionError",
    "default_client_factory",
    "transition",
]
