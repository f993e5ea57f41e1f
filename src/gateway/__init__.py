"""Gateway API client for WhatsApp gateway deployments.

This package provides:
- A request executor with URL-shape normalization
- A first-success combinator for endpoint fallbacks
- The gateway client (session, messaging, and read operations)
"""

from src.gateway.client import (
    CHAT_SUFFIX,
    DEFAULT_SESSION,
    PROBE_PATHS,
    GatewayClient,
    to_chat_address,
)
from src.gateway.fallback import AllCandidatesFailedError, first_success
from src.gateway.transport import (
    EmptyBody,
    GatewayRequestError,
    JsonBody,
    ParsedResponse,
    RawTextBody,
    RequestExecutor,
)

__all__ = [
    "AllCandidatesFailedError",
    "CHAT_SUFFIX",
    "DEFAULT_SESSION",
    "EmptyBody",
    "GatewayClient",
    "GatewayRequestError",
    "JsonBody",
    "PROBE_PATHS",
    "ParsedResponse",
    "RawTextBody",
    "RequestExecutor",
    "first_success",
    "to_chat_address",
]
