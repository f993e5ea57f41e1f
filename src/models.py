"""Shared Pydantic data models for the WhatsApp gateway connector."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class GatewayType(str, Enum):
    """Routing tag for a gateway; not a protocol concept."""

    CUSTOMERS = "customers"
    PROVIDERS = "providers"
    EMPLOYEES = "employees"


class GatewayStatus(str, Enum):
    """Connection status as persisted on the gateway record."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"


class ConnectionState(str, Enum):
    """In-memory connection state. CONNECTING is never persisted."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _as_timestamp(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


# --- Gateway Models ---


class GatewayConfig(BaseModel):
    """One configured tenant connection to a gateway deployment."""

    id: str
    name: str
    type: GatewayType = GatewayType.CUSTOMERS
    server_url: str
    api_key: str
    status: GatewayStatus = GatewayStatus.DISCONNECTED
    error_message: str | None = None
    phone_number: str | None = None
    session_id: str | None = None
    is_active: bool = True
    is_default: bool = False
    messages_sent: int = Field(default=0, ge=0)
    messages_received: int = Field(default=0, ge=0)
    webhook_url: str | None = None
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    def masked_api_key(self) -> str:
        if not self.api_key:
            return ""
        return "••••••••" + self.api_key[-4:]

    def public_dict(self) -> dict[str, Any]:
        """Serializable view with the API key masked."""
        data = self.model_dump(mode="json")
        data["api_key"] = self.masked_api_key()
        return data


class ConnectionAttemptResult(BaseModel):
    """Outcome of a connectivity probe. Transient, never persisted."""

    model_config = ConfigDict(frozen=True)

    success: bool
    matched_endpoint: str | None = None
    error: str | None = None
    details: str | None = None
    data: Any = None


class RemoteMessage(BaseModel):
    """A message fetched from a gateway, annotated with its chat."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str | None = None
    chat_id: str | None = None
    chat_name: str | None = None
    from_: str | None = Field(default=None, alias="from")
    from_me: bool = Field(default=False, alias="fromMe")
    timestamp: float = 0
    body: str | None = None
    has_media: bool = Field(default=False, alias="hasMedia")
    notify_name: str | None = Field(default=None, alias="notifyName")

    @classmethod
    def from_upstream(cls, raw: dict[str, Any]) -> RemoteMessage:
        data = {k: v for k, v in raw.items() if not k.startswith("_")}
        msg_id = data.get("id")
        if isinstance(msg_id, dict):
            data["id"] = msg_id.get("_serialized")
        data["timestamp"] = _as_timestamp(data.get("timestamp"))
        data["fromMe"] = bool(data.get("fromMe") or False)
        return cls.model_validate(data)

    @property
    def sender_phone(self) -> str:
        sender = self.from_ or self.chat_id or ""
        return sender.replace("@c.us", "").replace("@s.whatsapp.net", "")
