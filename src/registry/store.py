"""Gateway registry: CRUD over gateway configuration records."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from src.models import GatewayConfig, GatewayStatus, GatewayType
from src.registry.db import GatewayDB

_UPDATABLE_FIELDS = frozenset({
    "name",
    "type",
    "server_url",
    "api_key",
    "status",
    "error_message",
    "phone_number",
    "session_id",
    "is_active",
    "is_default",
    "webhook_url",
})
_BOOL_FIELDS = frozenset({"is_active", "is_default"})


class GatewayNotFoundError(Exception):
    """Raised when a gateway record does not exist (or no longer exists)."""

    def __init__(self, gateway_id: str) -> None:
        self.gateway_id = gateway_id
        super().__init__(f"Gateway not found: {gateway_id}")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _to_column(field: str, value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if field in _BOOL_FIELDS:
        return int(bool(value))
    return value


def _row_to_gateway(row: dict[str, Any]) -> GatewayConfig:
    data = dict(row)
    for field in _BOOL_FIELDS:
        data[field] = bool(data[field])
    return GatewayConfig.model_validate(data)


class GatewayRegistry:
    """SQLite-backed store of gateway configurations.

    At most one default gateway per type is expected but not enforced here.
    """

    def __init__(self, db_path: str) -> None:
        self._db = GatewayDB(db_path)

    def create(
        self,
        name: str,
        server_url: str,
        api_key: str,
        type: GatewayType = GatewayType.CUSTOMERS,
        is_default: bool = False,
        is_active: bool = True,
    ) -> GatewayConfig:
        gateway = GatewayConfig(
            id=str(uuid.uuid4()),
            name=name,
            type=type,
            server_url=server_url,
            api_key=api_key,
            status=GatewayStatus.DISCONNECTED,
            is_default=is_default,
            is_active=is_active,
        )
        self._db.execute(
            """INSERT INTO gateways
               (id, name, type, server_url, api_key, status, is_active, is_default,
                messages_sent, messages_received, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?)""",
            (
                gateway.id,
                gateway.name,
                gateway.type.value,
                gateway.server_url,
                gateway.api_key,
                gateway.status.value,
                int(gateway.is_active),
                int(gateway.is_default),
                gateway.created_at,
                gateway.updated_at,
            ),
        )
        return gateway

    def get(self, gateway_id: str) -> GatewayConfig:
        row = self._db.fetch_one("SELECT * FROM gateways WHERE id = ?", (gateway_id,))
        if row is None:
            raise GatewayNotFoundError(gateway_id)
        return _row_to_gateway(row)

    def list(
        self,
        type: GatewayType | None = None,
        active_only: bool = False,
    ) -> list[GatewayConfig]:
        clauses: list[str] = []
        params: list[Any] = []
        if type is not None:
            clauses.append("type = ?")
            params.append(GatewayType(type).value)
        if active_only:
            clauses.append("is_active = 1")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._db.fetch_all(
            f"SELECT * FROM gateways{where} ORDER BY created_at, rowid", tuple(params),
        )
        return [_row_to_gateway(r) for r in rows]

    def get_default(self, type: GatewayType) -> GatewayConfig | None:
        row = self._db.fetch_one(
            """SELECT * FROM gateways
               WHERE type = ? AND is_default = 1 AND is_active = 1
               ORDER BY created_at, rowid LIMIT 1""",
            (GatewayType(type).value,),
        )
        return _row_to_gateway(row) if row else None

    def update(self, gateway_id: str, **fields: Any) -> GatewayConfig:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        if not fields:
            return self.get(gateway_id)

        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_to_column(name, value) for name, value in fields.items()]
        row = self._db.execute_returning(
            f"UPDATE gateways SET {assignments}, updated_at = ? WHERE id = ? RETURNING *",
            (*params, _now_iso(), gateway_id),
        )
        if row is None:
            raise GatewayNotFoundError(gateway_id)
        return _row_to_gateway(row)

    def increment_counters(
        self,
        gateway_id: str,
        sent: int = 0,
        received: int = 0,
    ) -> GatewayConfig:
        """Atomically add to the message counters. Counters never decrease."""
        if sent < 0 or received < 0:
            raise ValueError("Counters can only be incremented")
        row = self._db.execute_returning(
            """UPDATE gateways
               SET messages_sent = messages_sent + ?,
                   messages_received = messages_received + ?,
                   updated_at = ?
               WHERE id = ? RETURNING *""",
            (sent, received, _now_iso(), gateway_id),
        )
        if row is None:
            raise GatewayNotFoundError(gateway_id)
        return _row_to_gateway(row)

    def delete(self, gateway_id: str) -> None:
        cursor = self._db.execute("DELETE FROM gateways WHERE id = ?", (gateway_id,))
        if cursor.rowcount == 0:
            raise GatewayNotFoundError(gateway_id)

    def close(self) -> None:
        self._db.close()
