"""Request executor: one HTTP call against a gateway deployment.

Builds the target URL from the gateway base URL, attaches the API key,
and normalizes the response body into a tagged union (JSON, raw text,
or empty). Non-2xx responses become GatewayRequestError with the most
useful message that can be extracted from the body.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

API_PREFIX = "/api"
API_KEY_HEADER = "X-Api-Key"
DEFAULT_TIMEOUT_SECONDS = 30.0


class GatewayRequestError(Exception):
    """Raised when a gateway call fails at the network or HTTP level."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


# --- Parsed response bodies ---


@dataclass(frozen=True)
class JsonBody:
    value: Any

    def to_python(self) -> Any:
        return self.value


@dataclass(frozen=True)
class RawTextBody:
    text: str

    def to_python(self) -> dict[str, Any]:
        return {"data": self.text}


@dataclass(frozen=True)
class EmptyBody:
    def to_python(self) -> dict[str, Any]:
        return {}


ParsedResponse = JsonBody | RawTextBody | EmptyBody


def normalize_base_url(server_url: str | None) -> str:
    return (server_url or "").strip().rstrip("/")


def extract_error_message(status_code: int, reason: str, text: str) -> str:
    """Pick the error message from a failed response.

    Preference: JSON ``message``/``error`` field, then the raw body,
    then a synthesized status line.
    """
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return text.strip() or f"HTTP {status_code}: {reason}"

    if isinstance(payload, dict):
        detail = payload.get("message") or payload.get("error")
        if detail:
            return detail if isinstance(detail, str) else json.dumps(detail)
    return text


def parse_response(status_code: int, reason: str, text: str) -> ParsedResponse:
    if not 200 <= status_code < 300:
        raise GatewayRequestError(
            extract_error_message(status_code, reason, text),
            status_code=status_code,
        )

    if not text.strip():
        return EmptyBody()
    try:
        return JsonBody(json.loads(text))
    except (json.JSONDecodeError, ValueError):
        return RawTextBody(text)


class RequestExecutor:
    """Issues single requests against one gateway base URL."""

    def __init__(
        self,
        server_url: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = normalize_base_url(server_url)
        self._api_key = api_key or ""
        self._timeout = timeout
        self._transport = transport

    def build_url(self, path: str) -> str:
        """Join base URL and path without repeating the API prefix."""
        base = self.base_url
        if base.endswith(API_PREFIX) and (
            path == API_PREFIX or path.startswith(API_PREFIX + "/")
        ):
            base = base[: -len(API_PREFIX)]
        return f"{base}{path}"

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            API_KEY_HEADER: self._api_key,
        }
        if extra:
            headers.update(extra)
        return headers

    async def execute(
        self,
        path: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: Any = None,
    ) -> ParsedResponse:
        url = self.build_url(path)
        content = json.dumps(body).encode() if body is not None else None
        logger.debug("Gateway request %s %s", method, url)

        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self._timeout, verify=True,
            ) as client:
                resp = await client.request(
                    method,
                    url,
                    headers=self._headers(headers),
                    content=content,
                )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise GatewayRequestError(
                f"Failed to reach gateway server: {exc}",
            ) from exc

        return parse_response(resp.status_code, resp.reason_phrase, resp.text)

    async def execute_json(
        self,
        path: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: Any = None,
    ) -> Any:
        """Like execute(), but returns the plain Python value of the body."""
        parsed = await self.execute(path, method=method, headers=headers, body=body)
        return parsed.to_python()
