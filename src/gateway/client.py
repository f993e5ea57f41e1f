"""Gateway API client: session lifecycle, messaging and reads.

Every operation addresses the single session the upstream service
supports per deployment. Operations whose path prefix varies between
deployments try an ordered list of path shapes and keep the first one
that answers.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

import httpx

from src.gateway.fallback import AllCandidatesFailedError, first_success
from src.gateway.transport import (
    DEFAULT_TIMEOUT_SECONDS,
    GatewayRequestError,
    RequestExecutor,
)
from src.models import ConnectionAttemptResult

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "default"
CHAT_SUFFIX = "@c.us"

PROBE_PATHS = ("/api/sessions", "/sessions", "/api")
SESSION_PATHS = (f"/api/sessions/{DEFAULT_SESSION}", f"/sessions/{DEFAULT_SESSION}")
SESSION_COLLECTION_PATHS = ("/api/sessions", "/sessions")
QR_PATHS = (f"/api/{DEFAULT_SESSION}/auth/qr", f"/{DEFAULT_SESSION}/auth/qr")

MAX_AGGREGATED_CHATS = 30
MESSAGES_PER_CHAT = 10
STOP_SETTLE_SECONDS = 1.0
DELETE_SETTLE_SECONDS = 0.5

PROBE_FAILURE_ERROR = "connection failed"
PROBE_FAILURE_HINT = (
    "Check the server URL (it should look like http://localhost:3000) "
    "and the API key"
)

_NON_DIGITS = re.compile(r"\D")


def to_chat_address(phone: str) -> str:
    """Normalize a phone number into a chat address.

    Already chat-addressed values (containing ``@``) are kept as given.
    """
    if "@" in phone:
        return phone
    return f"{_NON_DIGITS.sub('', phone)}{CHAT_SUFFIX}"


def resolve_chat_id(chat_id: str | Mapping[str, Any] | None) -> str:
    """Accept a plain chat id or an id object carrying ``_serialized``."""
    if isinstance(chat_id, Mapping):
        serialized = chat_id.get("_serialized")
        if not serialized:
            raise ValueError(f"Chat id object has no _serialized field: {chat_id!r}")
        return str(serialized)
    if not chat_id:
        raise ValueError("Chat id is missing")
    return chat_id


class GatewayClient:
    """Client bound to one gateway deployment (server URL + API key)."""

    def __init__(
        self,
        server_url: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._executor = RequestExecutor(
            server_url, api_key, timeout=timeout, transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._executor.base_url

    async def request(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        return await self._executor.execute_json(
            path, method=method, headers=headers, body=body,
        )

    # ---- connectivity ----

    async def probe_connectivity(self) -> ConnectionAttemptResult:
        """Find which path shape this deployment answers on.

        Never raises for individual candidate failures.
        """
        candidates = [
            (path, lambda path=path: self.request(path)) for path in PROBE_PATHS
        ]
        try:
            matched, data = await first_success(candidates)
        except AllCandidatesFailedError as exc:
            logger.warning(
                "Gateway %s unreachable on all probe paths (last error: %s)",
                self.base_url, exc.last_error,
            )
            return ConnectionAttemptResult(
                success=False,
                error=PROBE_FAILURE_ERROR,
                details=PROBE_FAILURE_HINT,
            )

        logger.info("Gateway %s answered on %s", self.base_url, matched)
        return ConnectionAttemptResult(
            success=True, matched_endpoint=matched, data=data,
        )

    # ---- session lifecycle ----

    async def create_session(self, config: dict[str, Any] | None = None) -> Any:
        body: dict[str, Any] = {"name": DEFAULT_SESSION}
        if config is not None:
            body["config"] = config
        candidates = [
            (path, lambda path=path: self.request(path, method="POST", body=body))
            for path in SESSION_COLLECTION_PATHS
        ]
        try:
            _, result = await first_success(candidates)
        except AllCandidatesFailedError as exc:
            raise exc.last_error from exc
        return result

    async def get_session(self) -> Any | None:
        """Return the session document, or None when no session exists."""
        candidates = [
            (path, lambda path=path: self.request(path)) for path in SESSION_PATHS
        ]
        try:
            _, result = await first_success(candidates)
        except AllCandidatesFailedError:
            logger.info("No session found on %s", self.base_url)
            return None
        return result

    async def update_session_config(self, config: dict[str, Any]) -> Any:
        candidates = [
            (
                path,
                lambda path=path: self.request(
                    path, method="PATCH", body={"config": config},
                ),
            )
            for path in SESSION_PATHS
        ]
        try:
            _, result = await first_success(candidates)
        except AllCandidatesFailedError as exc:
            raise exc.last_error from exc
        return result

    async def delete_session(self) -> None:
        """Stop then delete the session. Best effort, never raises upstream errors."""
        stop = [
            (path, lambda path=path: self.request(f"{path}/stop", method="POST"))
            for path in SESSION_PATHS
        ]
        try:
            await first_success(stop)
            await asyncio.sleep(STOP_SETTLE_SECONDS)
        except AllCandidatesFailedError:
            logger.info("Session stop failed on every path shape; deleting anyway")

        delete = [
            (path, lambda path=path: self.request(path, method="DELETE"))
            for path in SESSION_PATHS
        ]
        try:
            await first_success(delete)
            await asyncio.sleep(DELETE_SETTLE_SECONDS)
        except AllCandidatesFailedError:
            logger.info("Session delete failed on every path shape")

    async def get_qr(self) -> Any:
        """Fetch the pairing code; raises the first path's error if all fail."""
        candidates = [
            (path, lambda path=path: self.request(path)) for path in QR_PATHS
        ]
        try:
            _, result = await first_success(candidates)
        except AllCandidatesFailedError as exc:
            raise exc.first_error from exc
        return result

    # ---- messaging ----

    async def send_text(self, session: str | None, phone: str, text: str) -> Any:
        """Send a text message. ``session`` is accepted but the default session is used."""
        chat_id = to_chat_address(phone)
        logger.info("Sending text to %s via %s", chat_id, self.base_url)
        return await self.request(
            "/api/sendText",
            method="POST",
            body={"chatId": chat_id, "text": text, "session": DEFAULT_SESSION},
        )

    async def send_image(
        self,
        session: str | None,
        phone: str,
        image_url: str,
        caption: str | None = None,
    ) -> Any:
        return await self.request(
            "/api/sendImage",
            method="POST",
            body={
                "chatId": to_chat_address(phone),
                "file": {"url": image_url},
                "caption": caption,
                "session": DEFAULT_SESSION,
            },
        )

    async def send_file(
        self,
        session: str | None,
        phone: str,
        file_url: str,
        filename: str | None = None,
    ) -> Any:
        return await self.request(
            "/api/sendFile",
            method="POST",
            body={
                "chatId": to_chat_address(phone),
                "file": {"url": file_url, "filename": filename},
                "session": DEFAULT_SESSION,
            },
        )

    async def mark_messages_as_read(
        self,
        session: str | None,
        chat_id: str,
        message_ids: list[str] | None = None,
    ) -> Any:
        """Send a read receipt so the gateway does not deliver the messages again.

        Call only after the messages were processed. Without
        ``message_ids`` the whole chat is marked as read.
        """
        body: dict[str, Any] = {
            "session": DEFAULT_SESSION,
            "chatId": chat_id,
        }
        if message_ids:
            body["messageIds"] = list(message_ids)
        logger.info(
            "Acknowledging %s in %s",
            ", ".join(message_ids) if message_ids else "all messages", chat_id,
        )
        return await self.request("/api/sendSeen", method="POST", body=body)

    # ---- reads ----

    async def get_chats(self, session: str = DEFAULT_SESSION) -> Any:
        return await self.request(f"/api/{session}/chats")

    async def get_chat_messages(
        self,
        session: str,
        chat_id: str | Mapping[str, Any],
        limit: int = 100,
    ) -> Any:
        plain_id = quote(resolve_chat_id(chat_id), safe="")
        return await self.request(
            f"/api/{session}/chats/{plain_id}/messages?limit={limit}",
        )

    async def get_all_messages(
        self,
        session: str = DEFAULT_SESSION,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Recent messages across 1:1 chats, newest first.

        Chats are visited one at a time. A chat whose fetch fails is
        skipped; a failed chat listing yields an empty list.
        """
        try:
            chats = await self.get_chats(session)
        except GatewayRequestError as exc:
            logger.warning("Could not list chats on %s: %s", self.base_url, exc)
            return []
        if not isinstance(chats, list):
            logger.warning("Chat listing on %s is not a list", self.base_url)
            return []

        individual = [
            chat for chat in chats
            if isinstance(chat, dict) and not chat.get("isGroup")
        ]
        to_check = individual[:MAX_AGGREGATED_CHATS]

        collected: list[dict[str, Any]] = []
        for chat in to_check:
            raw_id = chat.get("id")
            try:
                chat_id = resolve_chat_id(raw_id)
                messages = await self.get_chat_messages(
                    session, chat_id, MESSAGES_PER_CHAT,
                )
            except (GatewayRequestError, ValueError, TypeError) as exc:
                logger.warning("Skipping chat %s: %s", raw_id, exc)
                continue

            if not isinstance(messages, list):
                continue
            for msg in messages:
                if not isinstance(msg, dict):
                    continue
                collected.append({
                    **msg,
                    "chat_name": chat.get("name"),
                    "chat_id": chat_id,
                    "from": msg.get("from") or chat_id,
                    "fromMe": msg.get("fromMe") or False,
                })

        collected.sort(key=_timestamp_of, reverse=True)
        return collected[:limit]


def _timestamp_of(message: dict[str, Any]) -> float:
    try:
        return float(message.get("timestamp") or 0)
    except (TypeError, ValueError):
        return 0.0
