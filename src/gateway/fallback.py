"""First-success combinator for ordered endpoint candidates."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

from src.gateway.transport import GatewayRequestError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Candidate = tuple[str, Callable[[], Awaitable[T]]]


class AllCandidatesFailedError(Exception):
    """Raised when every candidate in a fallback chain failed."""

    def __init__(self, attempts: list[tuple[str, GatewayRequestError]]) -> None:
        self.attempts = attempts
        labels = ", ".join(label for label, _ in attempts)
        super().__init__(f"All candidates failed: {labels}")

    @property
    def first_error(self) -> GatewayRequestError:
        return self.attempts[0][1]

    @property
    def last_error(self) -> GatewayRequestError:
        return self.attempts[-1][1]


async def first_success(candidates: Iterable[Candidate[T]]) -> tuple[str, T]:
    """Run candidates in order; return (label, result) of the first that succeeds.

    Candidates run strictly one after another. Only GatewayRequestError
    counts as a candidate failure; anything else propagates.
    """
    attempts: list[tuple[str, GatewayRequestError]] = []
    for label, call in candidates:
        try:
            return label, await call()
        except GatewayRequestError as exc:
            logger.debug("Candidate %s failed: %s", label, exc)
            attempts.append((label, exc))

    if not attempts:
        raise ValueError("first_success() needs at least one candidate")
    raise AllCandidatesFailedError(attempts)
