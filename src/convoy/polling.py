"""Completion polling shared by every request strategy."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from .backend import BackendClient
from .errors import BackendTransportError, PollTimeoutError

__all__ = ["CompletionPoller", "DEFAULT_MAX_POLL_ATTEMPTS"]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_POLL_ATTEMPTS = 240


class CompletionPoller:
    """Query the backend until an exchange has a finished, non-empty answer.

    The budget is counted in attempts, not wall-clock time: a pending answer
    waits ``interval`` seconds before the next query, a transport error waits
    ``error_interval`` seconds and is otherwise tolerated.
    """

    def __init__(
        self,
        backend: BackendClient,
        *,
        max_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
        interval: float = 1.0,
        error_interval: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self.max_attempts = max(1, int(max_attempts))
        self.interval = interval
        self.error_interval = error_interval
        self._sleep = sleep

    def budget(self, max_attempts: int | None = None, *, extended: bool = False) -> int:
        attempts = max(1, int(max_attempts if max_attempts is not None else self.max_attempts))
        return attempts * 2 if extended else attempts

    async def await_answer(
        self,
        conversation_id: str,
        request_id: str | None = None,
        *,
        max_attempts: int | None = None,
        extended: bool = False,
    ) -> str:
        """Return the finished answer or raise :class:`PollTimeoutError`.

        ``extended`` doubles the attempt budget for file-backed exchanges.
        """

        budget = self.budget(max_attempts, extended=extended)
        last_error: BackendTransportError | None = None
        for attempt in range(1, budget + 1):
            try:
                status = await self._backend.get_answer(conversation_id, request_id)
            except BackendTransportError as exc:
                last_error = exc
                LOGGER.debug(
                    "Polling %s attempt %s/%s failed: %s", conversation_id, attempt, budget, exc
                )
                if attempt < budget:
                    await self._sleep(self.error_interval)
                continue

            if status.is_finished:
                LOGGER.debug("Answer for %s ready after %s attempt(s)", conversation_id, attempt)
                return status.answer
            if attempt < budget:
                await self._sleep(self.interval)

        LOGGER.warning("Timed out waiting for %s after %s attempts", conversation_id, budget)
        raise PollTimeoutError(
            budget,
            conversation_id=conversation_id,
            request_id=request_id,
            last_error=last_error,
        ) from last_error
