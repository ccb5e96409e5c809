"""Step-level progress reporting for long-running requests.

The backend has no streaming, so progress is reported per step (strategy
chosen, segment sent, file uploaded, answer consolidated) rather than per
token. Every request ends with exactly one terminal ``complete`` or ``error``
event.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Protocol, Union

__all__ = [
    "BufferedProgressReporter",
    "CallbackProgressReporter",
    "InMemoryProgressSink",
    "NullProgressReporter",
    "ProgressEvent",
    "ProgressReporter",
    "ProgressStream",
    "as_reporter",
    "emit_progress",
]

LOGGER = logging.getLogger(__name__)

EVENT_TYPES = frozenset({"progress", "status", "error", "complete"})
TERMINAL_TYPES = frozenset({"error", "complete"})


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    """A single progress notification."""

    type: str
    message: str
    step: str | None = None
    current: int | None = None
    total: int | None = None
    timestamp: float = field(default_factory=time.time)
    data: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unknown progress event type: {self.type!r}")

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_TYPES

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        for key in ("step", "current", "total"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        if self.data:
            payload["data"] = dict(self.data)
        return payload


class ProgressReporter(Protocol):
    """Sink receiving progress events."""

    def report(self, event: ProgressEvent) -> None:
        ...


ProgressTarget = Union[ProgressReporter, Callable[[ProgressEvent], Any], None]


class NullProgressReporter:
    """Reporter that drops every event."""

    def report(self, event: ProgressEvent) -> None:
        return


class CallbackProgressReporter:
    """Adapts a plain callable to the reporter interface."""

    def __init__(self, callback: Callable[[ProgressEvent], Any]) -> None:
        self._callback = callback

    def report(self, event: ProgressEvent) -> None:
        self._callback(event)


class InMemoryProgressSink:
    """Thread-safe sink that keeps every event, mainly for tests and inspection."""

    def __init__(self) -> None:
        self._events: list[ProgressEvent] = []
        self._lock = Lock()

    def report(self, event: ProgressEvent) -> None:
        with self._lock:
            self._events.append(event)

    def events(self) -> list[ProgressEvent]:
        with self._lock:
            return list(self._events)

    def events_by_type(self, event_type: str) -> list[ProgressEvent]:
        with self._lock:
            return [event for event in self._events if event.type == event_type]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class BufferedProgressReporter:
    """Batch events and forward them to a downstream reporter.

    The buffer is flushed when ``update_interval`` seconds have passed since
    the last flush, when it holds ``buffer_size`` events, or immediately for
    terminal events.
    """

    def __init__(
        self,
        downstream: ProgressTarget,
        *,
        update_interval: float = 1.0,
        buffer_size: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._downstream = as_reporter(downstream)
        self._update_interval = update_interval
        self._buffer_size = max(1, buffer_size)
        self._clock = clock
        self._buffer: list[ProgressEvent] = []
        self._last_flush: float | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def report(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        self._buffer.append(event)
        now = self._clock()
        if (
            event.is_terminal
            or len(self._buffer) >= self._buffer_size
            or self._last_flush is None
            or now - self._last_flush >= self._update_interval
        ):
            self.flush()

    def flush(self) -> None:
        pending, self._buffer = self._buffer, []
        for event in pending:
            emit_progress(self._downstream, event)
        self._last_flush = self._clock()

    def close(self) -> None:
        if not self._closed:
            self.flush()
            self._closed = True


class ProgressStream:
    """Expose the progress of one request as a finite async iterator.

    Usage::

        stream = ProgressStream()
        async for event in stream.events(orchestrator.handle_large_request(message, progress=stream)):
            ...
        result = stream.result

    Iteration ends after the first terminal event. If the request finishes
    without reporting one, a terminal event is synthesized from its outcome.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._finished = False
        self._result: Any = None
        self.error: BaseException | None = None

    @property
    def result(self) -> Any:
        if self.error is not None:
            raise self.error
        return self._result

    def report(self, event: ProgressEvent) -> None:
        if self._finished:
            return
        if event.is_terminal:
            self._finished = True
        self._queue.put_nowait(event)

    async def events(self, awaitable: Awaitable[Any]) -> AsyncIterator[ProgressEvent]:
        task = asyncio.ensure_future(self._drive(awaitable))
        try:
            while True:
                event = await self._queue.get()
                yield event
                if event.is_terminal:
                    break
            await task
        finally:
            if not task.done():
                task.cancel()

    async def _drive(self, awaitable: Awaitable[Any]) -> None:
        try:
            self._result = await awaitable
        except Exception as exc:
            self.error = exc
            self.report(ProgressEvent(type="error", message=str(exc)))
        else:
            self.report(ProgressEvent(type="complete", message="Processing complete"))


def as_reporter(target: ProgressTarget) -> ProgressReporter:
    """Normalize ``None``, callables and reporters into a reporter."""

    if target is None:
        return NullProgressReporter()
    if hasattr(target, "report"):
        return target  # type: ignore[return-value]
    if callable(target):
        return CallbackProgressReporter(target)
    raise TypeError(f"Unsupported progress target: {target!r}")


def emit_progress(reporter: ProgressReporter, event: ProgressEvent) -> None:
    """Deliver *event*; a failing reporter never aborts the request."""

    try:
        reporter.report(event)
    except Exception:
        LOGGER.warning("Progress reporter failed for %s event", event.type, exc_info=True)
