"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

from collections import deque
from typing import Any, Iterable, Sequence

from convoy.backend import AnswerStatus, ConversationHandle
from convoy.errors import BackendTransportError


class RecordingSleep:
    """Awaitable stand-in for :func:`asyncio.sleep` that only records delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(float(delay))


class FakeBackend:
    """In-memory conversational backend.

    Every create/continue call opens a new exchange whose answer is taken from
    ``answers`` (or generated as ``answer-<n>``). Each exchange reports
    ``pending_polls`` unfinished statuses before the answer is ready.
    ``fail`` maps an operation name to a sequence of outcomes consumed one per
    call: ``None`` lets the call through, an exception is raised instead.

    Example:
        backend = FakeBackend(answers=["first", "second"], pending_polls=1)
        backend.fail["upload_file"] = [BackendTransportError("upload_file", "boom"), None]
    """

    def __init__(
        self,
        *,
        answers: Iterable[str] | None = None,
        pending_polls: int = 0,
        fail: dict[str, Sequence[BaseException | None]] | None = None,
    ) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.sent_messages: list[str] = []
        self.uploads: list[dict[str, Any]] = []
        self.pending_polls = pending_polls
        self.fail: dict[str, Sequence[BaseException | None]] = dict(fail or {})
        self._answers = deque(answers or [])
        self._fail_cursor: dict[str, int] = {}
        self._conversation_count = 0
        self._request_count = 0
        self._exchanges: dict[str, dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # BackendClient operations
    # ------------------------------------------------------------------
    async def create_conversation(
        self, message: str, file_refs: Sequence[str] | None = None
    ) -> ConversationHandle:
        self._record("create_conversation", message=message, file_refs=list(file_refs or []))
        self._conversation_count += 1
        return self._open(f"conv-{self._conversation_count}", message)

    async def continue_conversation(
        self, conversation_id: str, message: str, file_refs: Sequence[str] | None = None
    ) -> ConversationHandle:
        self._record(
            "continue_conversation",
            conversation_id=conversation_id,
            message=message,
            file_refs=list(file_refs or []),
        )
        return self._open(conversation_id, message)

    async def get_answer(self, conversation_id: str, request_id: str | None = None) -> AnswerStatus:
        self._record("get_answer", conversation_id=conversation_id, request_id=request_id)
        exchange = self._exchanges[request_id or ""]
        if exchange["pending"] > 0:
            exchange["pending"] -= 1
            return AnswerStatus(status="processing")
        return AnswerStatus(status="finished", answer=exchange["answer"])

    async def upload_file(self, data: bytes, filename: str, content_type: str) -> str:
        self._record("upload_file", filename=filename, content_type=content_type, size=len(data))
        self.uploads.append({"data": data, "filename": filename, "content_type": content_type})
        return f"file-{len(self.uploads)}"

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def operations(self, *, include_polls: bool = False) -> list[str]:
        return [name for name, _ in self.calls if include_polls or name != "get_answer"]

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _record(self, operation: str, **payload: Any) -> None:
        self.calls.append((operation, payload))
        script = self.fail.get(operation)
        if not script:
            return
        index = self._fail_cursor.get(operation, 0)
        self._fail_cursor[operation] = index + 1
        if index < len(script) and script[index] is not None:
            raise script[index]  # type: ignore[misc]

    def _open(self, conversation_id: str, message: str) -> ConversationHandle:
        self._request_count += 1
        request_id = f"req-{self._request_count}"
        answer = self._answers.popleft() if self._answers else f"answer-{self._request_count}"
        self._exchanges[request_id] = {"answer": answer, "pending": self.pending_polls}
        self.sent_messages.append(message)
        return ConversationHandle(conversation_id=conversation_id, request_id=request_id)


def transport_error(operation: str = "upload_file", status_code: int = 503) -> BackendTransportError:
    return BackendTransportError(operation, f"HTTP {status_code}", status_code=status_code)


def paragraphs(count: int, words_per_paragraph: int = 40, *, tag: str = "p") -> str:
    """Build ``count`` distinct paragraphs separated by blank lines."""

    blocks = []
    for index in range(count):
        words = " ".join(f"{tag}{index}w{word}" for word in range(words_per_paragraph))
        blocks.append(words)
    return "\n\n".join(blocks)
