"""Backend conversation API contract and its ``httpx`` implementation.

The backend exposes four synchronous-request/asynchronous-completion calls:
create and continue return identifiers immediately, the real answer is
fetched later through :meth:`BackendClient.get_answer`, and files are uploaded
separately and referenced by id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping, Protocol, Sequence, runtime_checkable

import httpx

from .errors import BackendTransportError

__all__ = [
    "AnswerStatus",
    "BackendClient",
    "BackendSettings",
    "ConversationHandle",
    "HttpBackendClient",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ConversationHandle:
    """Identifiers returned by create/continue calls."""

    conversation_id: str
    request_id: str

    @classmethod
    def from_payload(cls, payload: Any, *, operation: str) -> "ConversationHandle":
        if not isinstance(payload, Mapping):
            raise BackendTransportError(operation, "response body is not a JSON object")
        conversation_id = payload.get("conversation_id")
        request_id = payload.get("request_id")
        if not conversation_id or not request_id:
            raise BackendTransportError(operation, "response is missing conversation_id or request_id")
        return cls(conversation_id=str(conversation_id), request_id=str(request_id))


@dataclass(slots=True, frozen=True)
class AnswerStatus:
    """Polling result for a single exchange."""

    FINISHED_STATUSES: ClassVar[frozenset[str]] = frozenset({"finished", "done", "completed"})

    status: str
    answer: str = ""

    @property
    def is_finished(self) -> bool:
        return self.status.strip().lower() in self.FINISHED_STATUSES and bool(self.answer)

    @classmethod
    def from_payload(cls, payload: Any) -> "AnswerStatus":
        if not isinstance(payload, Mapping):
            raise BackendTransportError("get_answer", "response body is not a JSON object")
        answer = payload.get("answer")
        return cls(status=str(payload.get("status") or ""), answer=str(answer) if answer else "")


@runtime_checkable
class BackendClient(Protocol):
    """Operations consumed from the conversational backend."""

    async def create_conversation(
        self, message: str, file_refs: Sequence[str] | None = None
    ) -> ConversationHandle:
        ...

    async def continue_conversation(
        self, conversation_id: str, message: str, file_refs: Sequence[str] | None = None
    ) -> ConversationHandle:
        ...

    async def get_answer(self, conversation_id: str, request_id: str | None = None) -> AnswerStatus:
        ...

    async def upload_file(self, data: bytes, filename: str, content_type: str) -> str:
        """Upload *data* and return the backend file id."""
        ...


@dataclass(slots=True)
class BackendSettings:
    """Connection settings for :class:`HttpBackendClient`."""

    base_url: str
    api_key: str
    request_timeout: float = 60.0
    upload_timeout: float = 120.0
    default_headers: Mapping[str, str] = field(default_factory=dict)


class HttpBackendClient:
    """Async backend client built on ``httpx``.

    Every transport failure, non-2xx status or malformed payload surfaces as
    :class:`~convoy.errors.BackendTransportError`; retry decisions belong to
    the callers (upload service and poller).
    """

    def __init__(
        self,
        settings: BackendSettings,
        *,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings, transport)

    @property
    def settings(self) -> BackendSettings:
        return self._settings

    async def create_conversation(
        self, message: str, file_refs: Sequence[str] | None = None
    ) -> ConversationHandle:
        payload: dict[str, Any] = {"user_message": message}
        if file_refs:
            payload["private_user_files"] = self._file_payload(file_refs)
        LOGGER.debug("create_conversation: %s chars, %s file(s)", len(message), len(file_refs or ()))
        body = await self._request("create_conversation", "POST", "/create_conversation", json=payload)
        return ConversationHandle.from_payload(body, operation="create_conversation")

    async def continue_conversation(
        self, conversation_id: str, message: str, file_refs: Sequence[str] | None = None
    ) -> ConversationHandle:
        payload: dict[str, Any] = {"conversation_id": conversation_id, "user_message": message}
        if file_refs:
            payload["private_user_files"] = self._file_payload(file_refs)
        LOGGER.debug(
            "continue_conversation %s: %s chars, %s file(s)",
            conversation_id,
            len(message),
            len(file_refs or ()),
        )
        body = await self._request("continue_conversation", "POST", "/continue_conversation", json=payload)
        return ConversationHandle.from_payload(body, operation="continue_conversation")

    async def get_answer(self, conversation_id: str, request_id: str | None = None) -> AnswerStatus:
        params = {"conversation_id": conversation_id}
        if request_id:
            params["request_id"] = request_id
        body = await self._request("get_answer", "GET", "/get_answer", params=params)
        return AnswerStatus.from_payload(body)

    async def upload_file(self, data: bytes, filename: str, content_type: str) -> str:
        LOGGER.debug("upload_file %s (%s bytes, %s)", filename, len(data), content_type)
        body = await self._request(
            "upload_file",
            "PUT",
            "/upload_file",
            files={"file": (filename, data, content_type)},
            timeout=self._settings.upload_timeout,
        )
        file_id = body.get("file_id") if isinstance(body, Mapping) else None
        if not file_id:
            raise BackendTransportError("upload_file", "response is missing file_id")
        return str(file_id)

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            LOGGER.error("Backend %s returned HTTP %s", operation, status)
            raise BackendTransportError(operation, f"HTTP {status}", status_code=status) from exc
        except httpx.HTTPError as exc:
            LOGGER.error("Backend %s failed: %s", operation, exc)
            raise BackendTransportError(operation, str(exc) or type(exc).__name__) from exc
        try:
            return response.json()
        except ValueError as exc:
            raise BackendTransportError(operation, "response body is not valid JSON") from exc

    @staticmethod
    def _file_payload(file_refs: Sequence[str]) -> list[dict[str, str]]:
        return [{"id": file_id} for file_id in file_refs]

    @staticmethod
    def _build_client(
        settings: BackendSettings, transport: httpx.AsyncBaseTransport | None = None
    ) -> httpx.AsyncClient:
        headers = {"X-Api-Key": settings.api_key, "Accept": "application/json"}
        headers.update(settings.default_headers)
        return httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/"),
            headers=headers,
            timeout=settings.request_timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client to release network resources."""

        await self._client.aclose()

    async def __aenter__(self) -> "HttpBackendClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
