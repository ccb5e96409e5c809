"""Upload oversized content to the backend as a file."""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
import tempfile
import time
from dataclasses import dataclass, replace
from pathlib import Path
from threading import Lock
from typing import Any, Awaitable, Callable

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from .backend import BackendClient
from .errors import BackendTransportError, EmptyContentError, UploadFailedError
from .strategy import ProcessingStrategy, parse_strategy
from .tokens import TokenCounterProtocol, default_estimator

__all__ = [
    "FILE_UPLOAD_THRESHOLD",
    "UploadOptions",
    "UploadResult",
    "UploadService",
    "estimate_upload_time",
    "should_use_file_upload",
]

LOGGER = logging.getLogger(__name__)

FILE_UPLOAD_THRESHOLD = 200_000
_BACKOFF_BASE_SECONDS = 1.0
_BACKOFF_MAX_SECONDS = 10.0

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(slots=True, frozen=True)
class UploadOptions:
    """Per-call upload settings; any field can be overridden per call."""

    filename: str = "context.txt"
    content_type: str = "text/plain"
    auto_cleanup: bool = True
    temp_dir: Path | str | None = None
    max_retries: int = 3


@dataclass(slots=True, frozen=True)
class UploadResult:
    """Outcome of a successful upload."""

    file_id: str
    tokens: int
    file_size_bytes: int
    upload_duration_ms: int
    filename: str
    temp_path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_id": self.file_id,
            "tokens": self.tokens,
            "file_size_bytes": self.file_size_bytes,
            "upload_duration_ms": self.upload_duration_ms,
            "filename": self.filename,
        }


class UploadService:
    """Persist text as a backend file with retry, backoff and cleanup.

    The instance keeps an in-memory map from file id to :class:`UploadResult`.
    The map is lock-protected, so one instance may be shared by concurrent
    requests.
    """

    def __init__(
        self,
        backend: BackendClient,
        options: UploadOptions | None = None,
        *,
        estimator: TokenCounterProtocol | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self.options = options or UploadOptions()
        self._estimator = estimator or default_estimator
        self._sleep = sleep
        self._uploads: dict[str, UploadResult] = {}
        self._lock = Lock()

    async def upload_text(self, content: str, **overrides: Any) -> UploadResult:
        """Write *content* to a transient file and upload it."""

        options = replace(self.options, **overrides) if overrides else self.options
        if not content or not content.strip():
            raise EmptyContentError()

        tokens = await asyncio.to_thread(self._estimator.estimate, content)
        filename = _generate_filename(options.filename)
        temp_path = _resolve_temp_dir(options.temp_dir) / filename
        succeeded = False
        try:
            await asyncio.to_thread(temp_path.write_text, content, encoding="utf-8")
            data = await asyncio.to_thread(temp_path.read_bytes)
            started = time.monotonic()
            file_id = await self._upload_with_retry(data, filename, options)
            succeeded = True
        finally:
            if not succeeded or options.auto_cleanup:
                _remove_quietly(temp_path)

        result = UploadResult(
            file_id=file_id,
            tokens=tokens,
            file_size_bytes=len(data),
            upload_duration_ms=_elapsed_ms(started),
            filename=filename,
            temp_path=None if options.auto_cleanup else temp_path,
        )
        self._track(result)
        LOGGER.info("Uploaded %s (%s bytes, ~%s tokens) as %s", filename, len(data), tokens, file_id)
        return result

    async def upload_existing_file(self, path: Path | str, **overrides: Any) -> UploadResult:
        """Upload a file that already exists; the file itself is never removed."""

        options = replace(self.options, **overrides) if overrides else self.options
        source = Path(path)
        if not source.is_file():
            raise FileNotFoundError(f"File does not exist: {source}")

        data = await asyncio.to_thread(source.read_bytes)
        content = data.decode("utf-8", errors="replace")
        if not content.strip():
            raise EmptyContentError()
        filename = overrides.get("filename") or source.name
        tokens = await asyncio.to_thread(self._estimator.estimate, content)
        started = time.monotonic()
        file_id = await self._upload_with_retry(data, filename, options)
        result = UploadResult(
            file_id=file_id,
            tokens=tokens,
            file_size_bytes=len(data),
            upload_duration_ms=_elapsed_ms(started),
            filename=filename,
        )
        self._track(result)
        LOGGER.info("Uploaded existing file %s as %s", source, file_id)
        return result

    def get_upload_info(self, file_id: str) -> UploadResult | None:
        with self._lock:
            return self._uploads.get(file_id)

    def tracked_uploads(self) -> list[UploadResult]:
        with self._lock:
            return list(self._uploads.values())

    def forget(self, file_id: str) -> UploadResult | None:
        with self._lock:
            return self._uploads.pop(file_id, None)

    def cleanup_temp_files(self) -> int:
        """Remove payload files retained with ``auto_cleanup=False``."""

        removed = 0
        with self._lock:
            for file_id, result in list(self._uploads.items()):
                if result.temp_path is None:
                    continue
                if _remove_quietly(result.temp_path):
                    removed += 1
                self._uploads[file_id] = replace(result, temp_path=None)
        return removed

    def should_use_file_upload(
        self, content: str, strategy: ProcessingStrategy | str | None = None
    ) -> bool:
        return should_use_file_upload(content, strategy, estimator=self._estimator)

    async def _upload_with_retry(self, data: bytes, filename: str, options: UploadOptions) -> str:
        attempts = 0
        try:
            async for attempt in self._retrying(options.max_retries):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    return await self._backend.upload_file(data, filename, options.content_type)
        except BackendTransportError as exc:
            LOGGER.error("Upload of %s failed after %s attempt(s): %s", filename, attempts, exc)
            raise UploadFailedError(attempts, exc) from exc
        raise UploadFailedError(attempts, None)  # pragma: no cover - retry loop always returns or raises

    def _retrying(self, max_retries: int) -> AsyncRetrying:
        return AsyncRetrying(
            sleep=self._sleep,
            reraise=True,
            stop=stop_after_attempt(max(1, max_retries)),
            wait=wait_exponential(multiplier=_BACKOFF_BASE_SECONDS, max=_BACKOFF_MAX_SECONDS),
            retry=retry_if_exception_type(BackendTransportError),
            before_sleep=_log_retry,
        )

    def _track(self, result: UploadResult) -> None:
        with self._lock:
            self._uploads[result.file_id] = result


def should_use_file_upload(
    content: str,
    strategy: ProcessingStrategy | str | None = None,
    *,
    estimator: TokenCounterProtocol | None = None,
) -> bool:
    """Explicit strategies win; otherwise upload above the file threshold."""

    explicit = parse_strategy(strategy)
    if explicit is not None:
        return explicit.uses_file_upload
    counter = estimator or default_estimator
    return counter.estimate(content) > FILE_UPLOAD_THRESHOLD


def estimate_upload_time(content: str) -> int:
    """Rough upload plus processing time in ms: 2 s per MiB, at least 2 s."""

    size_mib = len(content.encode("utf-8")) / (1024 * 1024)
    return int(max(2000, size_mib * 2000))


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    LOGGER.warning(
        "Upload attempt %s failed, retrying in %.0fms: %s",
        retry_state.attempt_number,
        delay * 1000,
        outcome.exception() if outcome else None,
    )


def _generate_filename(base_filename: str) -> str:
    stem, ext = os.path.splitext(os.path.basename(base_filename) or "context.txt")
    return f"{stem or 'context'}-{int(time.time() * 1000)}-{secrets.token_hex(4)}{ext or '.txt'}"


def _resolve_temp_dir(temp_dir: Path | str | None) -> Path:
    target = Path(temp_dir).expanduser() if temp_dir else Path(tempfile.gettempdir())
    target.mkdir(parents=True, exist_ok=True)
    return target


def _remove_quietly(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        LOGGER.warning("Failed to clean up temp file %s: %s", path, exc)
        return False
    return True


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
