"""Drive an oversized message through the backend with the selected strategy."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Awaitable, Callable, ClassVar, Iterator, Mapping, Sequence

from .backend import BackendClient, ConversationHandle
from .errors import ConvoyError, RequestFailedError
from .polling import DEFAULT_MAX_POLL_ATTEMPTS, CompletionPoller
from .progress import ProgressEvent, ProgressReporter, ProgressTarget, as_reporter, emit_progress
from .segmenter import SegmentOptions, TextSegment, TextSegmenter, recommend_segment_options
from .strategy import ProcessingStrategy, StrategyThresholds, parse_strategy, select_strategy
from .tokens import TokenCounterProtocol, default_estimator
from .uploads import FILE_UPLOAD_THRESHOLD, UploadOptions, UploadResult, UploadService

if TYPE_CHECKING:
    from .settings import Settings

__all__ = [
    "CONSOLIDATION_PROMPT",
    "FILE_PROMPT",
    "HYBRID_CONSOLIDATION_PROMPT",
    "HYBRID_REMAINDER_PREFIX",
    "ProcessingStep",
    "RequestOptions",
    "RequestOrchestrator",
    "RequestResult",
    "StepLog",
    "format_segment_message",
    "handle_large_request",
    "resolve_strategy",
    "split_for_hybrid",
]

LOGGER = logging.getLogger(__name__)

CONSOLIDATION_PROMPT = (
    "Please provide a comprehensive summary and response based on all the information provided above."
)
HYBRID_CONSOLIDATION_PROMPT = (
    "Please provide a comprehensive response considering both the uploaded file content "
    "and the additional information provided."
)
FILE_PROMPT = "Please analyze and respond to the content in the uploaded file."
HYBRID_REMAINDER_PREFIX = "Additionally, please consider this information: "

SleepFn = Callable[[float], Awaitable[Any]]


# -----------------------------------------------------------------------------
# Audit trail
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ProcessingStep:
    """One completed (or failed) phase of a request.

    ``start_time`` is a wall-clock epoch timestamp; ``duration`` is measured
    in milliseconds.
    """

    name: str
    start_time: float
    duration: int
    success: bool
    tokens: int | None = None
    error: str | None = None
    conversation_id: str | None = None
    request_id: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "step": self.name,
            "start_time": self.start_time,
            "duration": self.duration,
            "success": self.success,
        }
        for key in ("tokens", "error", "conversation_id", "request_id", "detail"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass(slots=True)
class StepRecord:
    """Mutable fields a running step may fill in before it is frozen."""

    name: str
    tokens: int | None = None
    conversation_id: str | None = None
    request_id: str | None = None
    detail: str | None = None


class StepLog:
    """Append-only per-request list of :class:`ProcessingStep` entries."""

    def __init__(self) -> None:
        self._steps: list[ProcessingStep] = []
        self.failed_step: str | None = None

    @property
    def steps(self) -> tuple[ProcessingStep, ...]:
        return tuple(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    @contextmanager
    def step(self, name: str, **fields: Any) -> Iterator[StepRecord]:
        """Time a phase; the step is appended on exit, failed if the body raised.

        Example:
            with log.step("upload_file") as record:
                record.tokens = await upload()
        """

        record = StepRecord(name=name, **fields)
        started_wall = time.time()
        started = time.perf_counter()
        try:
            yield record
        except Exception as exc:
            self._append(record, started_wall, started, success=False, error=str(exc))
            if self.failed_step is None:
                self.failed_step = name
            if isinstance(exc, ConvoyError):
                exc.tag(step=name)
            raise
        self._append(record, started_wall, started, success=True)

    def _append(
        self,
        record: StepRecord,
        started_wall: float,
        started: float,
        *,
        success: bool,
        error: str | None = None,
    ) -> None:
        self._steps.append(
            ProcessingStep(
                name=record.name,
                start_time=started_wall,
                duration=int((time.perf_counter() - started) * 1000),
                success=success,
                tokens=record.tokens,
                error=error,
                conversation_id=record.conversation_id,
                request_id=record.request_id,
                detail=record.detail,
            )
        )


# -----------------------------------------------------------------------------
# Options and results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class RequestOptions:
    """Per-request settings; every field may be overridden per call."""

    strategy: ProcessingStrategy | str | None = None
    max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS
    conversation_id: str | None = None
    segment_options: SegmentOptions | None = None
    max_tokens_per_segment: int = 115_000
    upload_options: UploadOptions | None = None
    thresholds: StrategyThresholds = field(default_factory=StrategyThresholds)
    hybrid_file_tokens: int = FILE_UPLOAD_THRESHOLD
    consolidation_prompt: str = CONSOLIDATION_PROMPT
    hybrid_consolidation_prompt: str = HYBRID_CONSOLIDATION_PROMPT
    file_prompt: str = FILE_PROMPT


@dataclass(slots=True, frozen=True)
class RequestResult:
    """Aggregated answer plus the audit trail of one request."""

    conversation_id: str
    request_id: str
    strategy: ProcessingStrategy
    answer: str
    total_input_tokens: int
    total_response_tokens: int
    total_time_ms: int
    processing_steps: tuple[ProcessingStep, ...] = ()
    chunks_processed: int | None = None
    file_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "conversation_id": self.conversation_id,
            "request_id": self.request_id,
            "strategy": self.strategy.value,
            "answer": self.answer,
            "total_input_tokens": self.total_input_tokens,
            "total_response_tokens": self.total_response_tokens,
            "total_time_ms": self.total_time_ms,
            "processing_steps": [step.to_dict() for step in self.processing_steps],
        }
        if self.chunks_processed is not None:
            payload["chunks_processed"] = self.chunks_processed
        if self.file_id is not None:
            payload["file_id"] = self.file_id
        return payload


@dataclass(slots=True)
class _RequestContext:
    message: str
    options: RequestOptions
    strategy: ProcessingStrategy
    input_tokens: int
    log: StepLog
    progress: ProgressReporter
    conversation_id: str | None = None
    request_id: str | None = None
    response_tokens: int = 0


@dataclass(slots=True, frozen=True)
class _Outcome:
    answer: str
    chunks_processed: int | None = None
    file_id: str | None = None


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------


class RequestOrchestrator:
    """Select a strategy for a message and execute it against the backend.

    One request's backend exchanges run strictly in sequence: a backend
    conversation accepts a single outstanding exchange. Separate requests may
    share an orchestrator and run as concurrent tasks; all per-request state
    lives in a private context object.
    """

    _HANDLERS: ClassVar[Mapping[ProcessingStrategy, str]] = {
        ProcessingStrategy.DIRECT: "_handle_direct",
        ProcessingStrategy.CHUNKED: "_handle_chunked",
        ProcessingStrategy.FILE: "_handle_file",
        ProcessingStrategy.HYBRID: "_handle_hybrid",
    }

    def __init__(
        self,
        backend: BackendClient,
        options: RequestOptions | None = None,
        *,
        estimator: TokenCounterProtocol | None = None,
        progress: ProgressTarget = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self.options = options or RequestOptions()
        self._estimator = estimator or default_estimator
        self._progress = as_reporter(progress)
        self._poller = CompletionPoller(backend, max_attempts=self.options.max_poll_attempts, sleep=sleep)
        self.uploads = UploadService(
            backend,
            self.options.upload_options,
            estimator=self._estimator,
            sleep=sleep,
        )

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        backend: BackendClient | None = None,
        *,
        progress: ProgressTarget = None,
    ) -> "RequestOrchestrator":
        """Build an orchestrator, and an HTTP backend unless one is given."""

        if backend is None:
            from .backend import HttpBackendClient

            backend = HttpBackendClient(settings.backend_settings())
        return cls(backend, settings.request_options(), progress=progress)

    async def handle_large_request(
        self,
        message: str,
        *,
        progress: ProgressTarget = None,
        **overrides: Any,
    ) -> RequestResult:
        """Run *message* through the backend and return the aggregated result.

        Keyword overrides replace fields of :class:`RequestOptions` for this
        call only. Step failures abort the request: convoy errors are tagged
        with the failed step, strategy, input estimate and partial audit log
        and re-raised; anything else is wrapped in :class:`RequestFailedError`.
        """

        options = replace(self.options, **overrides) if overrides else self.options
        reporter = as_reporter(progress) if progress is not None else self._progress
        started = time.perf_counter()
        log = StepLog()
        input_tokens = await asyncio.to_thread(self._estimator.estimate, message)
        strategy: ProcessingStrategy | None = None

        try:
            with log.step("strategy_selection", tokens=input_tokens) as record:
                explicit = parse_strategy(options.strategy)
                strategy = explicit or select_strategy(input_tokens, options.thresholds)
                record.detail = (
                    f"Forced strategy: {strategy.value}" if explicit else f"Selected strategy: {strategy.value}"
                )
            LOGGER.info("Handling request of ~%s tokens with %s strategy", input_tokens, strategy.value)
            emit_progress(
                reporter,
                ProgressEvent(
                    type="status",
                    message=f"Starting processing with strategy: {strategy.value}",
                    step="strategy_selection",
                    data={"strategy": strategy.value, "input_tokens": input_tokens},
                ),
            )

            ctx = _RequestContext(
                message=message,
                options=options,
                strategy=strategy,
                input_tokens=input_tokens,
                log=log,
                progress=reporter,
                conversation_id=options.conversation_id,
            )
            handler = getattr(self, self._HANDLERS[strategy])
            outcome: _Outcome = await handler(ctx)
        except ConvoyError as exc:
            exc.tag(
                step=log.failed_step,
                strategy=strategy.value if strategy else None,
                input_tokens=input_tokens,
                steps=log.steps,
            )
            self._report_failure(reporter, exc)
            raise
        except Exception as exc:
            failed = log.failed_step or "unknown"
            error = RequestFailedError(f"Request handling failed: {exc}").tag(
                step=failed,
                strategy=strategy.value if strategy else None,
                input_tokens=input_tokens,
                steps=log.steps,
            )
            self._report_failure(reporter, error)
            raise error from exc

        result = RequestResult(
            conversation_id=ctx.conversation_id or "",
            request_id=ctx.request_id or "",
            strategy=strategy,
            answer=outcome.answer,
            total_input_tokens=input_tokens,
            total_response_tokens=ctx.response_tokens,
            total_time_ms=int((time.perf_counter() - started) * 1000),
            processing_steps=log.steps,
            chunks_processed=outcome.chunks_processed,
            file_id=outcome.file_id,
        )
        LOGGER.info(
            "Request finished with %s strategy in %sms (%s steps)",
            strategy.value,
            result.total_time_ms,
            len(result.processing_steps),
        )
        emit_progress(
            reporter,
            ProgressEvent(
                type="complete",
                message="Processing complete",
                data={
                    "strategy": strategy.value,
                    "conversation_id": result.conversation_id,
                    "total_time_ms": result.total_time_ms,
                },
            ),
        )
        return result

    # ------------------------------------------------------------------
    # Strategy handlers
    # ------------------------------------------------------------------
    async def _handle_direct(self, ctx: _RequestContext) -> _Outcome:
        handle = await self._send(ctx, ctx.message, step="send_message", tokens=ctx.input_tokens)
        answer = await self._poll(ctx, handle, step="await_answer")
        return _Outcome(answer=answer)

    async def _handle_chunked(self, ctx: _RequestContext) -> _Outcome:
        segments = await self._segment(ctx, ctx.message)
        await self._send_segments(ctx, segments)
        answer = await self._consolidate(ctx, ctx.options.consolidation_prompt)
        return _Outcome(answer=answer, chunks_processed=len(segments))

    async def _handle_file(self, ctx: _RequestContext) -> _Outcome:
        upload = await self._upload(ctx, ctx.message)
        answer = await self._ask_about_file(ctx, upload)
        return _Outcome(answer=answer, file_id=upload.file_id)

    async def _handle_hybrid(self, ctx: _RequestContext) -> _Outcome:
        """Upload the head as a file, then send the remainder as segments.

        ``chunks_processed`` counts the remainder segments, so it is 0 when the
        whole message fit into the uploaded file.
        """

        head, remainder = split_for_hybrid(ctx.message, ctx.input_tokens, ctx.options.hybrid_file_tokens)
        LOGGER.debug("Hybrid split at %s of %s characters", len(head), len(ctx.message))

        upload = await self._upload(ctx, head)
        answer = await self._ask_about_file(ctx, upload)
        if not remainder.strip():
            return _Outcome(answer=answer, chunks_processed=0, file_id=upload.file_id)

        segments = await self._segment(ctx, HYBRID_REMAINDER_PREFIX + remainder)
        await self._send_segments(ctx, segments)
        answer = await self._consolidate(ctx, ctx.options.hybrid_consolidation_prompt)
        return _Outcome(answer=answer, chunks_processed=len(segments), file_id=upload.file_id)

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------
    async def _segment(self, ctx: _RequestContext, text: str) -> list[TextSegment]:
        with ctx.log.step("segment_text") as record:
            options = ctx.options.segment_options or await asyncio.to_thread(
                recommend_segment_options,
                text,
                max_tokens_per_segment=ctx.options.max_tokens_per_segment,
                estimator=self._estimator,
            )
            segmenter = TextSegmenter(options, estimator=self._estimator)
            segments = await asyncio.to_thread(segmenter.segment, text)
            if not segments:
                raise RequestFailedError("No segments generated from message")
            record.tokens = sum(segment.estimated_tokens for segment in segments)
            record.detail = f"Created {len(segments)} segments ({options.boundary.value} boundary)"
        LOGGER.debug("Split message into %s segments", len(segments))
        return segments

    async def _send_segments(self, ctx: _RequestContext, segments: Sequence[TextSegment]) -> None:
        total = len(segments)
        for segment in segments:
            position = segment.ordinal + 1
            emit_progress(
                ctx.progress,
                ProgressEvent(
                    type="progress",
                    message=f"Sending part {position}/{total}",
                    step="send_segment",
                    current=position,
                    total=total,
                ),
            )
            handle = await self._send(
                ctx,
                format_segment_message(segment),
                step=f"send_segment_{position}",
                tokens=segment.estimated_tokens,
            )
            await self._poll(ctx, handle, step=f"await_segment_{position}")

    async def _consolidate(self, ctx: _RequestContext, prompt: str) -> str:
        emit_progress(
            ctx.progress,
            ProgressEvent(type="status", message="Consolidating answer", step="consolidation"),
        )
        handle = await self._send(ctx, prompt, step="consolidation")
        return await self._poll(ctx, handle, step="await_consolidation")

    async def _upload(self, ctx: _RequestContext, content: str) -> UploadResult:
        emit_progress(
            ctx.progress,
            ProgressEvent(type="status", message="Uploading content as file", step="upload_file"),
        )
        overrides = _upload_overrides(ctx.options.upload_options)
        with ctx.log.step("upload_file") as record:
            upload = await self.uploads.upload_text(content, **overrides)
            record.tokens = upload.tokens
            record.detail = f"File ID: {upload.file_id}"
        return upload

    async def _ask_about_file(self, ctx: _RequestContext, upload: UploadResult) -> str:
        handle = await self._send(
            ctx,
            ctx.options.file_prompt,
            step="send_file_reference",
            file_refs=[upload.file_id],
        )
        return await self._poll(ctx, handle, step="await_file_answer", extended=True)

    async def _send(
        self,
        ctx: _RequestContext,
        message: str,
        *,
        step: str,
        tokens: int | None = None,
        file_refs: Sequence[str] | None = None,
    ) -> ConversationHandle:
        with ctx.log.step(step, tokens=tokens) as record:
            if ctx.conversation_id is None:
                handle = await self._backend.create_conversation(message, file_refs)
            else:
                handle = await self._backend.continue_conversation(ctx.conversation_id, message, file_refs)
            record.conversation_id = handle.conversation_id
            record.request_id = handle.request_id
        ctx.conversation_id = handle.conversation_id
        ctx.request_id = handle.request_id
        return handle

    async def _poll(
        self,
        ctx: _RequestContext,
        handle: ConversationHandle,
        *,
        step: str,
        extended: bool = False,
    ) -> str:
        with ctx.log.step(
            step, conversation_id=handle.conversation_id, request_id=handle.request_id
        ) as record:
            answer = await self._poller.await_answer(
                handle.conversation_id,
                handle.request_id,
                max_attempts=ctx.options.max_poll_attempts,
                extended=extended,
            )
            record.tokens = self._estimator.estimate(answer)
        ctx.response_tokens += record.tokens
        return answer

    @staticmethod
    def _report_failure(reporter: ProgressReporter, exc: ConvoyError) -> None:
        LOGGER.error("Request failed: %s", exc)
        emit_progress(
            reporter,
            ProgressEvent(type="error", message=exc.message, step=exc.step, data=exc.to_dict()),
        )


_missing = set(ProcessingStrategy) - set(RequestOrchestrator._HANDLERS)
if _missing:
    raise RuntimeError(f"No handler registered for strategies: {sorted(s.value for s in _missing)}")


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def format_segment_message(segment: TextSegment) -> str:
    """Prefix a segment with its positional marker; a lone segment is sent as-is."""

    if segment.is_first and segment.is_last:
        return segment.content
    position = segment.ordinal + 1
    total = segment.segment_count
    if segment.is_first:
        marker = f"[This is a large message split into {total} parts. Part {position}/{total}]"
    elif segment.is_last:
        marker = f"[Continuing from previous parts. Final part {position}/{total}]"
    else:
        marker = f"[Continuing from previous parts. Part {position}/{total}]"
    return f"{marker}\n\n{segment.content}"


def split_for_hybrid(message: str, tokens: int, file_tokens: int) -> tuple[str, str]:
    """Split at the character offset approximating the first *file_tokens* tokens.

    The offset is a ratio of the whole-message estimate and is not re-measured.
    """

    if tokens <= 0:
        return message, ""
    split_point = min(len(message), math.floor(len(message) * file_tokens / tokens))
    return message[:split_point], message[split_point:]


def resolve_strategy(
    message: str,
    override: ProcessingStrategy | str | None = None,
    *,
    estimator: TokenCounterProtocol | None = None,
    thresholds: StrategyThresholds | None = None,
) -> ProcessingStrategy:
    """Return the explicit override if any, otherwise the strategy for the estimate."""

    explicit = parse_strategy(override)
    if explicit is not None:
        return explicit
    return select_strategy((estimator or default_estimator).estimate(message), thresholds)


def _upload_overrides(options: UploadOptions | None) -> dict[str, Any]:
    if options is None:
        return {}
    return {
        "filename": options.filename,
        "content_type": options.content_type,
        "auto_cleanup": options.auto_cleanup,
        "temp_dir": options.temp_dir,
        "max_retries": options.max_retries,
    }


async def handle_large_request(
    backend: BackendClient,
    message: str,
    *,
    options: RequestOptions | None = None,
    progress: ProgressTarget = None,
    estimator: TokenCounterProtocol | None = None,
    sleep: SleepFn = asyncio.sleep,
    **overrides: Any,
) -> RequestResult:
    """Convenience wrapper around a one-off :class:`RequestOrchestrator`."""

    orchestrator = RequestOrchestrator(backend, options, estimator=estimator, sleep=sleep)
    return await orchestrator.handle_large_request(message, progress=progress, **overrides)
