"""Adapt arbitrarily large requests to a token-bounded conversational backend."""

from .backend import AnswerStatus, BackendClient, BackendSettings, ConversationHandle, HttpBackendClient
from .errors import (
    BackendTransportError,
    ConvoyError,
    EmptyContentError,
    ErrorCode,
    PollTimeoutError,
    RequestFailedError,
    UnknownStrategyError,
    UploadFailedError,
)
from .orchestrator import (
    ProcessingStep,
    RequestOptions,
    RequestOrchestrator,
    RequestResult,
    handle_large_request,
    resolve_strategy,
)
from .polling import CompletionPoller
from .progress import (
    BufferedProgressReporter,
    CallbackProgressReporter,
    InMemoryProgressSink,
    NullProgressReporter,
    ProgressEvent,
    ProgressReporter,
    ProgressStream,
)
from .segmenter import Boundary, SegmentOptions, TextSegment, TextSegmenter, recommend_segment_options, segment_text
from .settings import Settings, SettingsStore
from .strategy import ProcessingStrategy, StrategyThresholds, parse_strategy, select_strategy
from .tokens import HeuristicTokenEstimator, estimate_tokens, exceeds_limit, recommended_strategy
from .uploads import UploadOptions, UploadResult, UploadService, estimate_upload_time, should_use_file_upload

__all__ = [
    "AnswerStatus",
    "BackendClient",
    "BackendSettings",
    "BackendTransportError",
    "Boundary",
    "BufferedProgressReporter",
    "CallbackProgressReporter",
    "CompletionPoller",
    "ConversationHandle",
    "ConvoyError",
    "EmptyContentError",
    "ErrorCode",
    "HeuristicTokenEstimator",
    "HttpBackendClient",
    "InMemoryProgressSink",
    "NullProgressReporter",
    "PollTimeoutError",
    "ProcessingStep",
    "ProcessingStrategy",
    "ProgressEvent",
    "ProgressReporter",
    "ProgressStream",
    "RequestFailedError",
    "RequestOptions",
    "RequestOrchestrator",
    "RequestResult",
    "SegmentOptions",
    "Settings",
    "SettingsStore",
    "StrategyThresholds",
    "TextSegment",
    "TextSegmenter",
    "UnknownStrategyError",
    "UploadFailedError",
    "UploadOptions",
    "UploadResult",
    "UploadService",
    "estimate_tokens",
    "estimate_upload_time",
    "exceeds_limit",
    "handle_large_request",
    "parse_strategy",
    "recommend_segment_options",
    "recommended_strategy",
    "resolve_strategy",
    "segment_text",
    "select_strategy",
    "should_use_file_upload",
]
