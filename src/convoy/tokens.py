"""Heuristic token estimation for backend-billable text.

The backend publishes no tokenizer, so counts are approximated from the
character length (about four characters per token) refined by a handful of
content, language and texture factors. Estimates are deterministic and
side-effect free; they are tuned to keep strategy selection conservative,
not to be exact.
"""

from __future__ import annotations

import math
import re
from enum import Enum
from typing import Protocol

from .strategy import ProcessingStrategy, StrategyThresholds, select_strategy

__all__ = [
    "ApproxCharCounter",
    "ContentType",
    "HeuristicTokenEstimator",
    "Language",
    "TokenCounterProtocol",
    "default_estimator",
    "estimate_tokens",
    "exceeds_limit",
    "recommended_strategy",
]

CHARS_PER_TOKEN = 4
DEFAULT_LIMIT = 120_000
_LANGUAGE_SAMPLE_WORDS = 100
_REPETITION_MIN_CHARS = 100
_REPETITION_MIN_WORDS = 10
_REPETITION_THRESHOLD = 0.3
_WHITESPACE_THRESHOLD = 0.25

_CODE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"function\s+\w+\s*\("),
    re.compile(r"class\s+\w+"),
    re.compile(r"//.*$", re.MULTILINE),
)
_STRUCTURED_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\s*[\{\[]"),
    re.compile(r'"\w+":\s*["\d\[\{]'),
    re.compile(r"^[^\S\n]*\w+:\s*.+$", re.MULTILINE),
)
_IMPORT_RE = re.compile(r"import\s+")
_TAG_OPEN_RE = re.compile(r"</?\w")
_NATURAL_LANGUAGE_RE = re.compile(r"[A-Za-z\s.,!?;:'\"()-]+")
_WHITESPACE_RE = re.compile(r"\s")

_ENGLISH_WORDS = frozenset(
    {
        "the", "and", "that", "with", "for", "you", "this", "but", "his", "from",
        "they", "she", "her", "been", "than", "what", "were", "said", "each", "which",
    }
)
_PORTUGUESE_WORDS = frozenset(
    {
        "que", "não", "para", "com", "uma", "mais", "muito", "quando", "onde", "como",
        "também", "então", "porque", "sobre", "depois", "apenas", "assim", "ainda",
    }
)


class ContentType(Enum):
    """Content families with distinct token density."""

    CODE = "code"
    STRUCTURED = "structured_data"
    NATURAL_LANGUAGE = "natural_language"
    MIXED = "mixed"


class Language(Enum):
    """Languages recognised by the word-list heuristic."""

    ENGLISH = "english"
    PORTUGUESE = "portuguese"
    MIXED = "mixed"


_CONTENT_FACTORS: dict[ContentType, float] = {
    ContentType.CODE: 1.15,
    ContentType.STRUCTURED: 1.10,
    ContentType.NATURAL_LANGUAGE: 0.85,
    ContentType.MIXED: 1.0,
}
_LANGUAGE_FACTORS: dict[Language, float] = {
    Language.ENGLISH: 0.95,
    Language.PORTUGUESE: 1.05,
    Language.MIXED: 1.0,
}


class TokenCounterProtocol(Protocol):
    """Anything able to estimate the token count of a string."""

    def estimate(self, text: str) -> int:
        ...


class ApproxCharCounter:
    """Plain ``ceil(chars / 4)`` counter without content refinements."""

    def __init__(self, *, chars_per_token: int = CHARS_PER_TOKEN) -> None:
        self._chars_per_token = max(1, int(chars_per_token))

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        return max(1, math.ceil(len(text) / self._chars_per_token))


class HeuristicTokenEstimator:
    """Content-aware estimator and the strategy helpers derived from it."""

    def __init__(self, *, thresholds: StrategyThresholds | None = None) -> None:
        self.thresholds = thresholds or StrategyThresholds()

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        base = math.ceil(len(text) / CHARS_PER_TOKEN)
        content = _CONTENT_FACTORS[detect_content_type(text)]
        language = _LANGUAGE_FACTORS[detect_language(text)]
        texture = 1.0
        if repetitiveness(text) > _REPETITION_THRESHOLD:
            texture *= 0.9
        if len(_WHITESPACE_RE.findall(text)) / len(text) > _WHITESPACE_THRESHOLD:
            texture *= 1.05
        return max(1, math.ceil(base * content * language * texture))

    def exceeds(self, text: str, limit: int = DEFAULT_LIMIT) -> bool:
        return self.estimate(text) > limit

    def recommended_strategy(self, text: str) -> ProcessingStrategy:
        return select_strategy(self.estimate(text), self.thresholds)


def detect_content_type(text: str) -> ContentType:
    code_score = sum(1 for pattern in _CODE_PATTERNS if pattern.search(text))
    if _has_import_from(text):
        code_score += 1
    if _has_pair(text, "{", "}"):
        code_score += 1
    if _has_pair(text, "/*", "*/"):
        code_score += 1
    if code_score >= 2:
        return ContentType.CODE
    structured_score = sum(1 for pattern in _STRUCTURED_PATTERNS if pattern.search(text))
    if _has_tag(text):
        structured_score += 1
    if structured_score >= 2:
        return ContentType.STRUCTURED
    if _NATURAL_LANGUAGE_RE.fullmatch(text):
        return ContentType.NATURAL_LANGUAGE
    return ContentType.MIXED


def detect_language(text: str) -> Language:
    words = text.lower().split()[:_LANGUAGE_SAMPLE_WORDS]
    english = sum(1 for word in words if word in _ENGLISH_WORDS)
    portuguese = sum(1 for word in words if word in _PORTUGUESE_WORDS)
    if portuguese > english and portuguese > 2:
        return Language.PORTUGUESE
    if english > portuguese and english > 2:
        return Language.ENGLISH
    return Language.MIXED


def repetitiveness(text: str) -> float:
    """Return the share of repeated words (0 = all unique)."""

    if len(text) < _REPETITION_MIN_CHARS:
        return 0.0
    words = text.lower().split()
    if len(words) < _REPETITION_MIN_WORDS:
        return 0.0
    return min(1.0, max(0.0, 1 - len(set(words)) / len(words)))


def _has_pair(text: str, opener: str, closer: str) -> bool:
    # Linear equivalent of searching for ``opener ... closer`` with a regex.
    start = text.find(opener)
    return start != -1 and text.find(closer, start + len(opener)) != -1


def _has_import_from(text: str) -> bool:
    """Report ``import <ws> ... from`` with ``from`` on the line where the whitespace ends."""

    checked_until = -1
    for match in _IMPORT_RE.finditer(text):
        start = match.end()
        if start <= checked_until:
            continue
        line_end = text.find("\n", start)
        if line_end == -1:
            line_end = len(text)
        if text.find("from", start, line_end) != -1:
            return True
        checked_until = line_end
    return False


def _has_tag(text: str) -> bool:
    # Same answer as ``</?\w+[^>]*>``: the earliest tag opener needs a later ``>``.
    opener = _TAG_OPEN_RE.search(text)
    return opener is not None and text.find(">", opener.end()) != -1


default_estimator = HeuristicTokenEstimator()


def estimate_tokens(text: str) -> int:
    return default_estimator.estimate(text)


def exceeds_limit(text: str, limit: int = DEFAULT_LIMIT) -> bool:
    return default_estimator.exceeds(text, limit)


def recommended_strategy(text: str, thresholds: StrategyThresholds | None = None) -> ProcessingStrategy:
    if thresholds is None:
        return default_estimator.recommended_strategy(text)
    return select_strategy(default_estimator.estimate(text), thresholds)
