"""Boundary-preserving segmentation of oversized text.

Text that does not fit the per-segment ceiling is split into atomic units
(paragraphs, sentences or words) and greedily packed into segments. Each new
segment may be seeded with a short overlap extract from its predecessor so
the backend keeps some context across the split. A single unit that is
larger than the ceiling is emitted on its own rather than re-split.

Offsets on :class:`TextSegment` always point into the original source: the
overlap text is spliced into ``content`` but kept out of the offsets and is
reported separately as ``overlap_text``.

The sentence splitter breaks after ``.``, ``!`` or ``?`` followed by
whitespace and an uppercase letter. It has no notion of abbreviations or
decimals, so inputs such as ``"e.g. Widgets."`` are over-split.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator

from .tokens import CHARS_PER_TOKEN, TokenCounterProtocol, default_estimator

__all__ = [
    "Boundary",
    "SegmentOptions",
    "TextSegment",
    "TextSegmenter",
    "recommend_segment_options",
    "segment_text",
]

LOGGER = logging.getLogger(__name__)

OVERLAP_MARKER = "..."
_SOFT_CUT_LOOKBACK = 100
_MAX_OVERLAP_TOKENS = 2_000
_OVERLAP_RATIO = 0.02


class Boundary(Enum):
    """Granularity of the atomic units a segment is built from."""

    PARAGRAPH = "paragraph"
    SENTENCE = "sentence"
    WORD = "word"
    CHARACTER = "character"


_UNIT_RULES: dict[Boundary, tuple[re.Pattern[str], str]] = {
    Boundary.PARAGRAPH: (re.compile(r"\n\s*\n"), "\n\n"),
    Boundary.SENTENCE: (re.compile(r"(?<=[.!?])\s+(?=[A-Z])"), " "),
    Boundary.WORD: (re.compile(r"\s+"), " "),
}
_SENTENCE_COUNT_RE = re.compile(r"[.!?]+")


@dataclass(slots=True, frozen=True)
class SegmentOptions:
    """Tuning knobs for :class:`TextSegmenter`."""

    max_tokens_per_segment: int = 115_000
    overlap_tokens: int = 1_000
    boundary: Boundary = Boundary.PARAGRAPH
    prefix: str = ""
    suffix: str = ""

    def __post_init__(self) -> None:
        if self.max_tokens_per_segment <= 0:
            raise ValueError("max_tokens_per_segment must be a positive integer")
        if self.overlap_tokens < 0:
            raise ValueError("overlap_tokens must be a non-negative integer")
        if not isinstance(self.boundary, Boundary):
            object.__setattr__(self, "boundary", Boundary(str(self.boundary).strip().lower()))


@dataclass(slots=True, frozen=True)
class TextSegment:
    """One bounded, ordered slice of a larger message."""

    content: str
    estimated_tokens: int
    ordinal: int
    segment_count: int
    is_first: bool
    is_last: bool
    start_offset: int
    end_offset: int
    overlap_text: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "ordinal": self.ordinal,
            "segment_count": self.segment_count,
            "estimated_tokens": self.estimated_tokens,
            "is_first": self.is_first,
            "is_last": self.is_last,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "length": len(self.content),
        }


@dataclass(slots=True)
class _Draft:
    body: str
    tokens: int
    start: int
    end: int
    overlap_text: str = ""


@dataclass(slots=True)
class _Bucket:
    parts: list[str] = field(default_factory=list)
    tokens: int = 0
    unit_count: int = 0
    start: int = 0
    end: int = 0
    overlap_text: str = ""


class TextSegmenter:
    """Split text into segments that respect a token ceiling."""

    def __init__(
        self,
        options: SegmentOptions | None = None,
        *,
        estimator: TokenCounterProtocol | None = None,
    ) -> None:
        self.options = options or SegmentOptions()
        self._estimator = estimator or default_estimator

    def segment(self, text: str) -> list[TextSegment]:
        if not text or not text.strip():
            return []

        total_tokens = self._estimator.estimate(text)
        if total_tokens <= self.options.max_tokens_per_segment:
            return [
                TextSegment(
                    content=text,
                    estimated_tokens=total_tokens,
                    ordinal=0,
                    segment_count=1,
                    is_first=True,
                    is_last=True,
                    start_offset=0,
                    end_offset=len(text),
                )
            ]

        boundary = self.options.boundary
        if boundary is Boundary.CHARACTER:
            drafts = self._split_characters(text)
        else:
            pattern, separator = _UNIT_RULES[boundary]
            drafts = self._bucket_units(text, pattern, separator)
        LOGGER.debug(
            "Segmented %s chars (~%s tokens) into %s %s segment(s)",
            len(text),
            total_tokens,
            len(drafts),
            boundary.value,
        )
        return self._finalize(drafts)

    # ------------------------------------------------------------------
    # Unit bucketing
    # ------------------------------------------------------------------
    def _bucket_units(self, text: str, pattern: re.Pattern[str], separator: str) -> list[_Draft]:
        limit = self.options.max_tokens_per_segment
        separator_tokens = self._estimator.estimate(separator)
        drafts: list[_Draft] = []
        bucket = _Bucket()

        for unit, unit_start, unit_end in _split_units(text, pattern):
            unit_tokens = self._estimator.estimate(unit)
            joint = separator_tokens if bucket.parts else 0
            if bucket.unit_count and bucket.tokens + joint + unit_tokens > limit:
                closed = separator.join(bucket.parts)
                drafts.append(_Draft(closed, bucket.tokens, bucket.start, bucket.end, bucket.overlap_text))
                overlap = self._extract_overlap(closed, limit - unit_tokens - separator_tokens)
                bucket = _Bucket()
                if overlap:
                    bucket.parts.append(overlap)
                    bucket.tokens = self._estimator.estimate(overlap)
                    bucket.overlap_text = overlap
                joint = separator_tokens if bucket.parts else 0

            if not bucket.unit_count:
                bucket.start = unit_start
            bucket.parts.append(unit)
            bucket.tokens += joint + unit_tokens
            bucket.unit_count += 1
            bucket.end = unit_end

        if bucket.unit_count:
            drafts.append(
                _Draft(separator.join(bucket.parts), bucket.tokens, bucket.start, bucket.end, bucket.overlap_text)
            )
        return drafts

    def _extract_overlap(self, closed: str, budget: int) -> str:
        """Return the overlap seed for the next segment, trimmed to *budget* tokens."""

        if self.options.overlap_tokens <= 0 or budget <= 0:
            return ""
        words = closed.split()
        count = min(self.options.overlap_tokens // 2, len(words))
        while count > 0:
            candidate = OVERLAP_MARKER + " ".join(words[-count:])
            if self._estimator.estimate(candidate) <= budget:
                return candidate
            count //= 2
        return ""

    # ------------------------------------------------------------------
    # Character windows
    # ------------------------------------------------------------------
    def _split_characters(self, text: str) -> list[_Draft]:
        limit = self.options.max_tokens_per_segment
        window = max(1, limit * CHARS_PER_TOKEN)
        drafts: list[_Draft] = []
        start = 0
        while start < len(text):
            end = _soft_cut(text, start, min(start + window, len(text)))
            piece = text[start:end]
            tokens = self._estimator.estimate(piece)
            while tokens > limit and end - start > 1:
                # Dense content: shrink the window proportionally and cut again.
                end = _soft_cut(text, start, start + max(1, (end - start) * limit // tokens))
                piece = text[start:end]
                tokens = self._estimator.estimate(piece)
            drafts.append(_Draft(piece, tokens, start, end))
            start = end
        return drafts

    def _finalize(self, drafts: list[_Draft]) -> list[TextSegment]:
        count = len(drafts)
        prefix, suffix = self.options.prefix, self.options.suffix
        return [
            TextSegment(
                content=f"{prefix}{draft.body}{suffix}",
                estimated_tokens=draft.tokens,
                ordinal=index,
                segment_count=count,
                is_first=index == 0,
                is_last=index == count - 1,
                start_offset=draft.start,
                end_offset=draft.end,
                overlap_text=draft.overlap_text,
            )
            for index, draft in enumerate(drafts)
        ]


def _split_units(text: str, pattern: re.Pattern[str]) -> Iterator[tuple[str, int, int]]:
    """Yield non-empty units between separator matches with their source offsets."""

    cursor = 0
    for match in pattern.finditer(text):
        if match.start() > cursor:
            yield text[cursor : match.start()], cursor, match.start()
        cursor = match.end()
    if cursor < len(text):
        yield text[cursor:], cursor, len(text)


def _soft_cut(text: str, start: int, end: int) -> int:
    """Move *end* back to a nearby whitespace character when one exists."""

    if end >= len(text):
        return len(text)
    for position in range(end, max(start, end - _SOFT_CUT_LOOKBACK), -1):
        if text[position].isspace():
            return position
    return end


def segment_text(
    text: str,
    options: SegmentOptions | None = None,
    *,
    estimator: TokenCounterProtocol | None = None,
) -> list[TextSegment]:
    """Convenience wrapper around :class:`TextSegmenter`."""

    return TextSegmenter(options, estimator=estimator).segment(text)


def recommend_segment_options(
    text: str,
    *,
    max_tokens_per_segment: int = 115_000,
    estimator: TokenCounterProtocol | None = None,
) -> SegmentOptions:
    """Pick a boundary and overlap suited to the structure of *text*."""

    counter = estimator or default_estimator
    total_tokens = counter.estimate(text)
    if total_tokens <= max_tokens_per_segment:
        return SegmentOptions(max_tokens_per_segment=max_tokens_per_segment)

    paragraphs = len(_UNIT_RULES[Boundary.PARAGRAPH][0].split(text))
    sentences = len(_SENTENCE_COUNT_RE.split(text))
    if paragraphs > 10:
        boundary = Boundary.PARAGRAPH
    elif sentences > 50:
        boundary = Boundary.SENTENCE
    else:
        boundary = Boundary.WORD
    return SegmentOptions(
        max_tokens_per_segment=max_tokens_per_segment,
        overlap_tokens=min(_MAX_OVERLAP_TOKENS, int(total_tokens * _OVERLAP_RATIO)),
        boundary=boundary,
    )
