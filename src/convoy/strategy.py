"""Strategy selection for oversized requests."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .errors import UnknownStrategyError

__all__ = [
    "AUTO",
    "ProcessingStrategy",
    "StrategyThresholds",
    "parse_strategy",
    "select_strategy",
]

AUTO = "auto"
_ALIASES: dict[str, str] = {"chunks": "chunked"}


class ProcessingStrategy(Enum):
    """Closed set of request-handling plans."""

    DIRECT = "direct"
    CHUNKED = "chunked"
    FILE = "file"
    HYBRID = "hybrid"

    @property
    def uses_file_upload(self) -> bool:
        return self in (ProcessingStrategy.FILE, ProcessingStrategy.HYBRID)


@dataclass(slots=True, frozen=True)
class StrategyThresholds:
    """Inclusive upper bounds of each strategy's token interval.

    The four intervals ``[0, direct_max]``, ``(direct_max, chunked_max]``,
    ``(chunked_max, file_max]`` and ``(file_max, inf)`` cover every estimate
    exactly once.
    """

    direct_max: int = 115_000
    chunked_max: int = 200_000
    file_max: int = 500_000

    def __post_init__(self) -> None:
        if not 0 <= self.direct_max <= self.chunked_max <= self.file_max:
            raise ValueError(
                "Strategy thresholds must satisfy 0 <= direct_max <= chunked_max <= file_max"
            )


def select_strategy(tokens: int, thresholds: StrategyThresholds | None = None) -> ProcessingStrategy:
    """Map an estimated token count onto its strategy interval."""

    limits = thresholds or StrategyThresholds()
    tokens = max(0, int(tokens))
    if tokens <= limits.direct_max:
        return ProcessingStrategy.DIRECT
    if tokens <= limits.chunked_max:
        return ProcessingStrategy.CHUNKED
    if tokens <= limits.file_max:
        return ProcessingStrategy.FILE
    return ProcessingStrategy.HYBRID


def parse_strategy(value: ProcessingStrategy | str | None) -> ProcessingStrategy | None:
    """Normalize an explicit override.

    ``None``, empty strings and ``"auto"`` mean "no override" and return
    ``None``. Anything outside the closed set raises
    :class:`~convoy.errors.UnknownStrategyError`.
    """

    if value is None or isinstance(value, ProcessingStrategy):
        return value
    if not isinstance(value, str):
        raise UnknownStrategyError(value)
    key = value.strip().lower()
    if not key or key == AUTO:
        return None
    key = _ALIASES.get(key, key)
    try:
        return ProcessingStrategy(key)
    except ValueError as exc:
        raise UnknownStrategyError(value) from exc
