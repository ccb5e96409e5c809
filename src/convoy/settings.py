"""Settings dataclass and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from .backend import BackendSettings
from .errors import UnknownStrategyError
from .orchestrator import RequestOptions
from .polling import DEFAULT_MAX_POLL_ATTEMPTS
from .segmenter import Boundary, SegmentOptions
from .strategy import StrategyThresholds, parse_strategy
from .uploads import UploadOptions

__all__ = [
    "DEFAULT_BASE_URL",
    "Settings",
    "SettingsStore",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.coco.prod.toqan.ai/api"
_SETTINGS_DIR = Path.home() / ".convoy"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "CONVOY_API_KEY": "api_key",
    "CONVOY_BASE_URL": "base_url",
    "CONVOY_TEMP_DIR": "temp_dir",
    "CONVOY_FORCE_STRATEGY": "force_strategy",
    "CONVOY_SEGMENT_BOUNDARY": "segment_boundary",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "CONVOY_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "CONVOY_REQUEST_TIMEOUT": "request_timeout",
    "CONVOY_UPLOAD_TIMEOUT": "upload_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "CONVOY_MAX_POLL_ATTEMPTS": "max_poll_attempts",
    "CONVOY_UPLOAD_MAX_RETRIES": "upload_max_retries",
    "CONVOY_DIRECT_MAX_TOKENS": "direct_max_tokens",
    "CONVOY_CHUNKED_MAX_TOKENS": "chunked_max_tokens",
    "CONVOY_FILE_MAX_TOKENS": "file_max_tokens",
    "CONVOY_MAX_TOKENS_PER_SEGMENT": "max_tokens_per_segment",
    "CONVOY_OVERLAP_TOKENS": "overlap_tokens",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class Settings:
    """User-configurable settings for the backend connection and request handling."""

    base_url: str = DEFAULT_BASE_URL
    api_key: str = field(default="", repr=False)
    request_timeout: float = 60.0
    upload_timeout: float = 120.0
    max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS
    upload_max_retries: int = 3
    temp_dir: str | None = None
    force_strategy: str | None = None
    direct_max_tokens: int = 115_000
    chunked_max_tokens: int = 200_000
    file_max_tokens: int = 500_000
    max_tokens_per_segment: int = 115_000
    overlap_tokens: int = 1_000
    segment_boundary: str | None = None
    debug_logging: bool = False

    def backend_settings(self) -> BackendSettings:
        return BackendSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            request_timeout=self.request_timeout,
            upload_timeout=self.upload_timeout,
        )

    def thresholds(self) -> StrategyThresholds:
        return StrategyThresholds(
            direct_max=self.direct_max_tokens,
            chunked_max=self.chunked_max_tokens,
            file_max=self.file_max_tokens,
        )

    def segment_options(self) -> SegmentOptions | None:
        """Fixed segmentation options, or ``None`` to pick them per message."""

        if not self.segment_boundary:
            return None
        return SegmentOptions(
            max_tokens_per_segment=self.max_tokens_per_segment,
            overlap_tokens=self.overlap_tokens,
            boundary=Boundary(self.segment_boundary),
        )

    def upload_options(self) -> UploadOptions:
        return UploadOptions(temp_dir=self.temp_dir, max_retries=self.upload_max_retries)

    def request_options(self) -> RequestOptions:
        return RequestOptions(
            strategy=self.force_strategy,
            max_poll_attempts=self.max_poll_attempts,
            segment_options=self.segment_options(),
            max_tokens_per_segment=self.max_tokens_per_segment,
            upload_options=self.upload_options(),
            thresholds=self.thresholds(),
            hybrid_file_tokens=self.chunked_max_tokens,
        )


class SettingsStore:
    """Persistence adapter for :class:`Settings`.

    The API key is never written to disk; supply it through
    ``CONVOY_API_KEY`` or a runtime override.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            LOGGER.debug("Settings loaded from %s: %s", self._path, sorted(data))

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        settings = self._apply_env_overrides(settings)
        return self._validate(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = asdict(settings)
        payload.pop("api_key", None)
        payload["version"] = _SETTINGS_VERSION
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        accepted = {
            key: value
            for key, value in overrides.items()
            if key in _SETTINGS_FIELDS and value is not None
        }
        if not accepted:
            return settings
        LOGGER.debug("Applying %s settings overrides: %s", source, sorted(accepted))
        return replace(settings, **accepted)

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for table, parse, kind in _ENV_TABLES:
            for env_name, field_name in table.items():
                raw = os.environ.get(env_name)
                if raw is None:
                    continue
                try:
                    overrides[field_name] = parse(raw)
                except ValueError:
                    LOGGER.warning("Environment override %s=%s is not a valid %s", env_name, raw, kind)
        return self._apply_overrides(settings, overrides, source="environment")

    def _validate(self, settings: Settings) -> Settings:
        corrections: Dict[str, Any] = {}
        try:
            forced = parse_strategy(settings.force_strategy)
        except UnknownStrategyError:
            LOGGER.warning("Unknown force_strategy '%s'; using automatic selection.", settings.force_strategy)
            corrections["force_strategy"] = None
        else:
            corrections["force_strategy"] = forced.value if forced else None
        if settings.segment_boundary:
            boundary = settings.segment_boundary.strip().lower()
            if boundary in {member.value for member in Boundary}:
                corrections["segment_boundary"] = boundary
            else:
                LOGGER.warning(
                    "Unknown segment_boundary '%s'; choosing boundaries per message.",
                    settings.segment_boundary,
                )
                corrections["segment_boundary"] = None
        try:
            settings.thresholds()
        except ValueError as exc:
            LOGGER.warning("Invalid strategy thresholds (%s); restoring defaults.", exc)
            defaults = Settings()
            corrections["direct_max_tokens"] = defaults.direct_max_tokens
            corrections["chunked_max_tokens"] = defaults.chunked_max_tokens
            corrections["file_max_tokens"] = defaults.file_max_tokens
        return replace(settings, **corrections)


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if key in _PERSISTED_FIELDS}


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in _TRUE_VALUES


def _parse_int(raw: str) -> int:
    return int(raw, 10)


_SETTINGS_FIELDS = frozenset(item.name for item in fields(Settings))
_PERSISTED_FIELDS = _SETTINGS_FIELDS - {"api_key"}
_ENV_TABLES: tuple[tuple[Mapping[str, str], Callable[[str], Any], str], ...] = (
    (_ENV_OVERRIDES, str, "string"),
    (_BOOL_ENV_OVERRIDES, _parse_bool, "boolean"),
    (_INT_ENV_OVERRIDES, _parse_int, "integer"),
    (_FLOAT_ENV_OVERRIDES, float, "float"),
)


def redact_secret(value: str) -> str:
    """Mask all but the first and last two characters of a secret."""

    secret = (value or "").strip()
    if len(secret) <= 4:
        return "*" * len(secret)
    return secret[:2] + "*" * (len(secret) - 4) + secret[-2:]
