"""Shared pytest fixtures."""

from __future__ import annotations

import os

import pytest

from convoy.tokens import ApproxCharCounter
from tests.helpers import FakeBackend, RecordingSleep


@pytest.fixture(autouse=True)
def _clear_convoy_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("CONVOY_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def char_counter() -> ApproxCharCounter:
    return ApproxCharCounter()


@pytest.fixture
def restore_logging(monkeypatch: pytest.MonkeyPatch):
    """Snapshot root logging state so tests can call ``setup_logging`` freely."""

    import logging

    from convoy.utils import logging as convoy_logging

    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    noisy = {name: logging.getLogger(name).level for name in ("asyncio", "httpx", "httpcore")}
    monkeypatch.setattr(convoy_logging, "_CONFIGURED", False)
    monkeypatch.setattr(convoy_logging, "_LOG_PATH", None)
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
    for name, noisy_level in noisy.items():
        logging.getLogger(name).setLevel(noisy_level)
    logging.captureWarnings(False)
