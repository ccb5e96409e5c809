"""CLI helper that sends a (possibly very large) message to the backend."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Sequence

from ..backend import HttpBackendClient
from ..errors import ConvoyError
from ..orchestrator import RequestOrchestrator
from ..progress import ProgressEvent
from ..settings import SettingsStore, redact_secret
from ..strategy import ProcessingStrategy
from ..utils.logging import configure_from_settings

LOGGER = logging.getLogger(__name__)


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Send a message through the large-request pipeline.")
    parser.add_argument("--file", type=Path, help="File containing the message. Reads stdin when omitted.")
    parser.add_argument("--text", help="Inline message. Overrides --file when provided.")
    parser.add_argument(
        "--strategy",
        choices=["auto", *(member.value for member in ProcessingStrategy)],
        help="Force a processing strategy instead of choosing one from the estimate.",
    )
    parser.add_argument("--conversation-id", help="Continue an existing backend conversation.")
    parser.add_argument("--settings", type=Path, help="Path to a settings JSON file.")
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    args = parser.parse_args(argv)

    message = _load_text(args.text, args.file)
    if not message:
        print("No input text provided.", file=sys.stderr)
        return 1

    overrides = {"force_strategy": args.strategy, "debug_logging": True if args.debug else None}
    settings = SettingsStore(args.settings).load(overrides=overrides)
    configure_from_settings(settings, to_file=False)
    if not settings.api_key:
        print("No API key configured; set CONVOY_API_KEY.", file=sys.stderr)
        return 2
    LOGGER.debug("Using backend %s with key %s", settings.base_url, redact_secret(settings.api_key))

    try:
        result = asyncio.run(_run(settings, message, args.conversation_id))
    except ConvoyError as exc:
        print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(result.answer)
    return 0


async def _run(settings, message: str, conversation_id: str | None):
    async with HttpBackendClient(settings.backend_settings()) as backend:
        orchestrator = RequestOrchestrator.from_settings(settings, backend, progress=_print_progress)
        return await orchestrator.handle_large_request(message, conversation_id=conversation_id)


def _print_progress(event: ProgressEvent) -> None:
    position = f" [{event.current}/{event.total}]" if event.current is not None else ""
    print(f"{event.type}{position}: {event.message}", file=sys.stderr)


def _load_text(inline: str | None, path: Path | None) -> str:
    if inline:
        return inline
    if path:
        return path.read_text(encoding="utf-8")
    return sys.stdin.read().strip()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
