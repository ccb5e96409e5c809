"""CLI helper to inspect token estimates, strategy and segmentation for text."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Sequence

from ..segmenter import Boundary, SegmentOptions, recommend_segment_options, segment_text
from ..strategy import StrategyThresholds
from ..tokens import ApproxCharCounter, HeuristicTokenEstimator, detect_content_type, detect_language


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect token estimates for the given text input.")
    parser.add_argument(
        "--file",
        type=Path,
        help="Optional file containing the text to inspect. Reads stdin when omitted and --text not provided.",
    )
    parser.add_argument("--text", help="Inline text to inspect. Overrides --file when provided.")
    parser.add_argument(
        "--segments",
        action="store_true",
        help="Also preview how the text would be segmented.",
    )
    parser.add_argument("--max-tokens", type=int, help="Per-segment token ceiling for the preview.")
    parser.add_argument(
        "--boundary",
        choices=[member.value for member in Boundary],
        help="Segment boundary for the preview. Chosen from the text structure when omitted.",
    )
    args = parser.parse_args(argv)

    payload = _load_text(args.text, args.file)
    if not payload:
        print("No input text provided.", file=sys.stderr)
        return 1

    estimator = HeuristicTokenEstimator(thresholds=StrategyThresholds())
    estimate = estimator.estimate(payload)

    print(f"characters: {len(payload)}")
    print(f"tokens (heuristic): {estimate}")
    print(f"tokens (chars/4): {ApproxCharCounter().estimate(payload)}")
    print(f"content type: {detect_content_type(payload).value}")
    print(f"language: {detect_language(payload).value}")
    print(f"strategy: {estimator.recommended_strategy(payload).value}")

    if args.segments:
        options = _segment_options(payload, args.max_tokens, args.boundary, estimator)
        segments = segment_text(payload, options, estimator=estimator)
        print(f"segments: {len(segments)} ({options.boundary.value} boundary)")
        for segment in segments:
            print(
                f"  #{segment.ordinal + 1}: {segment.estimated_tokens} tokens, "
                f"chars {segment.start_offset}-{segment.end_offset}"
            )
    return 0


def _load_text(inline: str | None, path: Path | None) -> str:
    if inline:
        return inline
    if path:
        return path.read_text(encoding="utf-8")
    data = sys.stdin.read()
    return data.strip()


def _segment_options(
    payload: str,
    max_tokens: int | None,
    boundary: str | None,
    estimator: HeuristicTokenEstimator,
) -> SegmentOptions:
    ceiling = max_tokens or SegmentOptions().max_tokens_per_segment
    if boundary:
        return SegmentOptions(max_tokens_per_segment=ceiling, boundary=Boundary(boundary))
    return recommend_segment_options(payload, max_tokens_per_segment=ceiling, estimator=estimator)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
