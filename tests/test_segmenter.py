"""Tests for boundary-preserving text segmentation."""

from __future__ import annotations

import pytest

from convoy.segmenter import Boundary, SegmentOptions, TextSegmenter, recommend_segment_options, segment_text
from convoy.tokens import ApproxCharCounter


def _paragraph(index: int, length: int = 40) -> str:
    head = f"para{index:02d} "
    return head + "a" * (length - len(head))


def _document(count: int) -> str:
    return "\n\n".join(_paragraph(index) for index in range(count))


@pytest.fixture
def counter() -> ApproxCharCounter:
    return ApproxCharCounter()


class TestTrivialInputs:
    @pytest.mark.parametrize("text", ["", "   ", "\n\n\t"])
    def test_blank_text_yields_no_segments(self, text: str, counter: ApproxCharCounter) -> None:
        assert segment_text(text, estimator=counter) == []

    def test_text_under_ceiling_is_single_segment(self, counter: ApproxCharCounter) -> None:
        text = _document(3)

        segments = segment_text(text, SegmentOptions(max_tokens_per_segment=1_000), estimator=counter)

        assert len(segments) == 1
        only = segments[0]
        assert only.content == text
        assert only.is_first and only.is_last
        assert (only.ordinal, only.segment_count) == (0, 1)
        assert (only.start_offset, only.end_offset) == (0, len(text))


class TestParagraphBucketing:
    def test_paragraphs_are_grouped_greedily(self, counter: ApproxCharCounter) -> None:
        # Each paragraph is 10 tokens, the separator 1: two paragraphs fit in 25.
        text = _document(6)
        options = SegmentOptions(max_tokens_per_segment=25, overlap_tokens=0)

        segments = segment_text(text, options, estimator=counter)

        assert [segment.ordinal for segment in segments] == [0, 1, 2]
        assert all(segment.segment_count == 3 for segment in segments)
        assert [segment.is_first for segment in segments] == [True, False, False]
        assert [segment.is_last for segment in segments] == [False, False, True]
        assert "\n\n".join(segment.content for segment in segments) == text
        for segment in segments:
            assert text[segment.start_offset : segment.end_offset] == segment.content
            assert segment.estimated_tokens == counter.estimate(segment.content) == 21

    def test_overlap_seeds_next_segment_within_ceiling(self, counter: ApproxCharCounter) -> None:
        text = _document(6)
        options = SegmentOptions(max_tokens_per_segment=25, overlap_tokens=8)

        segments = segment_text(text, options, estimator=counter)

        assert len(segments) > 1
        assert segments[0].overlap_text == ""
        second = segments[1]
        assert second.overlap_text.startswith("...")
        assert second.overlap_text.endswith(_paragraph(1))
        assert second.content.startswith(second.overlap_text)
        for segment in segments:
            assert counter.estimate(segment.content) <= 25
        restored = "\n\n".join(
            segment.content[len(segment.overlap_text) :].lstrip("\n") for segment in segments
        )
        assert restored == text

    def test_oversized_unit_is_emitted_alone(self, counter: ApproxCharCounter) -> None:
        big = "b" * 400
        text = "\n\n".join([_paragraph(0), big, _paragraph(2)])
        options = SegmentOptions(max_tokens_per_segment=25, overlap_tokens=8)

        segments = segment_text(text, options, estimator=counter)

        assert [segment.content for segment in segments] == [_paragraph(0), big, _paragraph(2)]
        assert segments[1].estimated_tokens == 100

    def test_prefix_and_suffix_wrap_each_segment(self, counter: ApproxCharCounter) -> None:
        options = SegmentOptions(max_tokens_per_segment=25, overlap_tokens=0, prefix="<<", suffix=">>")

        segments = segment_text(_document(6), options, estimator=counter)

        assert len(segments) == 3
        for segment in segments:
            assert segment.content.startswith("<<")
            assert segment.content.endswith(">>")


class TestOtherBoundaries:
    def test_sentences_split_after_terminal_punctuation(self, counter: ApproxCharCounter) -> None:
        text = "First sentence here. Second one follows! Third is a question? Fourth ends."
        options = SegmentOptions(max_tokens_per_segment=6, overlap_tokens=0, boundary="sentence")

        segments = segment_text(text, options, estimator=counter)

        assert [segment.content for segment in segments] == [
            "First sentence here.",
            "Second one follows!",
            "Third is a question?",
            "Fourth ends.",
        ]

    def test_abbreviations_are_over_split(self, counter: ApproxCharCounter) -> None:
        text = "Dr. Smith arrived. He sat down."
        options = SegmentOptions(max_tokens_per_segment=2, overlap_tokens=0, boundary=Boundary.SENTENCE)

        segments = segment_text(text, options, estimator=counter)

        assert [segment.content for segment in segments] == ["Dr.", "Smith arrived.", "He sat down."]

    def test_word_boundary_keeps_word_order(self, counter: ApproxCharCounter) -> None:
        words = [f"word{index:03d}" for index in range(60)]
        text = " ".join(words)
        options = SegmentOptions(max_tokens_per_segment=20, overlap_tokens=0, boundary="word")

        segments = segment_text(text, options, estimator=counter)

        assert len(segments) > 1
        assert " ".join(segment.content for segment in segments).split() == words
        assert all(segment.estimated_tokens <= 20 for segment in segments)

    def test_character_windows_prefer_whitespace(self, counter: ApproxCharCounter) -> None:
        text = "abcdefghi " * 10
        options = SegmentOptions(max_tokens_per_segment=5, overlap_tokens=0, boundary="character")

        segments = TextSegmenter(options, estimator=counter).segment(text)

        assert "".join(segment.content for segment in segments) == text
        for segment in segments:
            assert len(segment.content) <= 20
            assert segment.end_offset == len(text) or text[segment.end_offset].isspace()

    def test_character_windows_hard_cut_without_whitespace(self, counter: ApproxCharCounter) -> None:
        text = "a" * 100
        options = SegmentOptions(max_tokens_per_segment=5, overlap_tokens=0, boundary="character")

        segments = segment_text(text, options, estimator=counter)

        assert [len(segment.content) for segment in segments] == [20] * 5
        assert [segment.ordinal for segment in segments] == list(range(5))


class TestOptions:
    def test_invalid_options_are_rejected(self) -> None:
        with pytest.raises(ValueError):
            SegmentOptions(max_tokens_per_segment=0)
        with pytest.raises(ValueError):
            SegmentOptions(overlap_tokens=-1)
        with pytest.raises(ValueError):
            SegmentOptions(boundary="chapter")  # type: ignore[arg-type]

    def test_boundary_strings_are_coerced(self) -> None:
        assert SegmentOptions(boundary=" Sentence ").boundary is Boundary.SENTENCE  # type: ignore[arg-type]


class TestRecommendations:
    def test_small_text_keeps_defaults(self, counter: ApproxCharCounter) -> None:
        options = recommend_segment_options("short", estimator=counter)

        assert options == SegmentOptions()

    def test_many_paragraphs_prefer_paragraph_boundary(self, counter: ApproxCharCounter) -> None:
        text = _document(12)

        options = recommend_segment_options(text, max_tokens_per_segment=10, estimator=counter)

        assert options.boundary is Boundary.PARAGRAPH
        assert options.max_tokens_per_segment == 10
        assert options.overlap_tokens == int(counter.estimate(text) * 0.02)

    def test_many_sentences_prefer_sentence_boundary(self, counter: ApproxCharCounter) -> None:
        text = "Alpha beta gamma. " * 60

        options = recommend_segment_options(text, max_tokens_per_segment=10, estimator=counter)

        assert options.boundary is Boundary.SENTENCE

    def test_unstructured_text_falls_back_to_words(self, counter: ApproxCharCounter) -> None:
        options = recommend_segment_options("word " * 200, max_tokens_per_segment=10, estimator=counter)

        assert options.boundary is Boundary.WORD

    def test_overlap_is_capped(self, counter: ApproxCharCounter) -> None:
        text = "word " * 500_000

        options = recommend_segment_options(text, max_tokens_per_segment=10, estimator=counter)

        assert options.overlap_tokens == 2_000
