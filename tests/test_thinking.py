"""Tests for live thinking filtering and batch thinking extraction."""

from __future__ import annotations

import unittest

from ollama_orchestrator.state import ThinkingState
from ollama_orchestrator.thinking import (
    MarkupThinkingExtractor,
    ThinkingContent,
    apply_streaming_filter,
    extract_thinking_content,
    filter_streaming_content,
    has_thinking_content,
    update_thinking_phase,
)


class StreamingFilterTests(unittest.TestCase):
    """Validate the per-chunk display/thinking split."""

    def test_complete_block_is_removed_from_display(self) -> None:
        result = filter_streaming_content("<think>step one</think>Hello world")
        self.assertEqual(result.display_text, "Hello world")
        self.assertEqual(result.thinking_text, "step one")
        self.assertFalse(result.is_inside_open_block)

    def test_unterminated_block_is_live_thinking(self) -> None:
        result = filter_streaming_content("<think>still reasoning")
        self.assertEqual(result.display_text, "")
        self.assertEqual(result.thinking_text, "still reasoning")
        self.assertTrue(result.is_inside_open_block)

    def test_text_without_markers_is_unchanged(self) -> None:
        result = filter_streaming_content("plain answer")
        self.assertEqual(result.display_text, "plain answer")
        self.assertEqual(result.thinking_text, "")
        self.assertFalse(result.is_inside_open_block)

    def test_empty_input(self) -> None:
        result = filter_streaming_content("")
        self.assertEqual(result.display_text, "")
        self.assertFalse(result.is_inside_open_block)

    def test_markers_are_case_insensitive(self) -> None:
        result = filter_streaming_content("<THINK>upper</Think>done")
        self.assertEqual(result.display_text, "done")
        self.assertEqual(result.thinking_text, "upper")

    def test_text_before_open_block_stays_visible(self) -> None:
        result = filter_streaming_content("Intro <reasoning>partial")
        self.assertEqual(result.display_text, "Intro")
        self.assertEqual(result.thinking_text, "partial")
        self.assertTrue(result.is_inside_open_block)

    def test_multiple_blocks_of_same_type_are_all_removed(self) -> None:
        result = filter_streaming_content("<think>a</think>one<think>b</think>two")
        self.assertEqual(result.display_text, "onetwo")
        self.assertEqual(result.thinking_text, "b")

    def test_last_processed_marker_type_wins(self) -> None:
        result = filter_streaming_content(
            "<reflection>late</reflection><think>early</think>Answer"
        )
        self.assertEqual(result.display_text, "Answer")
        self.assertEqual(result.thinking_text, "late")

    def test_excess_newlines_are_collapsed(self) -> None:
        result = filter_streaming_content("para one<think>x</think>\n\n\n\npara two")
        self.assertEqual(result.display_text, "para one\n\npara two")

    def test_filter_is_idempotent_on_its_output(self) -> None:
        raw = "<analysis>hmm</analysis>First\n\n\n\nSecond"
        once = filter_streaming_content(raw).display_text
        twice = filter_streaming_content(once).display_text
        self.assertEqual(once, twice)

    def test_display_never_longer_than_raw(self) -> None:
        for raw in ("<think>a</think>b", "x\n\n\n\ny", "  padded  ", "<thinking>open"):
            with self.subTest(raw=raw):
                self.assertLessEqual(
                    len(filter_streaming_content(raw).display_text), len(raw)
                )


class ThinkingPhaseTests(unittest.TestCase):
    """Validate how streamed chunks move the thinking phase."""

    def test_streaming_through_a_block_then_answer(self) -> None:
        state = ThinkingState.initial().begin_generation()

        display, state = apply_streaming_filter("<think>plan", state)
        self.assertEqual(display, "")
        self.assertTrue(state.is_thinking_phase)
        self.assertTrue(state.is_inside_thinking_block)
        self.assertTrue(state.has_active_thinking_bubble)
        self.assertEqual(state.current_thinking_content, "plan")

        display, state = apply_streaming_filter("<think>plan it</think>Answer", state)
        self.assertEqual(display, "Answer")
        self.assertFalse(state.is_thinking_phase)
        self.assertFalse(state.is_inside_thinking_block)
        self.assertFalse(state.has_active_thinking_bubble)
        self.assertEqual(state.current_thinking_content, "plan it")

    def test_plain_answer_ends_thinking_phase_immediately(self) -> None:
        state = ThinkingState.initial().begin_generation()
        display, state = apply_streaming_filter("Hi", state)
        self.assertEqual(display, "Hi")
        self.assertFalse(state.is_thinking_phase)
        self.assertFalse(state.has_active_thinking_bubble)

    def test_new_block_after_answer_reenters_phase(self) -> None:
        state = ThinkingState.initial().begin_generation()
        _, state = apply_streaming_filter("Hi", state)
        _, state = apply_streaming_filter("Hi <think>more", state)
        self.assertTrue(state.is_thinking_phase)
        self.assertTrue(state.is_inside_thinking_block)
        self.assertTrue(state.has_active_thinking_bubble)

    def test_update_thinking_phase_keeps_phase_without_display(self) -> None:
        state = ThinkingState.initial().begin_generation()
        self.assertIs(update_thinking_phase(state, ""), state)

    def test_expanded_bubbles_survive_generation(self) -> None:
        state = ThinkingState.initial().toggle_bubble("m1").begin_generation()
        _, state = apply_streaming_filter("<think>x</think>y", state)
        self.assertTrue(state.is_bubble_expanded("m1"))


class BatchExtractionTests(unittest.TestCase):
    """Validate thinking extraction from complete responses."""

    def test_explicit_tags_split_thinking_and_answer(self) -> None:
        extracted = extract_thinking_content("<think>consider the input</think>The answer is 4.")
        self.assertTrue(extracted.has_thinking)
        self.assertEqual(extracted.thinking_text, "consider the input")
        self.assertEqual(extracted.final_answer, "The answer is 4.")
        self.assertEqual(extracted.start_index, 0)

    def test_unclosed_tag_ends_at_blank_line(self) -> None:
        extracted = extract_thinking_content("<thinking>draft notes\n\nFinal text")
        self.assertEqual(extracted.thinking_text, "draft notes")
        self.assertEqual(extracted.final_answer, "Final text")

    def test_unclosed_tag_without_break_runs_to_end(self) -> None:
        extracted = extract_thinking_content("<reasoning>only thoughts")
        self.assertEqual(extracted.thinking_text, "only thoughts")
        self.assertEqual(extracted.final_answer, "")

    def test_line_based_split(self) -> None:
        text = "Let me think about this.\nIt looks like addition.\nFinal answer: 4"
        extracted = extract_thinking_content(text)
        self.assertTrue(extracted.has_thinking)
        self.assertIn("Let me think about this.", extracted.thinking_text or "")
        self.assertIn("It looks like addition.", extracted.thinking_text or "")
        self.assertEqual(extracted.final_answer, "Final answer: 4")

    def test_plain_text_has_no_thinking(self) -> None:
        extracted = extract_thinking_content("Paris is the capital of France.")
        self.assertFalse(extracted.has_thinking)
        self.assertEqual(extracted.final_answer, "Paris is the capital of France.")
        self.assertFalse(has_thinking_content("Paris is the capital of France."))
        self.assertFalse(has_thinking_content(""))

    def test_blank_thinking_is_not_displayable(self) -> None:
        blank = ThinkingContent(
            original_response="", final_answer="", has_thinking=True, thinking_text="  \n "
        )
        self.assertFalse(blank.has_displayable_thinking)
        empty = ThinkingContent(original_response="", final_answer="", has_thinking=False)
        self.assertFalse(empty.has_displayable_thinking)

    def test_extractor_delegates(self) -> None:
        extractor = MarkupThinkingExtractor()
        self.assertTrue(extractor.has_thinking_content("<think>a</think>b"))
        self.assertEqual(extractor.extract_thinking_content("<think>a</think>b").final_answer, "b")


if __name__ == "__main__":
    unittest.main()
