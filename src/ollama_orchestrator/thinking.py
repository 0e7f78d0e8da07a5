"""Separation of model "thinking" markup from the user-visible answer.

Two entry points live here:

* ``filter_streaming_content`` is the live filter used on every streamed
  chunk. It is recomputed from the full accumulated text each time, so its
  output depends only on the current raw string.
* ``extract_thinking_content`` is the batch pass run once a response is
  complete; its result is what gets persisted on the assistant message.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import logging
import re

from .state import ThinkingState

LOGGER = logging.getLogger(__name__)

# Processed in this order; only the last type found keeps its thinking text.
THINKING_MARKER_PAIRS: tuple[tuple[str, str], ...] = (
    ("<think>", "</think>"),
    ("<thinking>", "</thinking>"),
    ("<reasoning>", "</reasoning>"),
    ("<analysis>", "</analysis>"),
    ("<reflection>", "</reflection>"),
)

_COMPILED_PAIRS: tuple[tuple[re.Pattern[str], re.Pattern[str]], ...] = tuple(
    (re.compile(re.escape(open_tag), re.IGNORECASE), re.compile(re.escape(close_tag), re.IGNORECASE))
    for open_tag, close_tag in THINKING_MARKER_PAIRS
)

_EXCESS_NEWLINES = re.compile(r"\n\s*\n\s*\n")


@dataclass(frozen=True)
class StreamingFilterResult:
    """Output of one live filtering pass."""

    display_text: str
    thinking_text: str
    is_inside_open_block: bool


def _collapse_newlines(text: str) -> str:
    if not text:
        return text
    return _EXCESS_NEWLINES.sub("\n\n", text)


def filter_streaming_content(raw_text: str) -> StreamingFilterResult:
    """Split accumulated raw text into display text and live thinking text.

    Never raises. Text without markers comes back unchanged.
    """
    if not raw_text:
        return StreamingFilterResult(raw_text, "", False)

    display = raw_text
    thinking = ""
    inside = False

    for open_pattern, close_pattern in _COMPILED_PAIRS:
        while True:
            open_match = open_pattern.search(display)
            if open_match is None:
                break
            close_match = close_pattern.search(display, open_match.end())
            if close_match is None:
                # Unterminated block: everything after the tag is live thinking.
                thinking = display[open_match.end() :].strip()
                inside = True
                display = display[: open_match.start()].strip()
                break
            thinking = display[open_match.end() : close_match.start()].strip()
            inside = False
            display = (display[: open_match.start()] + display[close_match.end() :]).strip()

    return StreamingFilterResult(_collapse_newlines(display), thinking, inside)


def update_thinking_phase(state: ThinkingState, display_text: str) -> ThinkingState:
    """Leave the thinking phase once visible answer text exists outside a block."""
    if state.is_thinking_phase and display_text and not state.is_inside_thinking_block:
        LOGGER.debug(
            "thinking.phase.answer",
            extra={"event": "thinking.phase.answer"},
        )
        return state.end_thinking_phase()
    return state


def apply_streaming_filter(
    raw_text: str, state: ThinkingState
) -> tuple[str, ThinkingState]:
    """Run the live filter and fold its result into a new ThinkingState."""
    result = filter_streaming_content(raw_text)
    # Opening a new block re-enters the thinking phase.
    in_phase = state.is_thinking_phase or result.is_inside_open_block
    updated = state.with_live_thinking(
        content=result.thinking_text,
        is_inside_block=result.is_inside_open_block,
        is_thinking_phase=in_phase,
    )
    return result.display_text, update_thinking_phase(updated, result.display_text)


# ---------------------------------------------------------------------------
# Batch extraction
# ---------------------------------------------------------------------------

_EXPLICIT_OPEN_TAGS: tuple[str, ...] = tuple(open_tag for open_tag, _ in THINKING_MARKER_PAIRS)
_EXPLICIT_CLOSE_TAGS: tuple[str, ...] = tuple(close_tag for _, close_tag in THINKING_MARKER_PAIRS)
_DETECTION_MARKERS: tuple[str, ...] = _EXPLICIT_OPEN_TAGS + (
    "**thinking:**",
    "**analysis:**",
    "**reasoning:**",
    "let me think about this",
    "let me analyze",
    "let me consider",
    "first, i need to",
    "step 1:",
    "my reasoning:",
    "to solve this:",
)
_REASONING_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(step \d+[:.]|first[,:]|second[,:]|third[,:])", re.IGNORECASE),
    re.compile(r"\b(let me|i need to|i should|i will)\s+\w+", re.IGNORECASE),
    re.compile(r"\b(because|since|therefore|thus|hence)\b", re.IGNORECASE),
    re.compile(r"\*\*?(thinking|analysis|reasoning|reflection)[:.]?\*\*?", re.IGNORECASE),
)
_SECTION_BREAKS: tuple[str, ...] = ("\n\n", "\n---", "\n**Final")
_THINKING_LINE_PHRASES: tuple[str, ...] = (
    "let me think",
    "let me analyze",
    "first, i",
    "step 1",
    "step 2",
    "step 3",
    "my reasoning",
    "to solve this",
    "i need to consider",
    "thinking about",
)
_FINAL_LINE_PHRASES: tuple[str, ...] = (
    "final answer",
    "in conclusion",
    "therefore,",
    "so the answer",
    "the result is",
    "my answer is",
)


@dataclass(frozen=True)
class ThinkingContent:
    """Result of separating reasoning from the final answer of a full response."""

    original_response: str
    final_answer: str
    has_thinking: bool
    thinking_text: str | None = None
    start_index: int | None = None
    end_index: int | None = None

    @property
    def has_displayable_thinking(self) -> bool:
        return self.has_thinking and bool(self.thinking_text and self.thinking_text.strip())


@lru_cache(maxsize=100)
def has_thinking_content(text: str) -> bool:
    """Return True when ``text`` carries explicit markers or reasoning patterns."""
    if not text:
        return False
    lowered = text.lower()
    if any(marker in lowered for marker in _DETECTION_MARKERS):
        return True
    return any(pattern.search(text) for pattern in _REASONING_PATTERNS)


def _extract_explicit(text: str) -> ThinkingContent | None:
    lowered = text.lower()
    for open_tag in _EXPLICIT_OPEN_TAGS:
        start = lowered.find(open_tag)
        if start == -1:
            continue
        body_start = start + len(open_tag)

        end = -1
        close_tag: str | None = None
        for candidate in _EXPLICIT_CLOSE_TAGS:
            index = lowered.find(candidate, body_start)
            if index != -1:
                end, close_tag = index, candidate
                break

        if end == -1:
            for section_break in _SECTION_BREAKS:
                index = text.find(section_break, body_start)
                if index != -1:
                    end = index
                    break
        if end == -1:
            end = len(text)

        answer_start = end + len(close_tag) if close_tag is not None else end
        return ThinkingContent(
            original_response=text,
            final_answer=text[answer_start:].strip(),
            has_thinking=True,
            thinking_text=text[body_start:end].strip(),
            start_index=start,
            end_index=end,
        )
    return None


def _extract_by_lines(text: str) -> ThinkingContent:
    thinking_lines: list[str] = []
    final_lines: list[str] = []
    in_thinking = False
    for line in text.split("\n"):
        lowered = line.strip().lower()
        if any(phrase in lowered for phrase in _THINKING_LINE_PHRASES):
            in_thinking = True
            thinking_lines.append(line)
        elif any(phrase in lowered for phrase in _FINAL_LINE_PHRASES):
            in_thinking = False
            final_lines.append(line)
        elif in_thinking:
            thinking_lines.append(line)
        else:
            final_lines.append(line)

    if not thinking_lines:
        return ThinkingContent(original_response=text, final_answer=text, has_thinking=False)
    final_answer = "\n".join(final_lines).strip() if final_lines else text
    return ThinkingContent(
        original_response=text,
        final_answer=final_answer,
        has_thinking=True,
        thinking_text="\n".join(thinking_lines).strip(),
    )


def extract_thinking_content(text: str) -> ThinkingContent:
    """Separate reasoning from the final answer of a complete response."""
    if not has_thinking_content(text):
        return ThinkingContent(original_response=text, final_answer=text, has_thinking=False)
    explicit = _extract_explicit(text)
    if explicit is not None:
        return explicit
    return _extract_by_lines(text)


class MarkupThinkingExtractor:
    """Default batch extractor used by the orchestrator."""

    def has_thinking_content(self, text: str) -> bool:
        return has_thinking_content(text)

    def extract_thinking_content(self, text: str) -> ThinkingContent:
        return extract_thinking_content(text)
