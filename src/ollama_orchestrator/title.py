"""Automatic chat titles derived from the first exchange of a conversation."""

from __future__ import annotations

import logging
import re

from .errors import execute_with_timeout
from .interfaces import GenerationService, ThinkingExtractor
from .thinking import MarkupThinkingExtractor

LOGGER = logging.getLogger(__name__)

DEFAULT_TITLE_TIMEOUT = 30.0
FALLBACK_TITLE = "Document Analysis Chat"
MAX_TITLE_WORDS = 5
MAX_USER_MESSAGE_CHARS = 150
MAX_AI_RESPONSE_CHARS = 200

_UNINFORMATIVE_OPENING = re.compile(r"^(here|this|that|it|what)\s+(is|are|we|got)")
_REQUEST_PATTERNS = (
    re.compile(
        r"(please|can you|could you|summarize|summary|analyze|analysis|explain|tell me)[^.!?]*[.!?]?",
        re.IGNORECASE,
    ),
    re.compile(r"(what is|what are|how does|how do)[^.!?]*[.!?]?", re.IGNORECASE),
)
_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_TITLE_PREFIX = re.compile(r"^(title:|the title is:?|title should be:?)\s*", re.IGNORECASE)
_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_FALLBACK_STOPWORDS = frozenset(
    {"what", "this", "that", "about", "please", "could", "would", "should"}
)


def truncate_user_message(message: str) -> str:
    """Reduce a long request, such as a pasted document, to its key ask."""
    if len(message) <= MAX_USER_MESSAGE_CHARS:
        return message
    for pattern in _REQUEST_PATTERNS:
        match = pattern.search(message)
        if match is not None and len(match.group(0)) <= MAX_USER_MESSAGE_CHARS:
            return match.group(0).strip()
    last_sentence = _SENTENCE_SPLIT.split(message)[-1].strip()
    if len(last_sentence) <= MAX_USER_MESSAGE_CHARS:
        return last_sentence
    return f"{message[-MAX_USER_MESSAGE_CHARS:]}..."


def is_response_useful(response: str) -> bool:
    return len(response.strip()) > 20 and not _UNINFORMATIVE_OPENING.match(response.lower())


def build_title_prompt(user_message: str, ai_response: str, response_useful: bool) -> str:
    if response_useful and len(ai_response) < MAX_AI_RESPONSE_CHARS:
        return (
            "Create a 3-5 word title for this conversation, reply only with a single "
            "title, no other text:\n\n"
            f"User: {user_message}\n"
            f"AI: {ai_response[:MAX_AI_RESPONSE_CHARS]}\n\n"
            "Title:"
        )
    return (
        "Create a 3-5 word title for this request, reply only with a single title, "
        "no other text:\n\n"
        f'"{user_message}"\n\n'
        "Title:"
    )


def fallback_title(user_message: str) -> str:
    """Build "Chat about ..." from the first few meaningful words."""
    words = [
        word
        for word in _WHITESPACE.split(_NON_WORD.sub(" ", user_message.lower()))
        if len(word) > 3 and word not in _FALLBACK_STOPWORDS
    ][:3]
    if words:
        return f"Chat about {' '.join(words)}"
    return FALLBACK_TITLE


def is_title_invalid(title: str) -> bool:
    return not title or len(title) < 3 or len(title.split()) < 2


class TitleGenerator:
    """Ask the model for a short title and fall back to a keyword title."""

    def __init__(
        self,
        generation_service: GenerationService,
        *,
        timeout: float = DEFAULT_TITLE_TIMEOUT,
        thinking_extractor: ThinkingExtractor | None = None,
    ) -> None:
        self._generation_service = generation_service
        self.timeout = timeout
        self._extractor = thinking_extractor or MarkupThinkingExtractor()

    def _strip_thinking(self, text: str) -> str:
        if not self._extractor.has_thinking_content(text):
            return text
        final_answer = self._extractor.extract_thinking_content(text).final_answer
        return final_answer or text

    def clean_title(self, raw_title: str) -> str:
        title = self._strip_thinking(raw_title)
        title = title.strip().replace('"', "").replace("'", "")
        title = _WHITESPACE.sub(" ", title).strip()
        title = _TITLE_PREFIX.sub("", title)
        words = title.split()
        if len(words) > MAX_TITLE_WORDS:
            title = " ".join(words[:MAX_TITLE_WORDS])
        return title

    async def _request_title(self, user_message: str, ai_response: str, model_name: str) -> str:
        answer = self._strip_thinking(ai_response)
        truncated = truncate_user_message(user_message)
        prompt = build_title_prompt(truncated, answer, is_response_useful(answer))
        response = await self._generation_service.generate(prompt, model=model_name)
        title = self.clean_title(response.text)
        if is_title_invalid(title):
            return fallback_title(truncated)
        return title

    async def generate_title(
        self,
        chat_id: str,
        user_message: str,
        ai_response: str,
        model_name: str,
    ) -> str:
        """Return a generated title, or a fallback title on any failure."""
        LOGGER.info(
            "title.generate.start",
            extra={"event": "title.generate.start", "chat_id": chat_id, "model": model_name},
        )
        try:
            title = await execute_with_timeout(
                lambda: self._request_title(user_message, ai_response, model_name),
                self.timeout,
                operation_name="Title generation",
            )
        except Exception as exc:  # noqa: BLE001 - a title is never worth failing the chat.
            LOGGER.warning(
                "title.generate.fallback",
                extra={
                    "event": "title.generate.fallback",
                    "chat_id": chat_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            return fallback_title(user_message)
        LOGGER.info(
            "title.generate.complete",
            extra={"event": "title.generate.complete", "chat_id": chat_id, "title": title},
        )
        return title
