"""Default generation service backed by ``ollama.AsyncClient``."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Sequence
import logging
from typing import Any

import httpx
import ollama

from .exceptions import (
    OllamaApiError,
    OllamaConnectionError,
    OllamaModelNotFoundError,
    OrchestratorError,
    ResponseFormatError,
)
from .interfaces import CancelCheck, GenerationResponse, StreamChunk
from .models import FileType, Message, MessageRole, ProcessedFile

LOGGER = logging.getLogger(__name__)


class OllamaGenerationService:
    """Talk to Ollama's generate endpoint, or chat when images are attached.

    The generate endpoint carries the opaque conversation ``context`` token
    list between turns. Vision requests go through the chat endpoint with the
    transcript instead, since images cannot be folded into a context.
    """

    def __init__(
        self,
        host: str = "http://localhost:11434",
        timeout: float = 120,
        client: Any | None = None,
    ) -> None:
        self.host = host
        self.timeout = timeout
        self._client = client if client is not None else ollama.AsyncClient(
            host=host, timeout=timeout
        )

    # -- payload helpers -----------------------------------------------------

    @staticmethod
    def _extract_field(chunk: Any, field: str) -> Any:
        """Read ``field`` from an SDK response object or its dict form."""
        value = getattr(chunk, field, None)
        if value is not None:
            return value
        if hasattr(chunk, "model_dump"):
            chunk = chunk.model_dump()
        if isinstance(chunk, dict):
            return chunk.get(field)
        return None

    @classmethod
    def _extract_text(cls, chunk: Any) -> str:
        value = cls._extract_field(chunk, "response")
        if isinstance(value, str):
            return value
        message = cls._extract_field(chunk, "message")
        content = getattr(message, "content", None)
        if content is None and isinstance(message, dict):
            content = message.get("content")
        return content if isinstance(content, str) else ""

    @classmethod
    def _extract_context(cls, chunk: Any) -> tuple[int, ...] | None:
        value = cls._extract_field(chunk, "context")
        if value is None:
            return None
        try:
            return tuple(int(token) for token in value)
        except (TypeError, ValueError) as exc:
            raise ResponseFormatError("Ollama returned a malformed context.") from exc

    @classmethod
    def _extract_done(cls, chunk: Any) -> bool:
        return bool(cls._extract_field(chunk, "done"))

    @staticmethod
    def _build_options(
        options: dict[str, Any] | None, context_length: int | None
    ) -> dict[str, Any]:
        merged = dict(options or {})
        if context_length is not None and context_length > 0:
            merged["num_ctx"] = context_length
        return merged

    @staticmethod
    def _build_prompt(prompt: str, processed_files: Sequence[ProcessedFile]) -> str:
        text_files = [item for item in processed_files if item.has_text_content]
        if not text_files:
            return prompt
        sections = [f"File: {item.file_name}\n{item.text_content}" for item in text_files]
        return prompt + "\n\n" + "\n\n".join(sections)

    @staticmethod
    def _build_chat_messages(
        prompt: str,
        history: Sequence[Message],
        images: list[str],
        system_prompt: str | None,
    ) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for message in history:
            if message.role == MessageRole.SYSTEM:
                continue
            messages.append({"role": message.role.value, "content": message.content})
        current: dict[str, Any] = {"role": "user", "content": prompt}
        if images:
            current["images"] = images
        messages.append(current)
        return messages

    def _request_kwargs(
        self,
        prompt: str,
        *,
        model: str,
        context: Sequence[int] | None,
        conversation_history: Sequence[Message] | None,
        processed_files: Sequence[ProcessedFile] | None,
        context_length: int | None,
        options: dict[str, Any] | None,
        system_prompt: str | None,
    ) -> tuple[str, dict[str, Any]]:
        files = list(processed_files or ())
        images = [
            item.base64_content
            for item in files
            if item.file_type == FileType.IMAGE and item.has_image_content
        ]
        full_prompt = self._build_prompt(prompt, files)
        request_options = self._build_options(options, context_length)
        if images:
            return "chat", {
                "model": model,
                "messages": self._build_chat_messages(
                    full_prompt, conversation_history or (), images, system_prompt
                ),
                "options": request_options or None,
            }
        kwargs: dict[str, Any] = {
            "model": model,
            "prompt": full_prompt,
            "options": request_options or None,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if context:
            kwargs["context"] = list(context)
        return "generate", kwargs

    def _map_exception(self, exc: Exception, model: str) -> OrchestratorError:
        if isinstance(exc, OrchestratorError):
            return exc

        if isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout, httpx.NetworkError)):
            mapped = OllamaConnectionError(f"Unable to connect to Ollama host {self.host}.")
            lowered = str(exc).lower()
            if "name or service not known" in lowered or "nodename nor servname" in lowered:
                mapped.reason = "dns"
            elif "connection refused" in lowered:
                mapped.reason = "refused"
            return mapped
        if isinstance(exc, ConnectionError):
            return OllamaConnectionError(
                f"Unable to connect to Ollama host {self.host}.",
                reason="refused" if isinstance(exc, ConnectionRefusedError) else "unreachable",
            )

        lower_message = str(exc).lower()
        status_code = getattr(exc, "status_code", None)
        if ("model" in lower_message and "not found" in lower_message) or (
            status_code == 404 and "model" in lower_message
        ):
            return OllamaModelNotFoundError(
                f"Model {model!r} was not found on {self.host}.", status_code=404
            )
        if isinstance(exc, ollama.ResponseError):
            return OllamaApiError(
                f"Ollama request failed: {exc.error}", status_code=exc.status_code
            )
        if isinstance(exc, httpx.HTTPStatusError):
            return OllamaApiError(
                f"Ollama request failed: {exc}", status_code=exc.response.status_code
            )
        return OllamaApiError(f"Failed to generate response from Ollama at {self.host}: {exc}")

    # -- public API -------------------------------------------------------------

    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        context: Sequence[int] | None = None,
        conversation_history: Sequence[Message] | None = None,
        processed_files: Sequence[ProcessedFile] | None = None,
        context_length: int | None = None,
        options: dict[str, Any] | None = None,
        system_prompt: str | None = None,
        is_cancelled: CancelCheck | None = None,
    ) -> GenerationResponse:
        endpoint, kwargs = self._request_kwargs(
            prompt,
            model=model,
            context=context,
            conversation_history=conversation_history,
            processed_files=processed_files,
            context_length=context_length,
            options=options,
            system_prompt=system_prompt,
        )
        LOGGER.info(
            "generation.request",
            extra={"event": "generation.request", "endpoint": endpoint, "model": model, "stream": False},
        )
        try:
            if endpoint == "chat":
                response = await self._client.chat(stream=False, **kwargs)
            else:
                response = await self._client.generate(stream=False, **kwargs)
        except Exception as exc:  # noqa: BLE001 - transport can fail in many ways.
            raise self._map_exception(exc, model) from exc

        return GenerationResponse(
            text=self._extract_text(response),
            context=self._extract_context(response),
        )

    async def generate_stream(
        self,
        prompt: str,
        *,
        model: str,
        context: Sequence[int] | None = None,
        conversation_history: Sequence[Message] | None = None,
        processed_files: Sequence[ProcessedFile] | None = None,
        context_length: int | None = None,
        options: dict[str, Any] | None = None,
        system_prompt: str | None = None,
        is_cancelled: CancelCheck | None = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        endpoint, kwargs = self._request_kwargs(
            prompt,
            model=model,
            context=context,
            conversation_history=conversation_history,
            processed_files=processed_files,
            context_length=context_length,
            options=options,
            system_prompt=system_prompt,
        )
        LOGGER.info(
            "generation.request",
            extra={"event": "generation.request", "endpoint": endpoint, "model": model, "stream": True},
        )
        try:
            if endpoint == "chat":
                stream = await self._client.chat(stream=True, **kwargs)
            else:
                stream = await self._client.generate(stream=True, **kwargs)
            async for chunk in stream:
                if is_cancelled is not None and is_cancelled():
                    LOGGER.info(
                        "generation.stream.cancelled",
                        extra={"event": "generation.stream.cancelled", "model": model},
                    )
                    return
                done = self._extract_done(chunk)
                yield StreamChunk(
                    response_delta=self._extract_text(chunk),
                    context=self._extract_context(chunk) if done else None,
                    done=done,
                )
                if done:
                    return
        except OrchestratorError:
            raise
        except Exception as exc:  # noqa: BLE001 - transport can fail in many ways.
            raise self._map_exception(exc, model) from exc

    async def list_models(self) -> list[str]:
        """Return the names of the models installed on the Ollama host."""
        try:
            response = await self._client.list()
        except Exception as exc:  # noqa: BLE001 - transport can fail in many ways.
            raise self._map_exception(exc, "") from exc

        models = self._extract_field(response, "models")
        if models is None:
            return []
        if not isinstance(models, list):
            raise ResponseFormatError("Ollama returned a malformed model list.")
        names: list[str] = []
        for entry in models:
            for field in ("model", "name"):
                value = self._extract_field(entry, field)
                if isinstance(value, str) and value.strip():
                    names.append(value.strip())
                    break
        LOGGER.debug(
            "generation.models.listed",
            extra={"event": "generation.models.listed", "count": len(names)},
        )
        return names
