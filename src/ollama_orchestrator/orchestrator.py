"""Generation orchestrator: owns the operation state and drives every chat flow."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import replace
import logging
from typing import Any

from .cancellation import CancellationToken
from .errors import (
    ErrorKind,
    ErrorState,
    RetryPolicy,
    classify,
    create_error_state,
    execute_with_retry,
    is_retryable,
    log_error,
)
from .events import (
    ACTIVE_CHAT_CHANGED,
    CHATS_CHANGED,
    ERROR_RAISED,
    MODELS_CHANGED,
    STATE_CHANGED,
    TITLE_GENERATED,
    EventBus,
)
from .config import ConfiguredChatSettings
from .exceptions import InputValidationError, InvalidStateError
from .files import LocalFileProcessor
from .generation import OllamaGenerationService
from .interfaces import (
    ChatRepository,
    ChatSettings,
    FileContentProcessor,
    GenerationService,
    ThinkingExtractor,
)
from .models import (
    Chat,
    GenerationSettings,
    Message,
    MessageRole,
    ProcessedFile,
    default_title_for_model,
)
from .persistence import JsonChatStore
from .state import ChatOperationState, FileProcessingProgress
from .task_manager import TaskManager
from .thinking import MarkupThinkingExtractor, apply_streaming_filter, filter_streaming_content
from .title import TitleGenerator

LOGGER = logging.getLogger(__name__)

EVENT_SOURCE = "orchestrator"


class GenerationOrchestrator:
    """Coordinate sending, streaming, cancellation and chat bookkeeping.

    The orchestrator holds one immutable ChatOperationState snapshot and
    replaces it through named transitions. Every change is announced on the
    event bus. At most one chat generates at a time; that chat is tracked
    independently of the chat the user is currently looking at.
    """

    def __init__(
        self,
        *,
        generation_service: GenerationService,
        repository: ChatRepository,
        settings: ChatSettings,
        file_processor: FileContentProcessor | None = None,
        thinking_extractor: ThinkingExtractor | None = None,
        title_generator: TitleGenerator | None = None,
        event_bus: EventBus | None = None,
        task_manager: TaskManager | None = None,
        retry_policy: RetryPolicy | None = None,
        auto_title: bool = True,
        title_model: str | None = None,
    ) -> None:
        self._generation_service = generation_service
        self._repository = repository
        self._settings = settings
        self._file_processor = file_processor
        self._extractor = thinking_extractor or MarkupThinkingExtractor()
        self._title_generator = title_generator or TitleGenerator(
            generation_service, thinking_extractor=self._extractor
        )
        self.events = event_bus or EventBus()
        self._tasks = task_manager or TaskManager()
        self._retry_policy = retry_policy or RetryPolicy()
        self.auto_title = auto_title
        self.title_model = title_model or None

        self._state = ChatOperationState.initial()
        self._cancellation_token = CancellationToken()
        self._chats: dict[str, Chat] = {}
        self._active_chat_id: str | None = None
        # Set from begin_send, before a generating chat id exists.
        self._sending_chat_id: str | None = None
        self._available_models: list[str] = []
        self._error: ErrorState | None = None
        self._chat_lock = asyncio.Lock()
        self._unsubscribe: Callable[[], None] | None = None

    @classmethod
    def from_config(
        cls,
        config: dict[str, dict[str, Any]],
        *,
        event_bus: EventBus | None = None,
    ) -> GenerationOrchestrator:
        """Wire the default Ollama, file and JSON-store collaborators from config."""
        ollama_config = config["ollama"]
        retry_config = config["retry"]
        title_config = config["title"]
        files_config = config["files"]
        persistence_config = config["persistence"]

        generation_service = OllamaGenerationService(
            host=str(ollama_config["host"]),
            timeout=float(ollama_config["timeout"]),
        )
        extractor = MarkupThinkingExtractor()
        return cls(
            generation_service=generation_service,
            repository=JsonChatStore(
                persistence_config["directory"] or None,
                enabled=bool(persistence_config["enabled"]),
            ),
            settings=ConfiguredChatSettings.from_config(config),
            file_processor=LocalFileProcessor(
                max_text_bytes=int(files_config["max_text_bytes"]),
                max_image_bytes=int(files_config["max_image_bytes"]),
            ),
            thinking_extractor=extractor,
            title_generator=TitleGenerator(
                generation_service,
                timeout=float(title_config["timeout_seconds"]),
                thinking_extractor=extractor,
            ),
            event_bus=event_bus,
            retry_policy=RetryPolicy(
                max_retries=int(retry_config["max_retries"]),
                base_delay=float(retry_config["base_delay_seconds"]),
                max_delay=float(retry_config["max_delay_seconds"]),
            ),
            auto_title=bool(title_config["enabled"]),
            title_model=str(title_config["model"]) or None,
        )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> ChatOperationState:
        return self._state

    @property
    def error(self) -> ErrorState | None:
        return self._error

    @property
    def chats(self) -> list[Chat]:
        return sorted(self._chats.values(), key=lambda chat: chat.last_updated_at, reverse=True)

    @property
    def active_chat_id(self) -> str | None:
        return self._active_chat_id

    @property
    def sending_chat_id(self) -> str | None:
        return self._sending_chat_id

    @property
    def available_models(self) -> list[str]:
        return list(self._available_models)

    @property
    def active_chat(self) -> Chat | None:
        if self._active_chat_id is None:
            return None
        return self._chats.get(self._active_chat_id)

    @property
    def displayable_messages(self) -> list[Message]:
        chat = self.active_chat
        return chat.displayable_messages if chat is not None else []

    def get_chat(self, chat_id: str) -> Chat | None:
        return self._chats.get(chat_id)

    def is_chat_generating(self, chat_id: str) -> bool:
        return self._state.is_chat_generating(chat_id)

    def is_thinking_bubble_expanded(self, message_id: str) -> bool:
        return self._state.thinking.is_bubble_expanded(message_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load stored chats and installed models, then pick an active chat."""
        loaded = await self._repository.load_chats()
        self._chats = {chat.id: chat for chat in loaded}
        if self._unsubscribe is None:
            self._unsubscribe = self._repository.subscribe(self._on_chats_pushed)
        chats = self.chats
        self._active_chat_id = chats[0].id if chats else None
        LOGGER.info(
            "orchestrator.initialized",
            extra={
                "event": "orchestrator.initialized",
                "chats": len(chats),
                "active_chat_id": self._active_chat_id,
            },
        )
        await self._publish_chats()
        await self._publish(ACTIVE_CHAT_CHANGED, {"chat_id": self._active_chat_id})
        await self.refresh_models()

    async def refresh_models(self) -> bool:
        """Reload the model names installed on the server.

        Connection, timeout and API failures are retried under the retry
        policy. A final failure is reported through ``error`` and the
        previous model list is kept; the return value says which happened.
        """
        policy = self._retry_policy
        try:
            models = await execute_with_retry(
                self._generation_service.list_models,
                max_retries=policy.max_retries,
                base_delay=policy.base_delay,
                max_delay=policy.max_delay,
                on_retry=self._log_retry("list_models"),
                operation_name="list_models",
            )
        except Exception as exc:  # noqa: BLE001 - reported through error state.
            correlation_id = log_error("refresh_models", exc)
            self._error = create_error_state(
                exc, operation="refresh_models", correlation_id=correlation_id
            )
            await self._publish(ERROR_RAISED, {"error": self._error})
            return False

        self._available_models = list(models)
        LOGGER.info(
            "orchestrator.models.refreshed",
            extra={"event": "orchestrator.models.refreshed", "count": len(models)},
        )
        await self._publish(MODELS_CHANGED, {"models": self.available_models})
        return True

    async def aclose(self) -> None:
        """Stop any generation, let title tasks finish and detach from the repository."""
        if self._state.is_busy:
            await self.cancel_generation()
        await self._tasks.await_all()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # ------------------------------------------------------------------
    # Notification helpers
    # ------------------------------------------------------------------

    async def _publish(self, topic: str, data: dict[str, Any]) -> None:
        await self.events.publish(topic, data, source=EVENT_SOURCE)

    async def _publish_state(self) -> None:
        await self._publish(STATE_CHANGED, {"state": self._state})

    async def _publish_chats(self) -> None:
        await self._publish(CHATS_CHANGED, {"chats": self.chats})

    def _on_chats_pushed(self, chats: list[Chat]) -> None:
        pushed = {chat.id: chat for chat in chats}
        if pushed == self._chats:
            return
        self._chats = pushed
        if self._active_chat_id is not None and self._active_chat_id not in pushed:
            remaining = self.chats
            self._active_chat_id = remaining[0].id if remaining else None
        LOGGER.info(
            "orchestrator.chats.external_change",
            extra={"event": "orchestrator.chats.external_change", "chats": len(pushed)},
        )
        self._tasks.spawn(self._publish_chats())

    # ------------------------------------------------------------------
    # Chat persistence helpers
    # ------------------------------------------------------------------

    async def _put_chat(self, chat: Chat) -> Chat:
        async with self._chat_lock:
            self._chats[chat.id] = chat
            await self._repository.save_chat(chat)
        await self._publish_chats()
        return chat

    async def _update_chat(
        self, chat_id: str, mutate: Callable[[Chat], Chat]
    ) -> Chat | None:
        """Apply ``mutate`` to the latest copy of a chat and persist it."""
        async with self._chat_lock:
            current = self._chats.get(chat_id)
            if current is None:
                return None
            updated = mutate(current)
            self._chats[chat_id] = updated
            await self._repository.save_chat(updated)
        await self._publish_chats()
        return updated

    def _require_chat(self, chat_id: str) -> Chat:
        chat = self._chats.get(chat_id)
        if chat is None:
            raise InputValidationError(f"Unknown chat id {chat_id!r}.")
        return chat

    # ------------------------------------------------------------------
    # Chat management
    # ------------------------------------------------------------------

    async def create_new_chat(
        self,
        model_name: str | None = None,
        title: str | None = None,
        system_prompt: str | None = None,
    ) -> Chat:
        model = (model_name or self._settings.model).strip()
        if not model and self._available_models:
            model = self._available_models[0]
        if not model:
            raise InputValidationError("A model name is required to create a chat.")
        prompt = self._settings.system_prompt if system_prompt is None else system_prompt
        chat = await self._put_chat(Chat.create(model, title=title, system_prompt=prompt))
        LOGGER.info(
            "orchestrator.chat.created",
            extra={"event": "orchestrator.chat.created", "chat_id": chat.id, "model": model},
        )
        await self.set_active_chat(chat.id)
        return chat

    async def set_active_chat(self, chat_id: str) -> None:
        """Switch the observed chat without touching any in-flight generation."""
        chat = self._require_chat(chat_id)
        previous = self._active_chat_id
        self._active_chat_id = chat_id
        if chat_id != previous and chat.has_conversation:
            self._state = self._state.with_scroll_to_bottom(True)
        LOGGER.debug(
            "orchestrator.chat.activated",
            extra={
                "event": "orchestrator.chat.activated",
                "chat_id": chat_id,
                "previous_chat_id": previous,
                "generating_chat_id": self._state.current_generating_chat_id,
            },
        )
        await self._publish(ACTIVE_CHAT_CHANGED, {"chat_id": chat_id})
        await self._publish_state()

    async def reset_scroll_to_bottom_flag(self) -> None:
        if self._state.should_scroll_to_bottom_on_chat_switch:
            self._state = self._state.with_scroll_to_bottom(False)
            await self._publish_state()

    async def delete_chat(self, chat_id: str) -> None:
        self._require_chat(chat_id)
        if self._state.is_chat_generating(chat_id) or self._sending_chat_id == chat_id:
            await self.cancel_generation()
        await self._tasks.cancel(self._title_task_name(chat_id))
        if self._state.title.is_generating_title_for(chat_id):
            self._state = self._state.stop_title_generation(chat_id)

        async with self._chat_lock:
            self._chats.pop(chat_id, None)
            await self._repository.delete_chat(chat_id)
        if self._active_chat_id == chat_id:
            remaining = self.chats
            self._active_chat_id = remaining[0].id if remaining else None
            await self._publish(ACTIVE_CHAT_CHANGED, {"chat_id": self._active_chat_id})
        LOGGER.info(
            "orchestrator.chat.deleted",
            extra={"event": "orchestrator.chat.deleted", "chat_id": chat_id},
        )
        await self._publish_chats()
        await self._publish_state()

    async def update_chat_title(self, chat_id: str, title: str) -> Chat:
        normalized = title.strip()
        if not normalized:
            raise InputValidationError("Chat title must not be empty.")
        self._require_chat(chat_id)
        updated = await self._update_chat(chat_id, lambda chat: replace(chat, title=normalized))
        return updated or self._require_chat(chat_id)

    async def update_chat_model(self, chat_id: str, model_name: str) -> Chat:
        model = model_name.strip()
        if not model:
            raise InputValidationError("Model name must not be empty.")
        self._require_chat(chat_id)

        def _mutate(chat: Chat) -> Chat:
            title = chat.title
            if chat.has_default_title and not chat.has_conversation:
                title = default_title_for_model(model)
            return replace(chat, model_name=model, title=title)

        updated = await self._update_chat(chat_id, _mutate)
        return updated or self._require_chat(chat_id)

    async def update_chat_generation_settings(
        self, chat_id: str, settings: GenerationSettings | None
    ) -> Chat:
        self._require_chat(chat_id)
        updated = await self._update_chat(
            chat_id, lambda chat: replace(chat, custom_generation_settings=settings)
        )
        return updated or self._require_chat(chat_id)

    async def toggle_thinking_bubble(self, message_id: str) -> bool:
        self._state = self._state.toggle_thinking_bubble(message_id)
        await self._publish_state()
        return self._state.thinking.is_bubble_expanded(message_id)

    async def clear_error(self) -> None:
        if self._error is not None:
            self._error = None
            await self._publish(ERROR_RAISED, {"error": None})

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_generation(self) -> None:
        """Cancel the in-flight send and reset generation state immediately.

        The reset happens before anything is awaited, so callers observe an
        idle state even while a stale stream is still delivering chunks.
        """
        self._cancellation_token.cancel()
        self._cancellation_token = CancellationToken()
        cancelled_chat_id = self._state.current_generating_chat_id or self._sending_chat_id
        self._sending_chat_id = None
        self._state = self._state.reset_generation()
        LOGGER.info(
            "orchestrator.generation.cancelled",
            extra={"event": "orchestrator.generation.cancelled", "chat_id": cancelled_chat_id},
        )
        await self._publish_state()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(
        self, content: str, attached_files: Sequence[str] | None = None
    ) -> Message | None:
        """Send ``content`` to the active chat and return the assistant reply.

        Returns None when the send was cancelled or failed; failures are
        reported through ``error`` and the ``error.raised`` event.
        """
        chat = self.active_chat
        if chat is None:
            raise InvalidStateError("No active chat to send a message to.")
        if self._state.is_sending_message:
            raise InvalidStateError("A message is already being sent.")
        if self._state.is_generating:
            raise InvalidStateError(
                f"Chat {self._state.current_generating_chat_id} is already generating."
            )
        text = content.strip()
        files = [path for path in (attached_files or ()) if path]
        if not text and not files:
            raise InputValidationError("Message content must not be empty.")

        token = self._cancellation_token
        chat_id = chat.id
        self._error = None
        self._state = self._state.begin_send()
        self._sending_chat_id = chat_id
        await self._publish_state()

        try:
            return await self._run_send(chat_id, text, files, token)
        except asyncio.CancelledError:
            if not token.cancelled:
                self._state = self._state.reset_generation()
                await self._publish_state()
            raise
        except Exception as exc:  # noqa: BLE001 - every failure is classified and surfaced.
            if token.cancelled or classify(exc) is ErrorKind.CANCELLATION:
                if not token.cancelled:
                    self._state = self._state.reset_generation()
                    await self._publish_state()
                LOGGER.info(
                    "orchestrator.send.cancelled",
                    extra={"event": "orchestrator.send.cancelled", "chat_id": chat_id},
                )
                return None
            await self._fail_send(exc, chat_id)
            return None
        finally:
            # A cancelled send may still be unwinding after a newer send began.
            if not token.cancelled:
                self._sending_chat_id = None

    async def _fail_send(self, exc: Exception, chat_id: str) -> None:
        correlation_id = log_error("send_message", exc, context={"chat_id": chat_id})
        self._error = create_error_state(
            exc,
            operation="send_message",
            correlation_id=correlation_id,
            context={"chat_id": chat_id},
        )
        self._state = self._state.reset_generation()
        await self._publish_state()
        await self._publish(ERROR_RAISED, {"error": self._error})

    async def _run_send(
        self,
        chat_id: str,
        text: str,
        files: list[str],
        token: CancellationToken,
    ) -> Message | None:
        processed: list[ProcessedFile] = []
        if files:
            processed = await self._process_files(files, token)
            if token.cancelled:
                return None

        chat = self._chats.get(chat_id)
        if chat is None:
            raise InvalidStateError(f"Chat {chat_id} disappeared before sending.")
        history = chat.messages
        user_message = Message(MessageRole.USER, text, attached_files=tuple(files))
        chat = await self._update_chat(chat_id, lambda current: current.with_message(user_message))
        if chat is None:
            raise InvalidStateError(f"Chat {chat_id} disappeared before sending.")
        if token.cancelled:
            return None

        self._state = self._state.start_generation(chat_id)
        await self._publish_state()
        LOGGER.info(
            "orchestrator.generation.start",
            extra={
                "event": "orchestrator.generation.start",
                "chat_id": chat_id,
                "model": chat.model_name,
                "stream": self._settings.show_live_response,
                "files": len(processed),
            },
        )

        request = self._build_request(chat, history, text, processed, token)
        if self._settings.show_live_response:
            response_text, context = await self._stream_response(request, token)
        else:
            response_text, context = await self._complete_response(request, token)
        if token.cancelled:
            return None

        assistant_message = self._build_assistant_message(response_text, context)

        def _append(current: Chat) -> Chat:
            updated = current.with_message(assistant_message)
            if context:
                updated = replace(updated, context=context)
            return updated

        # The reply belongs to the chat that started the send, whatever is active now.
        chat = await self._update_chat(chat_id, _append)
        if token.cancelled:
            return None
        self._state = self._state.stop_generation()
        await self._publish_state()
        LOGGER.info(
            "orchestrator.generation.complete",
            extra={
                "event": "orchestrator.generation.complete",
                "chat_id": chat_id,
                "response_chars": len(assistant_message.content),
                "has_thinking": assistant_message.has_thinking,
            },
        )

        if chat is not None and chat.has_default_title:
            self._schedule_title_generation(chat, text, response_text)
        return assistant_message

    async def _process_files(
        self, files: list[str], token: CancellationToken
    ) -> list[ProcessedFile]:
        if self._file_processor is None:
            raise InputValidationError("File attachments are not supported without a file processor.")
        self._state = self._state.start_file_processing()
        await self._publish_state()

        def _on_progress(progress: FileProcessingProgress) -> None:
            if token.cancelled or not self._state.is_processing_files:
                return
            self._state = self._state.update_file_progress(progress.file_path, progress)
            # Publish this snapshot, not whatever state exists when the task runs.
            self._tasks.spawn(self._publish(STATE_CHANGED, {"state": self._state}))

        processed = await self._file_processor.process_files(
            files,
            on_progress=_on_progress,
            is_cancelled=lambda: token.cancelled,
        )
        if token.cancelled:
            return []
        self._state = self._state.stop_file_processing()
        await self._publish_state()
        return processed

    def _build_request(
        self,
        chat: Chat,
        history: Sequence[Message],
        text: str,
        processed: list[ProcessedFile],
        token: CancellationToken,
    ) -> dict[str, Any]:
        settings = chat.custom_generation_settings or self._settings.generation
        system_prompt = next(
            (message.content for message in history if message.is_system),
            self._settings.system_prompt or None,
        )
        return {
            "prompt": text,
            "model": chat.model_name or self._settings.model,
            "context": chat.context,
            "conversation_history": list(history),
            "processed_files": processed,
            "context_length": self._settings.context_length,
            "options": settings.to_ollama_options(),
            "system_prompt": system_prompt,
            "is_cancelled": lambda: token.cancelled,
        }

    def _log_retry(self, operation: str) -> Callable[[BaseException, int], None]:
        def _on_retry(exc: BaseException, attempt: int) -> None:
            LOGGER.warning(
                "orchestrator.generation.retry",
                extra={
                    "event": "orchestrator.generation.retry",
                    "operation": operation,
                    "attempt": attempt,
                    "error_kind": classify(exc).value,
                },
            )

        return _on_retry

    async def _complete_response(
        self, request: dict[str, Any], token: CancellationToken
    ) -> tuple[str, tuple[int, ...] | None]:
        policy = self._retry_policy
        response = await execute_with_retry(
            lambda: self._generation_service.generate(**request),
            max_retries=policy.max_retries,
            base_delay=policy.base_delay,
            max_delay=policy.max_delay,
            on_retry=self._log_retry("generate"),
            cancellation_token=token,
            operation_name="generate",
        )
        return response.text, response.context

    async def _stream_response(
        self, request: dict[str, Any], token: CancellationToken
    ) -> tuple[str, tuple[int, ...] | None]:
        received_any = False

        async def _consume() -> tuple[str, tuple[int, ...] | None]:
            nonlocal received_any
            raw = ""
            context: tuple[int, ...] | None = None
            stream = self._generation_service.generate_stream(**request)
            try:
                async for chunk in stream:
                    if token.cancelled:
                        break
                    received_any = True
                    raw += chunk.response_delta
                    display, thinking = apply_streaming_filter(raw, self._state.thinking)
                    self._state = self._state.with_streaming(raw, display).with_thinking(thinking)
                    await self._publish_state()
                    if chunk.done:
                        context = chunk.context
                        break
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
            return raw, context

        policy = self._retry_policy
        # Once output has been shown a retry would duplicate it.
        return await execute_with_retry(
            _consume,
            max_retries=policy.max_retries,
            base_delay=policy.base_delay,
            max_delay=policy.max_delay,
            should_retry=lambda exc: not received_any and is_retryable(exc),
            on_retry=self._log_retry("generate_stream"),
            cancellation_token=token,
            operation_name="generate_stream",
        )

    def _build_assistant_message(
        self, response_text: str, context: tuple[int, ...] | None
    ) -> Message:
        content = response_text
        thinking: str | None = None
        if self._extractor.has_thinking_content(response_text):
            extracted = self._extractor.extract_thinking_content(response_text)
            if extracted.has_displayable_thinking:
                thinking = extracted.thinking_text
                content = (
                    extracted.final_answer
                    or filter_streaming_content(response_text).display_text
                )
        return Message(
            MessageRole.ASSISTANT, content, thinking_content=thinking, context=context
        )

    # ------------------------------------------------------------------
    # Titles
    # ------------------------------------------------------------------

    @staticmethod
    def _title_task_name(chat_id: str) -> str:
        return f"title:{chat_id}"

    def _schedule_title_generation(self, chat: Chat, user_text: str, response_text: str) -> None:
        if not self.auto_title or self._state.title.is_generating_title_for(chat.id):
            return
        self._state = self._state.start_title_generation(chat.id)
        self._tasks.spawn(
            self._run_title_generation(
                chat.id, user_text, response_text, self.title_model or chat.model_name
            ),
            name=self._title_task_name(chat.id),
        )

    async def _run_title_generation(
        self, chat_id: str, user_text: str, response_text: str, model_name: str
    ) -> None:
        await self._publish_state()
        try:
            title = await self._title_generator.generate_title(
                chat_id, user_text, response_text, model_name
            )
            current = self._chats.get(chat_id)
            if current is None or not current.has_default_title:
                return
            updated = await self._update_chat(
                chat_id,
                lambda chat: replace(chat, title=title) if chat.has_default_title else chat,
            )
            if updated is not None and updated.title == title:
                await self._publish(TITLE_GENERATED, {"chat_id": chat_id, "title": title})
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - title failures stay internal.
            log_error("generate_title", exc, context={"chat_id": chat_id})
        finally:
            self._state = self._state.stop_title_generation(chat_id)
            await self._publish_state()
