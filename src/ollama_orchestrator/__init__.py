"""Top-level package for ollama-orchestrator."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .cancellation import CancellationToken
    from .config import ConfiguredChatSettings, load_config
    from .errors import ErrorKind, ErrorState, RetryPolicy
    from .events import EventBus
    from .exceptions import (
        ConfigValidationError,
        GenerationCancelledError,
        GenerationTimeoutError,
        InputValidationError,
        InvalidStateError,
        OllamaApiError,
        OllamaConnectionError,
        OllamaModelNotFoundError,
        OrchestratorError,
    )
    from .models import Chat, GenerationSettings, Message, MessageRole
    from .orchestrator import GenerationOrchestrator
    from .persistence import JsonChatStore
    from .state import ChatOperationState

__all__ = [
    "CancellationToken",
    "Chat",
    "ChatOperationState",
    "ConfigValidationError",
    "ConfiguredChatSettings",
    "ErrorKind",
    "ErrorState",
    "EventBus",
    "GenerationCancelledError",
    "GenerationOrchestrator",
    "GenerationSettings",
    "GenerationTimeoutError",
    "InputValidationError",
    "InvalidStateError",
    "JsonChatStore",
    "Message",
    "MessageRole",
    "OllamaApiError",
    "OllamaConnectionError",
    "OllamaModelNotFoundError",
    "OrchestratorError",
    "RetryPolicy",
    "load_config",
]

_EXCEPTION_NAMES = {
    "ConfigValidationError",
    "GenerationCancelledError",
    "GenerationTimeoutError",
    "InputValidationError",
    "InvalidStateError",
    "OllamaApiError",
    "OllamaConnectionError",
    "OllamaModelNotFoundError",
    "OrchestratorError",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so importing the package does not pull in the Ollama client."""
    if name == "GenerationOrchestrator":
        from .orchestrator import GenerationOrchestrator

        return GenerationOrchestrator
    if name in {"ConfiguredChatSettings", "load_config"}:
        from .config import ConfiguredChatSettings, load_config

        return {"ConfiguredChatSettings": ConfiguredChatSettings, "load_config": load_config}[name]
    if name in _EXCEPTION_NAMES:
        from . import exceptions

        return getattr(exceptions, name)
    if name in {"ErrorKind", "ErrorState", "RetryPolicy"}:
        from .errors import ErrorKind, ErrorState, RetryPolicy

        return {"ErrorKind": ErrorKind, "ErrorState": ErrorState, "RetryPolicy": RetryPolicy}[name]
    if name in {"Chat", "GenerationSettings", "Message", "MessageRole"}:
        from .models import Chat, GenerationSettings, Message, MessageRole

        return {
            "Chat": Chat,
            "GenerationSettings": GenerationSettings,
            "Message": Message,
            "MessageRole": MessageRole,
        }[name]
    if name == "ChatOperationState":
        from .state import ChatOperationState

        return ChatOperationState
    if name == "CancellationToken":
        from .cancellation import CancellationToken

        return CancellationToken
    if name == "EventBus":
        from .events import EventBus

        return EventBus
    if name == "JsonChatStore":
        from .persistence import JsonChatStore

        return JsonChatStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
