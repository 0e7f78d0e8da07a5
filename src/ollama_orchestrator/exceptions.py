"""Domain exception hierarchy for the chat orchestration core."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for all domain-level orchestration errors."""


class OllamaConnectionError(OrchestratorError):
    """Raised when the Ollama host cannot be reached."""

    def __init__(self, message: str, *, reason: str = "unreachable") -> None:
        super().__init__(message)
        # One of "unreachable", "refused", "dns".
        self.reason = reason


class OllamaApiError(OrchestratorError):
    """Raised when the server answers with an error status or model failure."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OllamaModelNotFoundError(OllamaApiError):
    """Raised when the requested model is unavailable on the server."""


class GenerationTimeoutError(OrchestratorError):
    """Raised when an operation exceeds its deadline."""

    def __init__(self, message: str, *, timeout: float | None = None) -> None:
        super().__init__(message)
        self.timeout = timeout


class GenerationCancelledError(OrchestratorError):
    """Raised when an operation observes a cancelled token."""


class InputValidationError(OrchestratorError):
    """Raised when caller-supplied input is unusable."""


class ResponseFormatError(OrchestratorError):
    """Raised when a server payload cannot be decoded."""


class InvalidStateError(OrchestratorError):
    """Raised on an illegal transition or a snapshot violating its invariants."""


class ConfigValidationError(OrchestratorError):
    """Raised when configuration cannot be validated safely."""


class FileProcessingError(OrchestratorError):
    """Raised when attached files cannot be processed."""


class PersistenceError(OrchestratorError):
    """Raised when chat persistence operations fail."""
