"""Error classification, user-facing messages and the retry policy."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
import json
import logging
import socket
import time
from typing import Any, TypeVar
from uuid import uuid4

import httpx
import ollama
import structlog

from .cancellation import CancellationToken
from .exceptions import (
    ConfigValidationError,
    FileProcessingError,
    GenerationCancelledError,
    GenerationTimeoutError,
    InputValidationError,
    InvalidStateError,
    OllamaApiError,
    OllamaConnectionError,
    OllamaModelNotFoundError,
    ResponseFormatError,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0
CANCEL_POLL_INTERVAL = 0.1


class ErrorKind(str, Enum):
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    API = "api"
    CANCELLATION = "cancellation"
    VALIDATION = "validation"
    FORMAT = "format"
    STATE = "state"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_SEVERITY_BY_KIND = {
    ErrorKind.CANCELLATION: ErrorSeverity.INFO,
    ErrorKind.VALIDATION: ErrorSeverity.WARNING,
    ErrorKind.FORMAT: ErrorSeverity.WARNING,
    ErrorKind.CONNECTION: ErrorSeverity.ERROR,
    ErrorKind.TIMEOUT: ErrorSeverity.ERROR,
    ErrorKind.API: ErrorSeverity.ERROR,
    ErrorKind.STATE: ErrorSeverity.CRITICAL,
    ErrorKind.UNKNOWN: ErrorSeverity.CRITICAL,
}

_RETRYABLE_KINDS = frozenset({ErrorKind.CONNECTION, ErrorKind.TIMEOUT, ErrorKind.API})

_DNS_HINTS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo failed",
    "no address associated",
    "failed host lookup",
)
_REFUSED_HINTS = ("connection refused", "errno 111", "errno 61", "actively refused")


def classify(error: BaseException) -> ErrorKind:
    """Map an exception to one of the eight error kinds."""
    if isinstance(error, (GenerationCancelledError, asyncio.CancelledError)):
        return ErrorKind.CANCELLATION
    if isinstance(error, GenerationTimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(error, OllamaConnectionError):
        return ErrorKind.CONNECTION
    if isinstance(error, OllamaApiError):
        return ErrorKind.API
    if isinstance(error, InvalidStateError):
        return ErrorKind.STATE
    if isinstance(error, ResponseFormatError):
        return ErrorKind.FORMAT
    if isinstance(error, (InputValidationError, ConfigValidationError, FileProcessingError)):
        return ErrorKind.VALIDATION
    if isinstance(error, (httpx.ConnectError, httpx.ConnectTimeout, httpx.NetworkError)):
        return ErrorKind.CONNECTION
    if isinstance(error, (TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT
    if isinstance(error, (ollama.ResponseError, httpx.HTTPStatusError)):
        return ErrorKind.API
    if isinstance(error, (ConnectionError, socket.gaierror, socket.herror)):
        return ErrorKind.CONNECTION
    if isinstance(error, (json.JSONDecodeError, UnicodeError)):
        return ErrorKind.FORMAT
    if isinstance(error, (ValueError, TypeError)):
        return ErrorKind.VALIDATION
    return ErrorKind.UNKNOWN


def is_retryable(error: BaseException) -> bool:
    return classify(error) in _RETRYABLE_KINDS


def connection_failure_reason(error: BaseException) -> str:
    """Return "dns", "refused" or "unreachable" for a connection failure."""
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, OllamaConnectionError) and current.reason != "unreachable":
            return current.reason
        if isinstance(current, (socket.gaierror, socket.herror)):
            return "dns"
        if isinstance(current, ConnectionRefusedError):
            return "refused"
        lowered = str(current).lower()
        if any(hint in lowered for hint in _DNS_HINTS):
            return "dns"
        if any(hint in lowered for hint in _REFUSED_HINTS):
            return "refused"
        current = current.__cause__ or current.__context__
    return "unreachable"


def _api_detail(error: BaseException) -> str:
    if isinstance(error, ollama.ResponseError):
        return str(error.error)
    return str(error)


def user_message(error: BaseException) -> str:
    """Return a short user-facing description of ``error``."""
    kind = classify(error)
    if kind is ErrorKind.CONNECTION:
        reason = connection_failure_reason(error)
        if reason == "dns":
            return "Unable to resolve the server address. Please check the host name in your settings."
        if reason == "refused":
            return "The server refused the connection. Please make sure Ollama is running."
        return "Unable to connect to the server. Please check your connection settings."
    if kind is ErrorKind.TIMEOUT:
        return "The operation timed out. Please try again."
    if kind is ErrorKind.API:
        if isinstance(error, OllamaModelNotFoundError):
            return f"Model not available: {error}"
        if isinstance(error, (OllamaApiError, ollama.ResponseError)):
            return f"Server error: {_api_detail(error)}"
        return "An error occurred while communicating with the server."
    if kind is ErrorKind.CANCELLATION:
        return "Operation was cancelled."
    if kind is ErrorKind.VALIDATION:
        return "Invalid input provided. Please check your data."
    if kind is ErrorKind.FORMAT:
        return "Data format error. Please try again."
    if kind is ErrorKind.STATE:
        return "Invalid operation state. Please refresh and try again."
    return "An unexpected error occurred. Please try again."


def recovery_suggestions(error: BaseException) -> list[str]:
    kind = classify(error)
    if kind is ErrorKind.CONNECTION:
        reason = connection_failure_reason(error)
        if reason == "dns":
            return [
                "Check the spelling of the server host name",
                "Verify your DNS settings or use an IP address",
                "Check your internet connection",
            ]
        if reason == "refused":
            return [
                "Start the Ollama server (ollama serve)",
                "Check that the configured port is correct",
                "Verify no firewall is blocking the port",
            ]
        return [
            "Check your internet connection",
            "Verify Ollama server is running",
            "Check server URL and port settings",
            "Try refreshing the connection",
        ]
    if kind is ErrorKind.TIMEOUT:
        return [
            "Try again with a shorter request",
            "Check your internet connection speed",
            "Increase timeout settings if available",
        ]
    if kind is ErrorKind.API:
        if isinstance(error, OllamaModelNotFoundError):
            return [
                "Pull the model with ollama pull",
                "Select a different model",
                "Check the model name for typos",
            ]
        return [
            "Check if the selected model is available",
            "Verify server configuration",
            "Try with a different model",
            "Check server logs for details",
        ]
    if kind is ErrorKind.VALIDATION:
        return [
            "Check your input data",
            "Ensure all required fields are filled",
            "Verify file formats are supported",
        ]
    if kind is ErrorKind.STATE:
        return [
            "Refresh the application",
            "Try creating a new chat",
            "Restart the application if needed",
        ]
    return [
        "Try the operation again",
        "Restart the application",
        "Check application logs for details",
    ]


@dataclass(frozen=True)
class ErrorState:
    """User-facing description of the most recent failure."""

    error: BaseException
    kind: ErrorKind
    message: str
    suggestions: tuple[str, ...]
    can_retry: bool
    operation: str | None = None
    correlation_id: str = field(default_factory=lambda: uuid4().hex[:12])
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    context: dict[str, Any] | None = None

    @property
    def severity(self) -> ErrorSeverity:
        return _SEVERITY_BY_KIND[self.kind]


def create_error_state(
    error: BaseException,
    *,
    operation: str | None = None,
    can_retry: bool = True,
    correlation_id: str | None = None,
    context: dict[str, Any] | None = None,
) -> ErrorState:
    kwargs: dict[str, Any] = {}
    if correlation_id:
        kwargs["correlation_id"] = correlation_id
    return ErrorState(
        error=error,
        kind=classify(error),
        message=user_message(error),
        suggestions=tuple(recovery_suggestions(error)),
        can_retry=can_retry and is_retryable(error),
        operation=operation,
        context=context,
        **kwargs,
    )


def log_error(
    operation: str,
    error: BaseException,
    *,
    correlation_id: str | None = None,
    context: dict[str, Any] | None = None,
) -> str:
    """Log ``error`` with its classification and return the correlation id."""
    correlation = correlation_id or uuid4().hex[:12]
    kind = classify(error)
    level = logging.INFO if kind is ErrorKind.CANCELLATION else logging.ERROR
    with structlog.contextvars.bound_contextvars(correlation_id=correlation):
        LOGGER.log(
            level,
            "error.classified",
            extra={
                "event": "error.classified",
                "correlation_id": correlation,
                "operation": operation,
                "error_kind": kind.value,
                "error_type": type(error).__name__,
                "error": str(error),
                "timestamp": datetime.now(UTC).isoformat(),
                "context": context or {},
            },
            exc_info=(type(error), error, error.__traceback__)
            if level >= logging.ERROR
            else None,
        )
    return correlation


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY


def retry_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff for the given 1-based retry attempt."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


async def _sleep_with_cancellation(
    delay: float, cancellation_token: CancellationToken | None
) -> None:
    if cancellation_token is None:
        await asyncio.sleep(delay)
        return
    deadline = time.monotonic() + delay
    while True:
        cancellation_token.raise_if_cancelled("Delay cancelled")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return
        await asyncio.sleep(min(CANCEL_POLL_INTERVAL, remaining))


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    should_retry: Callable[[BaseException], bool] | None = None,
    on_retry: Callable[[BaseException, int], None] | None = None,
    cancellation_token: CancellationToken | None = None,
    operation_name: str | None = None,
) -> T:
    """Run ``operation`` with up to ``max_retries`` retries and backoff.

    Cancellations are never retried. When ``should_retry`` is omitted only
    connection, timeout and API errors are retried. The last error is
    re-raised once retries are exhausted.
    """
    name = operation_name or "operation"
    retry_predicate = should_retry or is_retryable
    attempt = 0
    while True:
        if cancellation_token is not None:
            cancellation_token.raise_if_cancelled()
        try:
            result = await operation()
        except Exception as exc:
            if classify(exc) is ErrorKind.CANCELLATION:
                raise
            attempt += 1
            if attempt > max_retries:
                LOGGER.error(
                    "retry.exhausted",
                    extra={
                        "event": "retry.exhausted",
                        "operation": name,
                        "retries": max_retries,
                        "error": str(exc),
                    },
                )
                raise
            if not retry_predicate(exc):
                LOGGER.warning(
                    "retry.not_retryable",
                    extra={
                        "event": "retry.not_retryable",
                        "operation": name,
                        "error_kind": classify(exc).value,
                        "error": str(exc),
                    },
                )
                raise
            delay = retry_delay(attempt, base_delay, max_delay)
            LOGGER.warning(
                "retry.scheduled",
                extra={
                    "event": "retry.scheduled",
                    "operation": name,
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "error": str(exc),
                },
            )
            if on_retry is not None:
                on_retry(exc, attempt)
            await _sleep_with_cancellation(delay, cancellation_token)
            continue

        if attempt > 0:
            LOGGER.info(
                "retry.succeeded",
                extra={
                    "event": "retry.succeeded",
                    "operation": name,
                    "attempt": attempt + 1,
                },
            )
        return result


async def execute_with_timeout(
    operation: Callable[[], Awaitable[T]],
    timeout: float,
    *,
    operation_name: str | None = None,
) -> T:
    """Await ``operation`` and raise GenerationTimeoutError past ``timeout`` seconds."""
    name = operation_name or "Operation"
    try:
        return await asyncio.wait_for(operation(), timeout=timeout)
    except TimeoutError as exc:
        LOGGER.warning(
            "operation.timeout",
            extra={"event": "operation.timeout", "operation": name, "timeout": timeout},
        )
        raise GenerationTimeoutError(
            f"{name} timed out after {timeout:g}s", timeout=timeout
        ) from exc
