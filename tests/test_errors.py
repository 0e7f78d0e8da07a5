"""Tests for error classification, user messages and retry helpers."""

from __future__ import annotations

import asyncio
import json
import socket
import unittest

import httpx
import ollama

from ollama_orchestrator.cancellation import CancellationToken
from ollama_orchestrator.errors import (
    ErrorKind,
    ErrorSeverity,
    classify,
    connection_failure_reason,
    create_error_state,
    execute_with_retry,
    execute_with_timeout,
    is_retryable,
    log_error,
    recovery_suggestions,
    retry_delay,
    user_message,
)
from ollama_orchestrator.exceptions import (
    GenerationCancelledError,
    GenerationTimeoutError,
    InputValidationError,
    InvalidStateError,
    OllamaApiError,
    OllamaConnectionError,
    OllamaModelNotFoundError,
    ResponseFormatError,
)


class ClassificationTests(unittest.TestCase):
    """Validate the exception to ErrorKind mapping."""

    def test_domain_errors(self) -> None:
        cases = {
            OllamaConnectionError("down"): ErrorKind.CONNECTION,
            OllamaApiError("bad"): ErrorKind.API,
            OllamaModelNotFoundError("missing"): ErrorKind.API,
            GenerationTimeoutError("slow"): ErrorKind.TIMEOUT,
            GenerationCancelledError("stop"): ErrorKind.CANCELLATION,
            InputValidationError("empty"): ErrorKind.VALIDATION,
            ResponseFormatError("garbled"): ErrorKind.FORMAT,
            InvalidStateError("illegal"): ErrorKind.STATE,
        }
        for error, kind in cases.items():
            with self.subTest(error=type(error).__name__):
                self.assertIs(classify(error), kind)

    def test_library_and_builtin_errors(self) -> None:
        request = httpx.Request("POST", "http://localhost:11434/api/generate")
        cases = {
            httpx.ConnectError("refused", request=request): ErrorKind.CONNECTION,
            httpx.ReadTimeout("slow", request=request): ErrorKind.TIMEOUT,
            TimeoutError(): ErrorKind.TIMEOUT,
            asyncio.CancelledError(): ErrorKind.CANCELLATION,
            ollama.ResponseError("model failed", 500): ErrorKind.API,
            ConnectionRefusedError(): ErrorKind.CONNECTION,
            socket.gaierror(-2, "Name or service not known"): ErrorKind.CONNECTION,
            json.JSONDecodeError("bad", "{", 0): ErrorKind.FORMAT,
            ValueError("nope"): ErrorKind.VALIDATION,
            KeyError("x"): ErrorKind.UNKNOWN,
        }
        for error, kind in cases.items():
            with self.subTest(error=type(error).__name__):
                self.assertIs(classify(error), kind)

    def test_generic_os_and_runtime_errors_are_unknown(self) -> None:
        # Only socket-level OSError subclasses and InvalidStateError carry a kind.
        for error in (OSError("disk"), FileNotFoundError("gone"), RuntimeError("odd")):
            with self.subTest(error=type(error).__name__):
                self.assertIs(classify(error), ErrorKind.UNKNOWN)
        self.assertIs(classify(socket.herror(1, "lookup")), ErrorKind.CONNECTION)
        self.assertIs(classify(ConnectionResetError()), ErrorKind.CONNECTION)

    def test_only_transient_kinds_are_retryable(self) -> None:
        self.assertTrue(is_retryable(OllamaConnectionError("down")))
        self.assertTrue(is_retryable(GenerationTimeoutError("slow")))
        self.assertTrue(is_retryable(OllamaApiError("bad")))
        self.assertFalse(is_retryable(InputValidationError("empty")))
        self.assertFalse(is_retryable(GenerationCancelledError("stop")))
        self.assertFalse(is_retryable(InvalidStateError("illegal")))


class UserMessageTests(unittest.TestCase):
    """Validate user-facing messages and suggestions."""

    def test_connection_refinement(self) -> None:
        self.assertEqual(connection_failure_reason(OllamaConnectionError("x", reason="dns")), "dns")
        self.assertEqual(connection_failure_reason(ConnectionRefusedError()), "refused")
        self.assertEqual(connection_failure_reason(OllamaConnectionError("x")), "unreachable")

        wrapped = OllamaConnectionError("Unable to connect")
        try:
            try:
                raise socket.gaierror(-2, "Name or service not known")
            except socket.gaierror as exc:
                raise wrapped from exc
        except OllamaConnectionError:
            pass
        self.assertEqual(connection_failure_reason(wrapped), "dns")
        self.assertIn("resolve", user_message(wrapped))

    def test_messages_per_kind(self) -> None:
        self.assertIn("refused", user_message(OllamaConnectionError("x", reason="refused")))
        self.assertIn("timed out", user_message(GenerationTimeoutError("slow")))
        self.assertIn("Model not available", user_message(OllamaModelNotFoundError("llama9")))
        self.assertIn("Server error", user_message(OllamaApiError("boom")))
        self.assertEqual(user_message(GenerationCancelledError()), "Operation was cancelled.")
        self.assertIn("unexpected", user_message(KeyError("x")))

    def test_suggestions_are_specific(self) -> None:
        missing = recovery_suggestions(OllamaModelNotFoundError("llama9"))
        self.assertTrue(any("ollama pull" in item for item in missing))
        refused = recovery_suggestions(OllamaConnectionError("x", reason="refused"))
        self.assertTrue(any("ollama serve" in item for item in refused))
        self.assertTrue(recovery_suggestions(InputValidationError("x")))

    def test_create_error_state(self) -> None:
        state = create_error_state(
            OllamaConnectionError("down"), operation="send_message", correlation_id="abc123"
        )
        self.assertIs(state.kind, ErrorKind.CONNECTION)
        self.assertIs(state.severity, ErrorSeverity.ERROR)
        self.assertTrue(state.can_retry)
        self.assertEqual(state.correlation_id, "abc123")
        self.assertEqual(state.operation, "send_message")
        self.assertTrue(state.suggestions)

        validation = create_error_state(InputValidationError("empty"))
        self.assertFalse(validation.can_retry)
        self.assertIs(validation.severity, ErrorSeverity.WARNING)
        self.assertIs(create_error_state(InvalidStateError("x")).severity, ErrorSeverity.CRITICAL)

    def test_log_error_returns_correlation_id(self) -> None:
        with self.assertLogs("ollama_orchestrator.errors", level="ERROR") as logs:
            correlation = log_error("send_message", OllamaApiError("boom"), context={"chat_id": "c"})
        self.assertTrue(correlation)
        self.assertTrue(any("error.classified" in line for line in logs.output))
        self.assertEqual(
            log_error("send_message", GenerationCancelledError(), correlation_id="fixed"),
            "fixed",
        )


class RetryTests(unittest.IsolatedAsyncioTestCase):
    """Validate backoff, retry predicates and cancellation."""

    def test_retry_delay_is_exponential_and_capped(self) -> None:
        self.assertEqual(retry_delay(1, 1.0, 10.0), 1.0)
        self.assertEqual(retry_delay(2, 1.0, 10.0), 2.0)
        self.assertEqual(retry_delay(3, 1.0, 10.0), 4.0)
        self.assertEqual(retry_delay(5, 1.0, 10.0), 10.0)

    async def test_succeeds_after_two_transient_failures(self) -> None:
        calls = 0
        notified: list[int] = []

        async def operation() -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise OllamaConnectionError("down")
            return "ok"

        with self.assertLogs("ollama_orchestrator.errors", level="WARNING") as logs:
            result = await execute_with_retry(
                operation,
                max_retries=3,
                base_delay=0.0,
                on_retry=lambda exc, attempt: notified.append(attempt),
            )
        self.assertEqual(result, "ok")
        self.assertEqual(calls, 3)
        self.assertEqual(notified, [1, 2])
        self.assertTrue(any("retry.scheduled" in line for line in logs.output))

    async def test_non_retryable_error_raises_immediately(self) -> None:
        calls = 0

        async def operation() -> None:
            nonlocal calls
            calls += 1
            raise InputValidationError("bad")

        with self.assertRaises(InputValidationError):
            await execute_with_retry(operation, base_delay=0.0)
        self.assertEqual(calls, 1)

    async def test_exhausted_retries_reraise_last_error(self) -> None:
        calls = 0

        async def operation() -> None:
            nonlocal calls
            calls += 1
            raise OllamaApiError(f"attempt {calls}")

        with self.assertRaises(OllamaApiError) as ctx:
            await execute_with_retry(operation, max_retries=2, base_delay=0.0)
        self.assertEqual(calls, 3)
        self.assertEqual(str(ctx.exception), "attempt 3")

    async def test_cancellation_is_never_retried(self) -> None:
        calls = 0

        async def operation() -> None:
            nonlocal calls
            calls += 1
            raise GenerationCancelledError("stop")

        with self.assertRaises(GenerationCancelledError):
            await execute_with_retry(operation, base_delay=0.0)
        self.assertEqual(calls, 1)

    async def test_custom_predicate(self) -> None:
        calls = 0

        async def operation() -> None:
            nonlocal calls
            calls += 1
            raise OllamaConnectionError("down")

        with self.assertRaises(OllamaConnectionError):
            await execute_with_retry(operation, base_delay=0.0, should_retry=lambda exc: False)
        self.assertEqual(calls, 1)

    async def test_token_aborts_backoff_delay(self) -> None:
        token = CancellationToken()

        async def operation() -> None:
            raise OllamaConnectionError("down")

        async def cancel_soon() -> None:
            await asyncio.sleep(0.05)
            token.cancel()

        canceller = asyncio.create_task(cancel_soon())
        loop = asyncio.get_running_loop()
        started = loop.time()
        with self.assertRaises(GenerationCancelledError):
            await execute_with_retry(
                operation, base_delay=5.0, max_delay=5.0, cancellation_token=token
            )
        await canceller
        self.assertLess(loop.time() - started, 1.0)

    async def test_timeout_raises_generation_timeout(self) -> None:
        async def slow() -> None:
            await asyncio.sleep(1)

        with self.assertRaises(GenerationTimeoutError) as ctx:
            await execute_with_timeout(slow, 0.01, operation_name="Slow call")
        self.assertIn("Slow call", str(ctx.exception))
        self.assertEqual(ctx.exception.timeout, 0.01)

    async def test_timeout_passes_result_through(self) -> None:
        async def fast() -> int:
            return 7

        self.assertEqual(await execute_with_timeout(fast, 1.0), 7)


if __name__ == "__main__":
    unittest.main()
