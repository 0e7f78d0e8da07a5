"""Tests for CLI entrypoint wiring."""

from __future__ import annotations

from contextlib import redirect_stderr, redirect_stdout
from copy import deepcopy
import io
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from ollama_orchestrator.__main__ import main
from ollama_orchestrator.config import DEFAULT_CONFIG
from ollama_orchestrator.errors import create_error_state
from ollama_orchestrator.exceptions import OllamaConnectionError
from ollama_orchestrator.models import Message, MessageRole


def _fake_orchestrator(reply: Message | None) -> MagicMock:
    orchestrator = MagicMock()
    orchestrator.initialize = AsyncMock()
    orchestrator.create_new_chat = AsyncMock()
    orchestrator.send_message = AsyncMock(return_value=reply)
    orchestrator.aclose = AsyncMock()
    orchestrator.error = None
    return orchestrator


class MainEntrypointTests(unittest.TestCase):
    """Validate top-level main() behavior."""

    def _run_main(
        self, argv: list[str], orchestrator: MagicMock
    ) -> tuple[int, str, str, MagicMock]:
        stdout, stderr = io.StringIO(), io.StringIO()
        with patch(
            "ollama_orchestrator.__main__.load_config", return_value=deepcopy(DEFAULT_CONFIG)
        ), patch("ollama_orchestrator.__main__.configure_logging") as logging_mock, patch(
            "ollama_orchestrator.__main__.GenerationOrchestrator"
        ) as orchestrator_cls:
            orchestrator_cls.from_config.return_value = orchestrator
            with redirect_stdout(stdout), redirect_stderr(stderr):
                code = main(argv)
        logging_mock.assert_called_once()
        return code, stdout.getvalue(), stderr.getvalue(), orchestrator_cls

    def test_main_sends_prompt_and_prints_reply(self) -> None:
        orchestrator = _fake_orchestrator(Message(MessageRole.ASSISTANT, "Hello there"))
        code, out, _, orchestrator_cls = self._run_main(
            ["Hi", "--model", "qwen2.5", "--file", "notes.txt"], orchestrator
        )

        self.assertEqual(code, 0)
        self.assertEqual(out.strip(), "Hello there")
        orchestrator.initialize.assert_awaited_once()
        orchestrator.create_new_chat.assert_awaited_once_with(model_name="qwen2.5")
        orchestrator.send_message.assert_awaited_once_with("Hi", ["notes.txt"])
        orchestrator.aclose.assert_awaited_once()
        config = orchestrator_cls.from_config.call_args.args[0]
        self.assertTrue(config["chat"]["show_live_response"])

    def test_no_stream_disables_live_response(self) -> None:
        orchestrator = _fake_orchestrator(Message(MessageRole.ASSISTANT, "ok"))
        _, _, _, orchestrator_cls = self._run_main(["Hi", "--no-stream"], orchestrator)
        config = orchestrator_cls.from_config.call_args.args[0]
        self.assertFalse(config["chat"]["show_live_response"])

    def test_failure_prints_message_and_suggestions(self) -> None:
        orchestrator = _fake_orchestrator(None)
        orchestrator.error = create_error_state(OllamaConnectionError("down", reason="refused"))
        code, out, err, _ = self._run_main(["Hi"], orchestrator)

        self.assertEqual(code, 1)
        self.assertEqual(out, "")
        self.assertTrue(err.startswith("error: "))
        self.assertIn("refused the connection", err)
        self.assertIn("  - ", err)
        orchestrator.aclose.assert_awaited_once()

    def test_version_flag(self) -> None:
        stdout = io.StringIO()
        with redirect_stdout(stdout):
            code = main(["--version"])
        self.assertEqual(code, 0)
        self.assertTrue(stdout.getvalue().startswith("ollama-orchestrator "))

    def test_missing_prompt_is_a_usage_error(self) -> None:
        with redirect_stderr(io.StringIO()), self.assertRaises(SystemExit) as ctx:
            main([])
        self.assertEqual(ctx.exception.code, 2)


if __name__ == "__main__":
    unittest.main()
