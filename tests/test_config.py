"""Tests for configuration loading and validation."""

from __future__ import annotations

import os
from pathlib import Path
import tempfile
import unittest

from ollama_orchestrator.config import (
    DEFAULT_CONFIG,
    ConfiguredChatSettings,
    load_config,
)
from ollama_orchestrator.models import GenerationSettings


class ConfigTests(unittest.TestCase):
    """Validate config merge and fallback behavior."""

    def test_missing_config_uses_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config = load_config(config_path=Path(temp_dir) / "config.toml")
            self.assertEqual(config, DEFAULT_CONFIG)
            self.assertEqual(config["ollama"]["model"], "llama3.2")
            self.assertTrue(config["chat"]["show_live_response"])
            self.assertEqual(config["retry"]["max_retries"], 3)
            self.assertFalse(config["security"]["allow_remote_hosts"])

    def test_partial_config_overrides_selected_values(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text(
                """
[ollama]
model = "qwen2.5"

[chat]
show_live_response = false
context_length = 8192

[generation]
temperature = 0.3

[title]
enabled = false
                """.strip(),
                encoding="utf-8",
            )
            config = load_config(config_path=config_path)
            self.assertEqual(config["ollama"]["model"], "qwen2.5")
            self.assertEqual(config["ollama"]["host"], DEFAULT_CONFIG["ollama"]["host"])
            self.assertFalse(config["chat"]["show_live_response"])
            self.assertEqual(config["chat"]["context_length"], 8192)
            self.assertEqual(config["generation"]["temperature"], 0.3)
            self.assertFalse(config["title"]["enabled"])
            self.assertEqual(config["logging"]["level"], DEFAULT_CONFIG["logging"]["level"])

    def test_invalid_values_fall_back_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text(
                """
[generation]
temperature = 9.0
                """.strip(),
                encoding="utf-8",
            )
            with self.assertLogs("ollama_orchestrator.config", level="WARNING"):
                config = load_config(config_path=config_path)
            self.assertEqual(config, DEFAULT_CONFIG)

    def test_malformed_toml_falls_back_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text("[ollama\nmodel = ", encoding="utf-8")
            with self.assertLogs("ollama_orchestrator.config", level="WARNING"):
                config = load_config(config_path=config_path)
            self.assertEqual(config, DEFAULT_CONFIG)

    def test_remote_host_rejected_unless_allowed(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text(
                '[ollama]\nhost = "http://gpu-box.example:11434"\n', encoding="utf-8"
            )
            with self.assertLogs("ollama_orchestrator.config", level="WARNING"):
                config = load_config(config_path=config_path)
            self.assertEqual(config["ollama"]["host"], DEFAULT_CONFIG["ollama"]["host"])

            config_path.write_text(
                '[ollama]\nhost = "http://gpu-box.example:11434"\n'
                "[security]\nallow_remote_hosts = true\n",
                encoding="utf-8",
            )
            config = load_config(config_path=config_path)
            self.assertEqual(config["ollama"]["host"], "http://gpu-box.example:11434")

    def test_retry_delays_must_be_ordered(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text(
                "[retry]\nbase_delay_seconds = 5.0\nmax_delay_seconds = 1.0\n",
                encoding="utf-8",
            )
            with self.assertLogs("ollama_orchestrator.config", level="WARNING"):
                config = load_config(config_path=config_path)
            self.assertEqual(config["retry"], DEFAULT_CONFIG["retry"])

    @unittest.skipUnless(os.name == "posix", "POSIX permissions only")
    def test_config_file_permissions_are_tightened(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text("", encoding="utf-8")
            config_path.chmod(0o644)
            load_config(config_path=config_path)
            self.assertEqual(config_path.stat().st_mode & 0o777, 0o600)


class ConfiguredChatSettingsTests(unittest.TestCase):
    def test_settings_view_from_config(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text(
                '[chat]\nsystem_prompt = "Be terse."\n[generation]\ntop_k = 20\n',
                encoding="utf-8",
            )
            settings = ConfiguredChatSettings.from_config(load_config(config_path=config_path))
        self.assertEqual(settings.model, "llama3.2")
        self.assertEqual(settings.system_prompt, "Be terse.")
        self.assertEqual(settings.context_length, 4096)
        self.assertIsInstance(settings.generation, GenerationSettings)
        self.assertEqual(settings.generation.to_ollama_options(), {"top_k": 20})


if __name__ == "__main__":
    unittest.main()
