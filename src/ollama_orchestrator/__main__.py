"""CLI entrypoint for ollama-orchestrator: send one prompt and print the reply."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
from pathlib import Path
import sys

from .config import load_config
from .logging_utils import configure_logging
from .orchestrator import GenerationOrchestrator


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ollama-orchestrator",
        description="Send a prompt to a local Ollama model through the chat orchestrator",
    )
    parser.add_argument("prompt", nargs="?", help="Prompt to send")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.toml")
    parser.add_argument("--model", default=None, help="Model to use for the new chat")
    parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Wait for the complete response instead of streaming it",
    )
    parser.add_argument(
        "--file",
        dest="files",
        action="append",
        default=[],
        help="Attach a file (repeatable)",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    configure_logging(config["logging"])
    if args.no_stream:
        config["chat"]["show_live_response"] = False
    orchestrator = GenerationOrchestrator.from_config(config)
    try:
        await orchestrator.initialize()
        await orchestrator.create_new_chat(model_name=args.model)
        reply = await orchestrator.send_message(args.prompt or "", args.files)
        if reply is None:
            error = orchestrator.error
            if error is None:
                print("No response received.", file=sys.stderr)
                return 1
            print(f"{error.severity.value}: {error.message}", file=sys.stderr)
            for suggestion in error.suggestions:
                print(f"  - {suggestion}", file=sys.stderr)
            return 1
        print(reply.content)
        return 0
    finally:
        await orchestrator.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    """Parse CLI flags, send the prompt and return a process exit code."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("ollama-orchestrator")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"ollama-orchestrator {version}")
        return 0

    if not args.prompt and not args.files:
        parser.error("a prompt or at least one --file is required")

    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
