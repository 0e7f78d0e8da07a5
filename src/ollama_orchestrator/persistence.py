"""JSON chat store: one private file per chat plus a change subscription."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import json
import logging
import os
from pathlib import Path
import re

from platformdirs import user_data_path

from .exceptions import PersistenceError, ResponseFormatError
from .interfaces import ChatsListener
from .models import Chat

LOGGER = logging.getLogger(__name__)

DEFAULT_CHATS_DIR = user_data_path("ollama-orchestrator") / "chats"
_SAFE_CHAT_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class JsonChatStore:
    """Persist chats as JSON files and push the full list on every change.

    With ``enabled=False`` chats live in memory only, which keeps the
    subscription behaviour identical for throwaway sessions.
    """

    def __init__(self, directory: str | Path | None = None, *, enabled: bool = True) -> None:
        self.enabled = enabled
        self.directory = Path(directory).expanduser() if directory else DEFAULT_CHATS_DIR
        self._chats: dict[str, Chat] = {}
        self._listeners: list[ChatsListener] = []

    def _enforce_permissions(self, path: Path, mode: int = 0o600) -> None:
        if os.name != "posix":
            return
        try:
            path.chmod(mode)
        except OSError as exc:
            LOGGER.warning(
                "persistence.chmod_failed",
                extra={"event": "persistence.chmod_failed", "path": str(path), "reason": str(exc)},
            )

    def _ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._enforce_permissions(self.directory, 0o700)

    def _chat_path(self, chat_id: str) -> Path:
        if not _SAFE_CHAT_ID.match(chat_id):
            raise PersistenceError(f"Refusing to store chat with unsafe id {chat_id!r}.")
        return self.directory / f"{chat_id}.json"

    def _sorted_chats(self) -> list[Chat]:
        return sorted(self._chats.values(), key=lambda chat: chat.last_updated_at, reverse=True)

    def _notify(self) -> None:
        chats = self._sorted_chats()
        for listener in list(self._listeners):
            try:
                listener(chats)
            except Exception as exc:  # noqa: BLE001 - listeners belong to callers.
                LOGGER.error(
                    "persistence.listener.failed",
                    extra={
                        "event": "persistence.listener.failed",
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )

    # -- blocking helpers run in a worker thread ---------------------------

    def _read_all(self) -> list[Chat]:
        if not self.directory.exists():
            return []
        chats: list[Chat] = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
                chats.append(Chat.from_dict(payload))
            except (OSError, ValueError, ResponseFormatError) as exc:
                LOGGER.warning(
                    "persistence.load.skipped",
                    extra={"event": "persistence.load.skipped", "path": str(path), "reason": str(exc)},
                )
        return chats

    def _write(self, chat: Chat) -> None:
        self._ensure_directory()
        target = self._chat_path(chat.id)
        temporary = target.with_suffix(".json.tmp")
        temporary.write_text(
            json.dumps(chat.to_dict(), ensure_ascii=False, indent=2, sort_keys=True),
            encoding="utf-8",
        )
        self._enforce_permissions(temporary)
        temporary.replace(target)

    def _remove(self, chat_id: str) -> None:
        self._chat_path(chat_id).unlink(missing_ok=True)

    # -- ChatRepository ----------------------------------------------------

    async def load_chats(self) -> list[Chat]:
        """Load every stored chat, newest first. Unreadable files are skipped."""
        if self.enabled:
            try:
                loaded = await asyncio.to_thread(self._read_all)
            except OSError as exc:
                raise PersistenceError(f"Unable to read chats from {self.directory}: {exc}") from exc
            self._chats = {chat.id: chat for chat in loaded}
        LOGGER.info(
            "persistence.loaded",
            extra={"event": "persistence.loaded", "count": len(self._chats)},
        )
        return self._sorted_chats()

    async def save_chat(self, chat: Chat) -> None:
        if self.enabled:
            try:
                await asyncio.to_thread(self._write, chat)
            except OSError as exc:
                raise PersistenceError(f"Unable to save chat {chat.id}: {exc}") from exc
        self._chats[chat.id] = chat
        self._notify()

    async def delete_chat(self, chat_id: str) -> None:
        if self.enabled:
            try:
                await asyncio.to_thread(self._remove, chat_id)
            except OSError as exc:
                raise PersistenceError(f"Unable to delete chat {chat_id}: {exc}") from exc
        self._chats.pop(chat_id, None)
        self._notify()

    def subscribe(self, listener: ChatsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe
