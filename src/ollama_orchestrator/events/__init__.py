"""Change notification channel for UI layers."""

from .bus import Event, EventBus
from .topics import (
    ACTIVE_CHAT_CHANGED,
    ALL_TOPICS,
    CHATS_CHANGED,
    ERROR_RAISED,
    MODELS_CHANGED,
    STATE_CHANGED,
    TITLE_GENERATED,
)

__all__ = [
    "ACTIVE_CHAT_CHANGED",
    "ALL_TOPICS",
    "CHATS_CHANGED",
    "ERROR_RAISED",
    "Event",
    "EventBus",
    "MODELS_CHANGED",
    "STATE_CHANGED",
    "TITLE_GENERATED",
]
