"""Topic names published by the orchestrator."""

from __future__ import annotations

# data: {"state": ChatOperationState}
STATE_CHANGED = "state.changed"
# data: {"chats": list[Chat]}
CHATS_CHANGED = "chats.changed"
# data: {"chat_id": str | None}
ACTIVE_CHAT_CHANGED = "active_chat.changed"
# data: {"error": ErrorState}
ERROR_RAISED = "error.raised"
# data: {"chat_id": str, "title": str}
TITLE_GENERATED = "title.generated"
# data: {"models": list[str]}
MODELS_CHANGED = "models.changed"

ALL_TOPICS = (
    STATE_CHANGED,
    CHATS_CHANGED,
    ACTIVE_CHAT_CHANGED,
    ERROR_RAISED,
    TITLE_GENERATED,
    MODELS_CHANGED,
)
