"""Cooperative cancellation flag shared across one logical operation."""

from __future__ import annotations

from .exceptions import GenerationCancelledError


class CancellationToken:
    """One-way cancel flag polled at suspension points.

    Once cancelled a token stays cancelled; callers swap in a fresh token to
    start the next operation.
    """

    __slots__ = ("_cancelled",)

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        """Return True once cancellation has been requested."""
        return self._cancelled

    def cancel(self) -> None:
        """Request cancellation. Idempotent."""
        self._cancelled = True

    def raise_if_cancelled(self, message: str = "Operation cancelled") -> None:
        """Raise GenerationCancelledError when the token has been cancelled."""
        if self._cancelled:
            raise GenerationCancelledError(message)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"
