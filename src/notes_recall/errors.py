from __future__ import annotations


class NotesRecallError(Exception):
    """Base class for errors raised by notes_recall."""


class InvalidInput(NotesRecallError, ValueError):
    """A caller passed an argument that can never succeed. Not retryable."""


class ProviderFailure(NotesRecallError):
    """An embedding, concept-extraction or answer call failed or timed out."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class StorageFailure(NotesRecallError):
    """A store transaction could not commit and was rolled back."""


__all__ = ["NotesRecallError", "InvalidInput", "ProviderFailure", "StorageFailure"]
