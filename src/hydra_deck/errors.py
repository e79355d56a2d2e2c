"""Error taxonomy shared by the registry, backends and poller."""

from __future__ import annotations


class DeckError(RuntimeError):
    """Base class for recoverable Hydra Deck errors."""


class NotFoundError(DeckError):
    """Raised when a session, group or backend handle does not exist."""


class AlreadyExistsError(DeckError):
    """Raised when an id or backend handle is already taken."""


class BackendUnavailableError(DeckError):
    """Raised when the multiplexer or container runtime cannot be reached."""


class InvalidStateError(DeckError):
    """Raised when an operation is not allowed in the current state."""


__all__ = [
    "AlreadyExistsError",
    "BackendUnavailableError",
    "DeckError",
    "InvalidStateError",
    "NotFoundError",
]
