"""Exception hierarchy shared by the store, the pipeline and the speech layer."""

from __future__ import annotations


class TalkbackError(Exception):
    """Base class for all talkback errors."""


class AuthenticationError(TalkbackError):
    """The caller could not be identified."""


class AuthorizationError(TalkbackError):
    """The caller does not own the resource. Fails closed: no data is returned."""


class NotFoundError(TalkbackError):
    """The requested conversation does not exist."""


class ValidationError(TalkbackError):
    """The request is malformed, e.g. an empty message without attachments."""


class TransportError(TalkbackError):
    """The generation stream failed before or during emission."""


class PersistenceError(TalkbackError):
    """A store write failed after generation succeeded."""


class EngineError(TalkbackError):
    """Fatal speech engine failure (permissions, missing hardware)."""

    def __init__(self, code: str, message: str | None = None):
        self.code = code
        super().__init__(message or f"Speech engine error: {code}")


class EngineTransientError(TalkbackError):
    """Recoverable speech engine interruption (timeouts, network drops)."""

    def __init__(self, code: str, message: str | None = None):
        self.code = code
        super().__init__(message or f"Speech engine interrupted: {code}")
