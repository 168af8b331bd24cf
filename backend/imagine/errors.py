"""Error taxonomy for the Imagine pipeline.

Transient model errors (rate limit, unavailable) never reach this layer unless
the retry budget ran out; they propagate as the SDK raised them. Everything
here is raised by our own code.
"""

from __future__ import annotations

USER_MESSAGE_LIMIT = 150


class ImagineError(Exception):
    """Base class. `retryable` tells the client whether resubmitting may help."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class SurveyError(ImagineError):
    """Geometry survey failed; the session falls back to manual entry."""


class RenderFailedError(ImagineError):
    """The final attempt of a run came back without a usable image."""

    def __init__(self, message: str = "Render failed") -> None:
        super().__init__(message, retryable=True)


class SessionNotFoundError(ImagineError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


def user_message(exc: BaseException, limit: int = USER_MESSAGE_LIMIT) -> str:
    """Short human-readable text for an error surfaced to the user."""
    text = exc.message if isinstance(exc, ImagineError) else str(exc)
    text = text.strip() or type(exc).__name__
    return text[:limit]
