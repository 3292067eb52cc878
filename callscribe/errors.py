"""Exception types raised across the pipeline."""
from __future__ import annotations


class CallscribeError(Exception):
    """Base for all callscribe errors."""


class DuplicateSessionError(CallscribeError):
    """A stream tried to start a call ID that already has an active session."""

    def __init__(self, call_id: str) -> None:
        super().__init__(f"Session already active for call {call_id}")
        self.call_id = call_id


class MalformedFrameError(CallscribeError):
    """A media connection sent a frame that is not a JSON object."""


class ProviderError(CallscribeError):
    """Transcription provider rejected a request or returned an unusable response."""


class InvalidTransitionError(CallscribeError):
    """A transcription request was moved out of a terminal state."""
