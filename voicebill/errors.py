"""Error taxonomy for the voice-to-item pipeline."""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Kinds of terminal pipeline failures."""

    PERMISSION_DENIED = "PermissionDenied"
    DEVICE_UNAVAILABLE = "DeviceUnavailable"
    NO_SPEECH_DETECTED = "NoSpeechDetected"
    NETWORK_TIMEOUT = "NetworkTimeout"
    SERVICE_ERROR = "ServiceError"
    MALFORMED_RESPONSE = "MalformedResponse"
    LOW_CONFIDENCE = "LowConfidence"


USER_MESSAGES = {
    ErrorKind.PERMISSION_DENIED: "Microphone permission denied. Please allow microphone access.",
    ErrorKind.DEVICE_UNAVAILABLE: "Microphone is not available. Please try again.",
    ErrorKind.NO_SPEECH_DETECTED: "No speech detected. Please speak again.",
    ErrorKind.NETWORK_TIMEOUT: "Request timed out. Please check your internet connection.",
    ErrorKind.SERVICE_ERROR: "Voice service error. Please try again later.",
    ErrorKind.MALFORMED_RESPONSE: "Could not understand the item. Please speak again.",
    ErrorKind.LOW_CONFIDENCE: "Not sure about that item. Please speak again.",
}


class PipelineError(Exception):
    """A failure raised by one pipeline stage and carried to the terminal state."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        cause: Optional[BaseException] = None,
        stage: Optional[str] = None,
        raw_response: Optional[str] = None,
    ):
        """Initialize the pipeline error.

        Args:
            kind: Error category.
            message: Technical message for logs.
            cause: Underlying exception, if any.
            stage: Pipeline stage where the error originated.
            raw_response: Raw service reply, kept for diagnosis only.
        """
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.cause = cause
        self.stage = stage
        self.raw_response = raw_response
        if cause is not None:
            self.__cause__ = cause

    @property
    def user_message(self) -> str:
        """Short message safe to show to the end user."""
        return USER_MESSAGES[self.kind]

    def __str__(self) -> str:
        prefix = f"[{self.stage}] " if self.stage else ""
        return f"{prefix}{self.kind.value}: {self.message}"

    def __repr__(self) -> str:
        return (
            f"PipelineError(kind={self.kind.value!r}, message={self.message!r}, "
            f"stage={self.stage!r})"
        )


class PipelineBusyError(RuntimeError):
    """Raised when a run is requested while another run is still active."""


class InvalidTransitionError(ValueError):
    """Raised on a pipeline state transition that the state machine forbids."""
