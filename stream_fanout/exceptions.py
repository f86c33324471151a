"""Exceptions raised by the fan-out engine.

Only caller-initiated, synchronous operations (clip extraction, manual
transcription requests, config loading) raise these. Process lifecycle
problems are logged where they happen and never escape an event handler.
"""

from typing import Optional


class FanoutError(Exception):
    """Base class for fan-out errors."""


class ConfigLoadError(FanoutError):
    """The stream configuration file could not be read or validated."""


class RecordingNotFoundError(FanoutError):
    """The requested recording does not exist."""


class RecordingInProgressError(FanoutError):
    """The recording is still being written by an encoder."""


class TranscriptNotFoundError(RecordingNotFoundError):
    """The recording has no finished transcript."""


class ClipError(FanoutError):
    """Base class for clip extraction errors."""


class ClipValidationError(ClipError, ValueError):
    """Malformed timestamp or recording name supplied by the client."""


class ClipExtractionError(ClipError):
    """The extraction tool failed; no clip was published."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
