"""Error taxonomy for share-link extraction.

Callers receive either a complete result or exactly one of the surfaced
errors below. ``ScriptRuntimeError`` and ``ReadFailure`` are raised by the
sandbox and absorbed by the orchestrator.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "SharelinkError",
    "TransportError",
    "BodyTypeError",
    "IsolationFailure",
    "ScriptRuntimeError",
    "ReadFailure",
    "ExtractionFailure",
]


class SharelinkError(Exception):
    """Base class for every error raised by sharelink."""


class TransportError(SharelinkError):
    """Non-200 status or a failure inside the transport."""

    def __init__(self, message: str, *, url: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class BodyTypeError(SharelinkError):
    """The transport returned a body that is not decoded text."""

    def __init__(self, body_type: str) -> None:
        super().__init__(f"Invalid body type: {body_type}")
        self.body_type = body_type


class IsolationFailure(SharelinkError):
    """The sandbox realm cannot guarantee a clean global. Never retried."""


class ScriptRuntimeError(SharelinkError):
    """A script threw, failed to parse, or ran past its timeout."""

    def __init__(self, reason: str = "error") -> None:
        super().__init__(f"script {reason}")
        self.reason = reason


class ReadFailure(SharelinkError):
    """Reading values out of the realm produced no usable data."""


class ExtractionFailure(SharelinkError):
    """No candidate script produced a usable download link."""

    def __init__(self, message: str = "Failed to extract info") -> None:
        super().__init__(message)
