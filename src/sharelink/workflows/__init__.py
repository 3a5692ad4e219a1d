"""High-level exports for the sharelink workflows."""

from .errors import (
    BodyTypeError,
    ExtractionFailure,
    IsolationFailure,
    ReadFailure,
    ScriptRuntimeError,
    SharelinkError,
    TransportError,
)
from .extract import DownloadedFile, download_binary, extract, extract_from_body, extract_sync
from .extract_config import DEFAULT_CONFIG, ExtractConfig
from .resolver import ExtractionResult, resolve_link
from .sandbox import SandboxRealm
from .transport import TransportRequest, TransportResponse, aiohttp_transport, requests_transport

__all__ = [
    "BodyTypeError",
    "DEFAULT_CONFIG",
    "DownloadedFile",
    "ExtractConfig",
    "ExtractionFailure",
    "ExtractionResult",
    "IsolationFailure",
    "ReadFailure",
    "SandboxRealm",
    "ScriptRuntimeError",
    "SharelinkError",
    "TransportError",
    "TransportRequest",
    "TransportResponse",
    "aiohttp_transport",
    "download_binary",
    "extract",
    "extract_from_body",
    "extract_sync",
    "requests_transport",
    "resolve_link",
]
