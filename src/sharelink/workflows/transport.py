"""Pluggable HTTP transport contract plus aiohttp and requests defaults.

A transport is any callable taking a :class:`TransportRequest` and returning a
:class:`TransportResponse`, either directly or as an awaitable. Errors are
raised. The body is ``bytes`` when ``response_encoding`` is ``None`` and
decoded ``str`` otherwise; ``"auto"`` decodes with the charset header and
falls back to charset-normalizer detection.
"""

from __future__ import annotations

import inspect
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Tuple, Union

import aiohttp
import requests
from charset_normalizer import from_bytes

from .extract_config import (
    DEFAULT_ACCEPT_ENCODING,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_USER_AGENT,
    HDR_ACCEPT_ENCODING,
    HDR_CONTENT_TYPE,
    HDR_USER_AGENT,
)

ENCODING_AUTO = "auto"


@dataclass(frozen=True)
class TransportRequest:
    """One outbound request as seen by a transport."""

    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    accept_encoding: Optional[str] = DEFAULT_ACCEPT_ENCODING
    # Codec name, "auto", or None for raw bytes.
    response_encoding: Optional[str] = ENCODING_AUTO


@dataclass
class TransportResponse:
    """Status, lower-cased headers and body returned by a transport."""

    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Union[bytes, str, None] = None


Transport = Callable[[TransportRequest], Union[TransportResponse, Awaitable[TransportResponse]]]


def decode_bytes_auto(body: bytes, headers: Optional[Mapping[str, str]] = None) -> str:
    """Decode HTTP bytes using charset header hints with charset-normalizer fallback."""

    enc = None
    if headers:
        ct = headers.get(HDR_CONTENT_TYPE, "")
        match = re.search(r"charset=([^\s;]+)", ct, re.I)
        if match:
            enc = match.group(1).strip(' "\'').lower()
    if enc:
        try:
            return body.decode(enc, errors="replace")
        except LookupError:
            pass
    result = from_bytes(body).best()
    if result is None:
        return body.decode("utf-8", errors="replace")
    return str(result)


def decode_body(body: bytes, encoding: Optional[str], headers: Mapping[str, str]) -> Union[bytes, str]:
    if encoding is None:
        return body
    if encoding == ENCODING_AUTO:
        return decode_bytes_auto(body, headers)
    return body.decode(encoding, errors="replace")


def merge_headers(pairs: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """Lower-case header names and join repeated headers with ``", "``."""

    merged: Dict[str, str] = {}
    for name, value in pairs:
        key = name.lower()
        if key in merged:
            merged[key] = f"{merged[key]}, {value}"
        else:
            merged[key] = value
    return merged


def build_request_headers(request: TransportRequest) -> Dict[str, str]:
    headers = {HDR_USER_AGENT: DEFAULT_USER_AGENT}
    headers.update(request.headers or {})
    if request.accept_encoding:
        headers[HDR_ACCEPT_ENCODING] = request.accept_encoding
    return headers


async def aiohttp_transport(
    request: TransportRequest,
    *,
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
    session: Optional[aiohttp.ClientSession] = None,
) -> TransportResponse:
    """Default async transport backed by aiohttp."""

    async def _send(client: aiohttp.ClientSession) -> TransportResponse:
        async with client.request(
            request.method or "GET",
            request.url,
            headers=build_request_headers(request),
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            headers = merge_headers(resp.headers.items())
            raw_bytes = await resp.read()
            return TransportResponse(
                status_code=resp.status,
                headers=headers,
                body=decode_body(raw_bytes, request.response_encoding, headers),
            )

    if session is not None:
        return await _send(session)
    async with aiohttp.ClientSession() as client:
        return await _send(client)


def requests_transport(
    request: TransportRequest,
    *,
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
    session: Optional[requests.Session] = None,
) -> TransportResponse:
    """Blocking transport backed by requests."""

    client: Any = session or requests
    resp = client.request(
        request.method or "GET",
        request.url,
        headers=build_request_headers(request),
        timeout=timeout,
    )
    headers = merge_headers(resp.headers.items())
    return TransportResponse(
        status_code=resp.status_code,
        headers=headers,
        body=decode_body(resp.content, request.response_encoding, headers),
    )


async def call_transport(transport: Transport, request: TransportRequest) -> TransportResponse:
    """Invoke a sync or async transport and return its response."""

    result = transport(request)
    if inspect.isawaitable(result):
        result = await result
    return result


__all__ = [
    "ENCODING_AUTO",
    "Transport",
    "TransportRequest",
    "TransportResponse",
    "aiohttp_transport",
    "requests_transport",
    "call_transport",
    "decode_bytes_auto",
    "decode_body",
    "merge_headers",
]
