"""Share-link extraction: fetch, sandbox the page's link logic, resolve.

States, in order: fetching -> validating -> booting -> locating ->
executing -> reading -> resolving -> done. Any surfaced error ends the call;
individual script failures do not. Nothing is retried here.
"""

from __future__ import annotations

import asyncio
import functools
import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..core.keys import K_BODY_SIZE, K_FILENAME, K_PATH, K_SHA256, K_URL
from .document import install_window
from .errors import BodyTypeError, ExtractionFailure, ReadFailure, SharelinkError, TransportError
from .extract_config import HDR_USER_AGENT, STRATEGY_FIRST, ExtractConfig
from .resolver import ExtractionResult, filename_from_headers, resolve_link
from .sandbox import SandboxRealm
from .scripts import filter_scripts, locate_scripts
from .transport import (
    Transport,
    TransportRequest,
    TransportResponse,
    aiohttp_transport,
    call_transport,
)

logger = logging.getLogger(__name__)

STATE_FETCHING = "fetching"
STATE_VALIDATING = "validating"
STATE_BOOTING = "booting"
STATE_LOCATING = "locating"
STATE_EXECUTING = "executing"
STATE_READING = "reading"
STATE_RESOLVING = "resolving"
STATE_DONE = "done"

_FALLBACK_FILENAME = "download"


def _transition(page_url: str, state: str, detail: str = "") -> None:
    if detail:
        logger.debug("%s: %s (%s)", page_url, state, detail)
    else:
        logger.debug("%s: %s", page_url, state)


def default_transport(config: ExtractConfig) -> Transport:
    return functools.partial(aiohttp_transport, timeout=config.request_timeout)


def page_request(page_url: str, config: ExtractConfig) -> TransportRequest:
    return TransportRequest(
        url=page_url,
        method="GET",
        headers={HDR_USER_AGENT: config.user_agent},
        accept_encoding=config.accept_encoding,
        response_encoding="auto",
    )


async def _send(transport: Transport, request: TransportRequest) -> TransportResponse:
    try:
        return await call_transport(transport, request)
    except SharelinkError:
        raise
    except Exception as exc:
        raise TransportError(f"Request failed: {exc}", url=request.url) from exc


def _require_ok(response: TransportResponse, url: str) -> None:
    status = response.status_code
    if status != 200:
        raise TransportError(f"Invalid status code: {status}", url=url, status_code=status)


async def fetch_page(page_url: str, transport: Transport, config: ExtractConfig) -> str:
    """Fetch the share page and return its decoded body."""

    _transition(page_url, STATE_FETCHING)
    response = await _send(transport, page_request(page_url, config))
    _transition(page_url, STATE_VALIDATING, f"status {response.status_code}")
    _require_ok(response, page_url)
    body = response.body
    if not isinstance(body, str):
        raise BodyTypeError(type(body).__name__)
    return body


def _href_expression(target_id: str) -> str:
    return f"document.getElementById({json.dumps(target_id)}).href"


def read_href(realm: SandboxRealm, config: ExtractConfig) -> Optional[str]:
    """Read the target element's href; None when absent or unreadable."""

    try:
        values = realm.read({config.target_id: _href_expression(config.target_id)})
    except ReadFailure as exc:
        logger.debug("href read failed: %s", exc)
        return None
    href = values.get(config.target_id)
    if isinstance(href, str) and href.strip():
        return href
    return None


def extract_from_body(
    page_url: str,
    body: str,
    *,
    config: Optional[ExtractConfig] = None,
) -> ExtractionResult:
    """Run the page's matching scripts in a fresh realm and resolve the link."""

    config = config or ExtractConfig.from_env()
    if not isinstance(body, str):
        raise BodyTypeError(type(body).__name__)

    _transition(page_url, STATE_BOOTING)
    with SandboxRealm.create(config) as realm:
        install_window(realm, body, page_url, ensure_ids=(config.target_id,))

        scripts = locate_scripts(body)
        candidates = filter_scripts(scripts, config.script_marker)
        _transition(page_url, STATE_LOCATING, f"{len(candidates)}/{len(scripts)} scripts match")
        if not candidates:
            raise ExtractionFailure()

        href: Optional[str] = None
        for index, script in enumerate(candidates):
            ok = realm.run_quietly(script)
            _transition(
                page_url,
                STATE_EXECUTING,
                f"script {index + 1}/{len(candidates)}, {len(script)} chars, {'ok' if ok else 'failed'}",
            )
            if config.strategy == STRATEGY_FIRST:
                href = read_href(realm, config)
                if href:
                    break

        if config.strategy != STRATEGY_FIRST:
            _transition(page_url, STATE_READING)
            href = read_href(realm, config)

    if not href:
        raise ExtractionFailure()
    _transition(page_url, STATE_RESOLVING)
    try:
        result = resolve_link(page_url, href)
    except ValueError as exc:
        logger.debug("unresolvable href: %s", exc)
        raise ExtractionFailure() from exc
    _transition(page_url, STATE_DONE, result.download)
    return result


async def extract(
    page_url: str,
    transport: Optional[Transport] = None,
    *,
    config: Optional[ExtractConfig] = None,
) -> ExtractionResult:
    """Extract the direct download URL and filename behind a share link."""

    config = config or ExtractConfig.from_env()
    body = await fetch_page(page_url, transport or default_transport(config), config)
    # Sandboxed execution blocks; keep the event loop free for other calls.
    return await asyncio.to_thread(extract_from_body, page_url, body, config=config)


def extract_sync(
    page_url: str,
    transport: Optional[Transport] = None,
    *,
    config: Optional[ExtractConfig] = None,
) -> ExtractionResult:
    return asyncio.run(extract(page_url, transport, config=config))


@dataclass
class DownloadedFile:
    """The binary behind an extraction result."""

    url: str
    filename: str
    body: bytes = field(repr=False)
    sha256: str
    size: int
    path: Optional[Path] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            K_URL: self.url,
            K_FILENAME: self.filename,
            K_SHA256: self.sha256,
            K_BODY_SIZE: self.size,
        }
        if self.path is not None:
            payload[K_PATH] = str(self.path)
        return payload


def safe_filename(name: Optional[str]) -> str:
    base = (name or "").replace("\\", "/").split("/")[-1].strip()
    if base in {"", ".", ".."}:
        return _FALLBACK_FILENAME
    return base


async def download_binary(
    result: ExtractionResult,
    transport: Optional[Transport] = None,
    *,
    config: Optional[ExtractConfig] = None,
    dest_dir: Optional[Union[str, Path]] = None,
) -> DownloadedFile:
    """Fetch the resolved binary; optionally write it into ``dest_dir``."""

    config = config or ExtractConfig.from_env()
    request = TransportRequest(
        url=result.download,
        method="GET",
        headers={HDR_USER_AGENT: config.user_agent},
        accept_encoding=None,
        response_encoding=None,
    )
    response = await _send(transport or default_transport(config), request)
    _require_ok(response, result.download)
    body = response.body
    if not isinstance(body, bytes):
        raise BodyTypeError(type(body).__name__)

    filename = safe_filename(result.filename or filename_from_headers(response.headers))
    downloaded = DownloadedFile(
        url=result.download,
        filename=filename,
        body=body,
        sha256=hashlib.sha256(body).hexdigest(),
        size=len(body),
    )
    if dest_dir is not None:
        target_dir = Path(dest_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / filename
        target.write_bytes(body)
        downloaded.path = target
        logger.info("saved %s (%d bytes) -> %s", result.download, len(body), target)
    return downloaded


__all__ = [
    "DownloadedFile",
    "ExtractionResult",
    "default_transport",
    "download_binary",
    "extract",
    "extract_from_body",
    "extract_sync",
    "fetch_page",
    "read_href",
    "safe_filename",
]
