"""Turn a captured href into an absolute download URL plus a filename."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from email.message import Message
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urljoin, urlparse

from ..core.keys import K_DOWNLOAD, K_FILENAME
from .extract_config import HDR_CONTENT_DISPOSITION

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_ESCAPE_RUN = re.compile(r"(?:%[0-9A-Fa-f]{2})+")
# URI delimiters stay percent-encoded when a segment is decoded.
_RESERVED = frozenset(";/?:@&=+$,#")


@dataclass(frozen=True)
class ExtractionResult:
    """Outcome of a successful extraction."""

    download: str
    filename: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {K_DOWNLOAD: self.download, K_FILENAME: self.filename}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def _decode_escapes(match: re.Match) -> str:
    escapes = match.group(0)
    out = []
    pending = bytearray()
    for pos in range(0, len(escapes), 3):
        token = escapes[pos:pos + 3]
        byte = int(token[1:], 16)
        if byte >= 0x80:
            pending.append(byte)
            continue
        if pending:
            out.append(pending.decode("utf-8"))
            pending.clear()
        char = chr(byte)
        out.append(token if char in _RESERVED else char)
    if pending:
        out.append(pending.decode("utf-8"))
    return "".join(out)


def decode_segment(segment: str) -> Optional[str]:
    """Percent-decode one path segment like ``decodeURI``.

    Escapes for URI delimiters (``%2F``, ``%3F``, ``%23`` ...) are kept as
    written. None when the segment is empty or an escape is malformed.
    """

    if not segment or _BAD_ESCAPE.search(segment):
        return None
    try:
        decoded = _ESCAPE_RUN.sub(_decode_escapes, segment)
    except UnicodeDecodeError:
        return None
    return decoded or None


def derive_filename(url: str) -> Optional[str]:
    path = urlparse(url).path or ""
    return decode_segment(path.split("/")[-1])


def resolve_link(page_url: str, href: str) -> ExtractionResult:
    download = urljoin(page_url, href.strip())
    return ExtractionResult(download=download, filename=derive_filename(download))


def filename_from_headers(headers: Mapping[str, str]) -> Optional[str]:
    """Filename advertised by Content-Disposition, if any."""

    value = (headers or {}).get(HDR_CONTENT_DISPOSITION)
    if not value:
        return None
    msg = Message()
    msg[HDR_CONTENT_DISPOSITION] = value
    name = msg.get_filename()
    if not name:
        return None
    # Never let a header choose a directory.
    name = name.replace("\\", "/").split("/")[-1].strip()
    return name or None


__all__ = [
    "ExtractionResult",
    "decode_segment",
    "derive_filename",
    "resolve_link",
    "filename_from_headers",
]
