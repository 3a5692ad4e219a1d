"""Inline script enumeration and the cheap marker filter."""

from __future__ import annotations

from typing import Iterable, Tuple

from bs4 import BeautifulSoup

# Classic script MIME types; anything else (JSON, templates) is data, not code.
_JS_TYPES = {
    "",
    "module",
    "text/javascript",
    "application/javascript",
    "application/x-javascript",
    "application/ecmascript",
    "text/ecmascript",
    "text/jscript",
    "text/livescript",
    "text/x-javascript",
    "text/x-ecmascript",
}


def _is_javascript(type_attr: object) -> bool:
    if type_attr is None:
        return True
    mime = str(type_attr).split(";")[0].strip().lower()
    return mime in _JS_TYPES


def locate_scripts(body: str) -> Tuple[str, ...]:
    """Return inline script bodies in document order.

    External scripts (``src=``) are never fetched; empty bodies are dropped.
    """

    if not body:
        return ()
    soup = BeautifulSoup(body, "html.parser")
    found = []
    for tag in soup.find_all("script"):
        if tag.has_attr("src"):
            continue
        if not _is_javascript(tag.get("type")):
            continue
        code = tag.string if tag.string is not None else tag.get_text()
        if code and code.strip():
            found.append(str(code))
    return tuple(found)


def filter_scripts(scripts: Iterable[str], marker: str) -> Tuple[str, ...]:
    """Keep scripts that mention ``marker``. Not a security boundary."""

    if not marker:
        return tuple(scripts)
    return tuple(script for script in scripts if marker in script)


__all__ = ["locate_scripts", "filter_scripts"]
