import asyncio
import hashlib

import pytest

from sharelink.workflows.errors import BodyTypeError, ExtractionFailure, TransportError
from sharelink.workflows.extract import (
    download_binary,
    extract,
    extract_from_body,
    extract_sync,
    safe_filename,
)
from sharelink.workflows.extract_config import ExtractConfig
from sharelink.workflows.resolver import ExtractionResult
from sharelink.workflows.transport import TransportRequest, TransportResponse

PAGE_URL = "https://host/v/1/file.html"


def _page(*scripts: str, extra: str = "") -> str:
    blocks = "".join(f"<script>{code}</script>" for code in scripts)
    return f"<html><head></head><body>{extra}{blocks}</body></html>"


def _config(**overrides) -> ExtractConfig:
    values = {"script_timeout_ms": 400, "read_timeout_ms": 400}
    values.update(overrides)
    return ExtractConfig(**values)


class _StubTransport:
    def __init__(self, response: TransportResponse):
        self.response = response
        self.requests = []

    def __call__(self, request: TransportRequest) -> TransportResponse:
        self.requests.append(request)
        return self.response


def _html_transport(body, status=200) -> _StubTransport:
    return _StubTransport(TransportResponse(status_code=status, headers={}, body=body))


def test_extract_end_to_end_relative_href():
    body = _page("document.getElementById('dlbutton').href='/f/1/x/avatar.png';")
    transport = _html_transport(body)

    result = asyncio.run(extract(PAGE_URL, transport, config=_config()))

    assert result.to_dict() == {"download": "https://host/f/1/x/avatar.png", "filename": "avatar.png"}
    sent = transport.requests[0]
    assert sent.url == PAGE_URL
    assert sent.method == "GET"
    assert sent.headers["User-Agent"] == "-"
    assert sent.accept_encoding == "gzip"
    assert sent.response_encoding == "auto"


def test_extract_accepts_async_transport():
    body = _page("document.getElementById('dlbutton').href='/f/2/y/a.zip';")

    async def transport(request):
        return TransportResponse(status_code=200, headers={}, body=body)

    result = asyncio.run(extract(PAGE_URL, transport, config=_config()))
    assert result.download == "https://host/f/2/y/a.zip"


def test_extract_absolute_href():
    body = _page("document.getElementById('dlbutton').href = 'https://cdn.example/d/file.tar.gz';")
    result = extract_from_body(PAGE_URL, body, config=_config())
    assert result == ExtractionResult(download="https://cdn.example/d/file.tar.gz", filename="file.tar.gz")


def test_computed_href_like_a_share_page():
    script = (
        "var a = 7; var b = 3;"
        "document.getElementById('dlbutton').href = '/d/Xy12/' + (a % b + a * b) + '/report%20v2.pdf';"
    )
    result = extract_from_body(PAGE_URL, _page(script), config=_config())
    assert result.download == "https://host/d/Xy12/22/report%20v2.pdf"
    assert result.filename == "report v2.pdf"


def test_no_marker_scripts_fails_even_with_static_href():
    body = _page("var unrelated = 1;", extra="<a id='dlbutton' href='/static/file.bin'>x</a>")
    with pytest.raises(ExtractionFailure) as failure:
        extract_from_body(PAGE_URL, body, config=_config())
    assert str(failure.value) == "Failed to extract info"


def test_page_without_scripts_fails():
    with pytest.raises(ExtractionFailure):
        extract_from_body(PAGE_URL, "<html><body>nothing</body></html>", config=_config())


def test_marker_script_that_sets_nothing_fails():
    body = _page("var dlbutton_seen = true;")
    with pytest.raises(ExtractionFailure):
        extract_from_body(PAGE_URL, body, config=_config())


def test_throwing_script_does_not_stop_later_scripts():
    body = _page(
        "document.getElementById('dlbutton').nope.href = 'x';",
        "document.getElementById('dlbutton').href = '/f/ok.bin';",
    )
    result = extract_from_body(PAGE_URL, body, config=_config())
    assert result.download == "https://host/f/ok.bin"


def test_endless_script_is_bounded_and_later_scripts_run():
    body = _page(
        "var dlbutton_prefix = '/f/';",
        "while (true) { /* dlbutton */ }",
        "document.getElementById('dlbutton').href = dlbutton_prefix + 'after.bin';",
    )
    result = extract_from_body(PAGE_URL, body, config=_config(script_timeout_ms=300))
    assert result.download == "https://host/f/after.bin"


def test_cooperating_scripts_share_globals():
    body = _page(
        "var dlbutton_parts = ['/f', '9'];",
        "function dlbutton_path() { return dlbutton_parts.join('/') + '/joined.bin'; }",
        "document.getElementById('dlbutton').href = dlbutton_path();",
    )
    result = extract_from_body(PAGE_URL, body, config=_config())
    assert result.download == "https://host/f/9/joined.bin"


def test_first_strategy_stops_at_first_usable_href():
    body = _page(
        "document.getElementById('dlbutton').href = '/f/first.bin';",
        "document.getElementById('dlbutton').href = '/f/second.bin';",
    )
    first = extract_from_body(PAGE_URL, body, config=_config(strategy="first"))
    accumulated = extract_from_body(PAGE_URL, body, config=_config(strategy="accumulate"))
    assert first.filename == "first.bin"
    assert accumulated.filename == "second.bin"


def test_repeated_extraction_is_deterministic():
    body = _page("document.getElementById('dlbutton').href = '/f/' + (6 * 7) + '/same.bin';")
    one = extract_from_body(PAGE_URL, body, config=_config())
    two = extract_from_body(PAGE_URL, body, config=_config())
    assert one == two


def test_scripts_cannot_leak_between_calls():
    extract_from_body(
        PAGE_URL,
        _page("var dlbutton_leak = '/f/leaked.bin'; document.getElementById('dlbutton').href = dlbutton_leak;"),
        config=_config(),
    )
    body = _page("if (typeof dlbutton_leak !== 'undefined') { document.getElementById('dlbutton').href = dlbutton_leak; }")
    with pytest.raises(ExtractionFailure):
        extract_from_body(PAGE_URL, body, config=_config())


def test_custom_target_and_marker():
    body = _page("document.getElementById('fimage').href = '/i/pic.jpg';")
    result = extract_from_body(PAGE_URL, body, config=_config(target_id="fimage"))
    assert result.filename == "pic.jpg"


def test_bad_status_is_transport_error():
    transport = _html_transport("<html></html>", status=404)
    with pytest.raises(TransportError) as failure:
        asyncio.run(extract(PAGE_URL, transport, config=_config()))
    assert failure.value.status_code == 404
    assert "404" in str(failure.value)


def test_transport_exception_is_wrapped():
    def transport(request):
        raise ConnectionError("refused")

    with pytest.raises(TransportError) as failure:
        asyncio.run(extract(PAGE_URL, transport, config=_config()))
    assert "refused" in str(failure.value)


def test_binary_page_body_is_rejected():
    transport = _html_transport(b"<html></html>")
    with pytest.raises(BodyTypeError):
        asyncio.run(extract(PAGE_URL, transport, config=_config()))


def test_extract_sync_with_sync_transport():
    body = _page("document.getElementById('dlbutton').href = '/f/sync.bin';")
    result = extract_sync(PAGE_URL, _html_transport(body), config=_config())
    assert result.download == "https://host/f/sync.bin"


def test_download_binary_writes_file(tmp_path):
    payload = b"\x89PNG\r\n\x1a\n..."
    transport = _StubTransport(TransportResponse(status_code=200, headers={}, body=payload))
    result = ExtractionResult(download="https://host/f/1/x/avatar.png", filename="avatar.png")

    saved = asyncio.run(download_binary(result, transport, config=_config(), dest_dir=tmp_path))

    assert transport.requests[0].response_encoding is None
    assert transport.requests[0].accept_encoding is None
    assert saved.filename == "avatar.png"
    assert saved.size == len(payload)
    assert saved.sha256 == hashlib.sha256(payload).hexdigest()
    assert (tmp_path / "avatar.png").read_bytes() == payload
    assert saved.to_dict()["path"] == str(tmp_path / "avatar.png")


def test_download_binary_uses_content_disposition_name():
    headers = {"content-disposition": 'attachment; filename="real name.zip"'}
    transport = _StubTransport(TransportResponse(status_code=200, headers=headers, body=b"zip"))
    result = ExtractionResult(download="https://host/f/1/", filename=None)

    saved = asyncio.run(download_binary(result, transport, config=_config()))

    assert saved.filename == "real name.zip"
    assert saved.path is None
    assert "body" not in saved.to_dict()


def test_download_binary_rejects_text_body():
    transport = _StubTransport(TransportResponse(status_code=200, headers={}, body="text"))
    result = ExtractionResult(download="https://host/f/a.bin", filename="a.bin")
    with pytest.raises(BodyTypeError):
        asyncio.run(download_binary(result, transport, config=_config()))


def test_safe_filename():
    assert safe_filename("../x/evil.sh") == "evil.sh"
    assert safe_filename("..") == "download"
    assert safe_filename(None) == "download"


def test_out_of_range_port_in_page_url_still_resolves():
    body = _page("document.getElementById('dlbutton').href = '/f/1/x/avatar.png';")
    result = extract_from_body("https://host:99999/v/1/file.html", body, config=_config())
    assert result.download == "https://host:99999/f/1/x/avatar.png"
    assert result.filename == "avatar.png"
