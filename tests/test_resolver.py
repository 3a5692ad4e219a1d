import json

from sharelink.workflows.resolver import (
    ExtractionResult,
    decode_segment,
    derive_filename,
    filename_from_headers,
    resolve_link,
)


def test_resolve_relative_href_against_page():
    result = resolve_link("https://host/v/x/file.html", "/d/abc/name.png")
    assert result == ExtractionResult(download="https://host/d/abc/name.png", filename="name.png")


def test_resolve_path_relative_href():
    result = resolve_link("https://host/v/x/file.html", "d/name.png")
    assert result.download == "https://host/v/x/d/name.png"


def test_resolve_absolute_href_is_kept():
    result = resolve_link("https://host/v/x/file.html", " https://cdn.other/files/a.zip ")
    assert result.download == "https://cdn.other/files/a.zip"
    assert result.filename == "a.zip"


def test_filename_is_percent_decoded():
    result = resolve_link("https://host/v/1/file.html", "/f/1/my%20file%C3%A9.txt")
    assert result.filename == "my fileé.txt"


def test_filename_absent_for_trailing_slash():
    assert resolve_link("https://host/v/1/file.html", "/f/1/").filename is None
    assert derive_filename("https://host") is None


def test_malformed_escapes_yield_no_filename():
    assert decode_segment("bad%zzname") is None
    assert decode_segment("trailing%") is None
    assert decode_segment("%ff.bin") is None
    assert decode_segment("") is None
    assert decode_segment("plain.bin") == "plain.bin"


def test_result_serializes_with_null_filename():
    result = ExtractionResult(download="https://host/f/", filename=None)
    assert json.loads(result.to_json()) == {"download": "https://host/f/", "filename": None}


def test_filename_from_content_disposition():
    headers = {"content-disposition": 'attachment; filename="../../etc/report.pdf"'}
    assert filename_from_headers(headers) == "report.pdf"
    assert filename_from_headers({"content-disposition": "inline"}) is None
    assert filename_from_headers({}) is None


def test_reserved_escapes_stay_encoded_in_filename():
    result = resolve_link("https://host/v/1/file.html", "/f/1/a%2Fb%3F.png")
    assert result.filename == "a%2Fb%3F.png"
    assert decode_segment("a%2fb%23c%20d.png") == "a%2fb%23c d.png"
    assert decode_segment("%41%C3%A9%3B") == "Aé%3B"


def test_truncated_multibyte_escape_yields_no_filename():
    assert decode_segment("caf%C3") is None
    assert decode_segment("%C3x") is None
