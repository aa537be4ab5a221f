from __future__ import annotations

import base64

import httpx
import pytest

from comfyflow.errors import AttachmentNotFound, InputDecodeFailed, InputFetchFailed, WrongMediaType
from comfyflow.inputs import (
    Attachment,
    InputRecord,
    InputResolver,
    InputSource,
    SourceKind,
    decode_inline,
    record_index_for_role,
)

PNG = b"\x89PNG\r\n\x1a\nfake"


def _png(name: str = "a.png") -> Attachment:
    return Attachment(data=PNG + name.encode(), mime_type="image/png", file_name=name)


def _resolver(server, records=()):
    return InputResolver(httpx.Client(transport=server.transport), records)


def test_url_source_is_downloaded(server):
    server.remote_files["http://files.test/a.png"] = PNG
    got = _resolver(server).resolve(InputSource.url("http://files.test/a.png"))
    assert got.source_kind is SourceKind.URL
    assert got.data == PNG


def test_url_source_not_found(server):
    with pytest.raises(InputFetchFailed) as excinfo:
        _resolver(server).resolve(InputSource.url("http://files.test/missing.png"))
    assert "404" in excinfo.value.message


def test_url_fetch_sends_no_credentials(server):
    server.remote_files["http://files.test/a.png"] = PNG
    _resolver(server).resolve(InputSource.url("http://files.test/a.png"))
    assert "authorization" not in server.calls[0].headers


def test_inline_source():
    encoded = base64.b64encode(PNG).decode()
    assert decode_inline(encoded) == PNG
    assert decode_inline(f"data:image/png;base64,{encoded}") == PNG
    assert decode_inline(encoded[:8] + "\n" + encoded[8:]) == PNG


@pytest.mark.parametrize("payload", ["", "   ", "not base64!!", "abc"])
def test_inline_source_rejects_garbage(payload):
    with pytest.raises(InputDecodeFailed):
        decode_inline(payload)


def test_attachment_exact_name(server):
    record = InputRecord({"data": _png("a.png"), "other": _png("b.png")})
    got = _resolver(server, [record]).resolve(InputSource.attachment("data"))
    assert got.attachment_name == "data"
    assert got.mime_type == "image/png"
    assert server.calls == []


def test_attachment_falls_back_to_only_image(server):
    record = InputRecord({"photo": _png()})
    got = _resolver(server, [record]).resolve(InputSource.attachment("data"))
    assert got.attachment_name == "photo"


def test_attachment_fallback_skips_non_images(server):
    record = InputRecord(
        {
            "notes": Attachment(b"hello", "text/plain"),
            "photo": _png(),
        }
    )
    got = _resolver(server, [record]).resolve(InputSource.attachment("data"))
    assert got.attachment_name == "photo"


def test_attachment_missing(server):
    record = InputRecord({"notes": Attachment(b"hello", "text/plain")})
    with pytest.raises(AttachmentNotFound):
        _resolver(server, [record]).resolve(InputSource.attachment("data"))


def test_attachment_without_records(server):
    with pytest.raises(AttachmentNotFound):
        _resolver(server).resolve(InputSource.attachment("data"))


def test_attachment_with_wrong_media_type(server):
    record = InputRecord({"data": Attachment(b"%PDF", "application/pdf")})
    with pytest.raises(WrongMediaType):
        _resolver(server, [record]).resolve(InputSource.attachment("data"))


def test_second_input_uses_conventional_names(server):
    record = InputRecord({"data": _png("a.png"), "photo": _png("c.png"), "image2": _png("b.png")})
    got = _resolver(server, [record]).resolve(InputSource.attachment("data2"), role=1, exclude=["data"])
    assert got.attachment_name == "image2"


def test_second_input_scan_excludes_used_attachment(server):
    record = InputRecord({"data": _png("a.png"), "photo": _png("c.png")})
    got = _resolver(server, [record]).resolve(InputSource.attachment("data2"), role=1, exclude=["data"])
    assert got.attachment_name == "photo"


def test_second_input_reads_second_record(server):
    first = InputRecord({"data": _png("a.png")})
    second = InputRecord({"data": _png("b.png")})
    got = _resolver(server, [first, second]).resolve(InputSource.attachment("data"), role=1)
    assert got.data == PNG + b"b.png"


def test_record_index_for_role():
    assert record_index_for_role(0, 2) == 0
    assert record_index_for_role(1, 1) == 0
    assert record_index_for_role(1, 2) == 1


def test_parse_source_kind():
    assert InputSource.parse("BINARY", "data") == InputSource.attachment("data")
    assert InputSource.parse("base64", "eA==").kind is SourceKind.INLINE
    with pytest.raises(ValueError):
        InputSource.parse("ftp", "x")
