"""Tests for attachment text extraction and user-turn rendering."""

import io
import time
import zipfile

import pytest
from PyPDF2 import PdfWriter

from scopechat.service import attachments
from scopechat.service.attachments import (
    REASON_EMPTY,
    REASON_FAILED,
    REASON_UNSUPPORTED,
    UPLOAD_PLACEHOLDER,
    Attachment,
    ExtractedAttachment,
    extract_text,
    read_attachment,
    render_user_content,
    safe_filename,
)
from scopechat.service.errors import UpstreamTimeoutError


def _docx_bytes(*paragraphs: str) -> bytes:
    body = "".join(
        f'<w:p><w:r><w:t>{text}</w:t></w:r></w:p>' for text in paragraphs
    )
    document = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        '<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main">'
        f"<w:body>{body}</w:body></w:document>"
    )
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("[Content_Types].xml", "<Types/>")
        zf.writestr("word/document.xml", document)
    return buf.getvalue()


def _blank_pdf_bytes() -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=72, height=72)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


class TestExtraction:
    def test_plain_text(self):
        result = extract_text(
            Attachment("notes.txt", "text/plain", "héllo wörld".encode()), max_chars=100
        )

        assert result.readable
        assert result.text == "héllo wörld"
        assert not result.truncated

    def test_source_file_by_suffix(self):
        result = extract_text(
            Attachment("main.py", "application/octet-stream", b"print('hi')\n"),
            max_chars=100,
        )

        assert result.text == "print('hi')"

    def test_unknown_type_sniffed_as_text(self):
        result = extract_text(
            Attachment("README", "", b"just some words"), max_chars=100
        )

        assert result.text == "just some words"

    def test_invalid_utf8_is_replaced_not_fatal(self):
        result = extract_text(
            Attachment("data.csv", "text/csv", b"a,b\n\xff\xfe,c"), max_chars=100
        )

        assert result.readable
        assert "a,b" in result.text

    def test_truncation(self):
        result = extract_text(
            Attachment("big.txt", "text/plain", b"x" * 50), max_chars=10
        )

        assert result.text == "x" * 10
        assert result.truncated

    def test_docx_paragraphs(self):
        data = _docx_bytes("First paragraph", "Second &amp; last")

        result = extract_text(
            Attachment("report.docx", attachments._DOCX_CONTENT_TYPE, data),
            max_chars=1000,
        )

        assert result.text == "First paragraph\nSecond & last"

    def test_corrupt_docx_is_a_failure_not_an_exception(self):
        result = extract_text(
            Attachment("broken.docx", "", b"PK\x03\x04 not really a zip"), max_chars=100
        )

        assert not result.readable
        assert result.reason == REASON_FAILED

    def test_corrupt_pdf_is_a_failure_not_an_exception(self):
        result = extract_text(
            Attachment("broken.pdf", "application/pdf", b"%PDF-1.4 garbage"),
            max_chars=100,
        )

        assert not result.readable
        assert result.reason == REASON_FAILED

    def test_pdf_without_text_is_empty(self):
        result = extract_text(
            Attachment("blank.pdf", "application/pdf", _blank_pdf_bytes()),
            max_chars=100,
        )

        assert not result.readable
        assert result.reason == REASON_EMPTY

    def test_pdf_pages_past_the_cap_are_not_parsed(self, monkeypatch):
        extracted_pages = []

        class FakePage:
            def __init__(self, number):
                self.number = number

            def extract_text(self):
                extracted_pages.append(self.number)
                return f"page {self.number}"

        class FakeReader:
            is_encrypted = False

            def __init__(self, stream):
                self.pages = [FakePage(n) for n in range(5)]

        monkeypatch.setattr(attachments, "PdfReader", FakeReader)
        monkeypatch.setattr(attachments, "MAX_PDF_PAGES", 2)

        result = extract_text(
            Attachment("long.pdf", "application/pdf", b"%PDF-1.4"), max_chars=1000
        )

        assert extracted_pages == [0, 1]
        assert result.text == "page 0\npage 1"

    def test_binary_is_unsupported(self):
        result = extract_text(
            Attachment("photo.jpg", "image/jpeg", b"\xff\xd8\xff\xe0\x00\x10JFIF\x00"),
            max_chars=100,
        )

        assert result.reason == REASON_UNSUPPORTED

    def test_whitespace_only_text_is_empty(self):
        result = extract_text(Attachment("blank.txt", "text/plain", b"  \n\t"), max_chars=10)

        assert result.reason == REASON_EMPTY


class TestSafeFilename:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("../../etc/passwd", "passwd"),
            ("C:\\Users\\me\\notes.txt", "notes.txt"),
            ("", "attachment"),
            (None, "attachment"),
            ("bad\x00name.txt", "badname.txt"),
        ],
    )
    def test_sanitizes(self, raw, expected):
        assert safe_filename(raw) == expected


class TestRendering:
    def test_no_attachment_is_exact_text(self):
        assert render_user_content("hello there", None) == "hello there"

    def test_placeholder_when_text_empty(self):
        extracted = ExtractedAttachment(filename="a.txt", text="body")

        content = render_user_content("", extracted)

        assert content.startswith(UPLOAD_PLACEHOLDER)
        assert "--- Attachment: a.txt ---\nbody\n--- End of attachment ---" in content

    def test_truncation_marker(self):
        extracted = ExtractedAttachment(filename="a.txt", text="body", truncated=True)

        assert "[attachment truncated]" in render_user_content("look", extracted)

    def test_unreadable_note(self):
        extracted = ExtractedAttachment(filename="x.bin", reason=REASON_UNSUPPORTED)

        content = render_user_content("check this", extracted)

        assert content == (
            "check this\n\n[Attachment 'x.bin' could not be read: unsupported file type.]"
        )


class TestReadAttachment:
    async def test_runs_extraction(self):
        result = await read_attachment(
            Attachment("a.txt", "text/plain", b"hello"), max_chars=100, timeout=5
        )

        assert result.text == "hello"

    async def test_timeout_raises_upstream_timeout(self, monkeypatch):
        def slow_extract(attachment, *, max_chars):
            time.sleep(0.3)
            return ExtractedAttachment(filename="slow.txt", text="late")

        monkeypatch.setattr(attachments, "extract_text", slow_extract)

        with pytest.raises(UpstreamTimeoutError):
            await read_attachment(
                Attachment("slow.txt", "text/plain", b"x"), max_chars=10, timeout=0.05
            )
