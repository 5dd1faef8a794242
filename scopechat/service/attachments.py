"""Best-effort text extraction for files attached to a chat turn.

Attachments are never written to disk. Supported inputs are decoded to plain
text in memory; anything else yields an ``ExtractedAttachment`` without text
and a short reason, which the relay turns into a could-not-read note.
"""

from __future__ import annotations

import asyncio
import html
import itertools
import io
import os
import zipfile
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import List, Optional

from PyPDF2 import PdfReader

from scopechat.logging import get_logger
from scopechat.service.errors import UpstreamTimeoutError

logger = get_logger(__name__)

_TEXT_CONTENT_TYPES = {
    "application/json",
    "application/xml",
    "application/x-yaml",
    "application/yaml",
    "application/x-sh",
    "application/javascript",
    "application/sql",
    "application/csv",
}
_TEXT_SUFFIXES = {
    ".txt", ".md", ".markdown", ".rst", ".csv", ".tsv", ".json", ".jsonl",
    ".xml", ".yaml", ".yml", ".toml", ".ini", ".cfg", ".log", ".html", ".htm",
    ".css", ".js", ".ts", ".tsx", ".jsx", ".py", ".rb", ".go", ".rs", ".java",
    ".kt", ".c", ".h", ".cpp", ".hpp", ".cs", ".php", ".sh", ".sql", ".swift",
}
_PDF_CONTENT_TYPES = {"application/pdf", "application/x-pdf"}
_DOCX_CONTENT_TYPE = (
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
)
_DOCX_PARTS = (
    "word/document.xml",
    "word/footnotes.xml",
    "word/endnotes.xml",
)

REASON_UNSUPPORTED = "unsupported file type"
REASON_EMPTY = "no readable text found"
REASON_FAILED = "the file could not be parsed"

UPLOAD_PLACEHOLDER = "Please analyze the uploaded file"

# Pages past this are not parsed
MAX_PDF_PAGES = 200


@dataclass
class Attachment:
    filename: str
    content_type: str
    data: bytes


@dataclass
class ExtractedAttachment:
    filename: str
    text: Optional[str] = None
    truncated: bool = False
    reason: Optional[str] = None

    @property
    def readable(self) -> bool:
        return self.text is not None


def safe_filename(filename: Optional[str]) -> str:
    """Drop directory components and control characters from a client filename."""
    base = os.path.basename((filename or "").replace("\\", "/")).strip()
    cleaned = "".join(ch for ch in base if ch.isprintable())
    return cleaned[:255] or "attachment"


def _classify(filename: str, content_type: str) -> str:
    ctype = (content_type or "").split(";", 1)[0].strip().lower()
    suffix = os.path.splitext(filename)[1].lower()
    if ctype in _PDF_CONTENT_TYPES or suffix == ".pdf":
        return "pdf"
    if ctype == _DOCX_CONTENT_TYPE or suffix == ".docx":
        return "docx"
    if ctype.startswith("text/") or ctype in _TEXT_CONTENT_TYPES or suffix in _TEXT_SUFFIXES:
        return "text"
    if ctype.endswith("+json") or ctype.endswith("+xml"):
        return "text"
    return "unknown"


def _looks_like_text(data: bytes) -> bool:
    sample = data[:4096]
    if b"\x00" in sample:
        return False
    try:
        sample.decode("utf-8")
    except UnicodeDecodeError as exc:
        # A multi-byte character cut at the sample boundary is still text
        return exc.start >= len(sample) - 3
    return True


def _decode_text(data: bytes) -> str:
    if data.startswith(b"\xef\xbb\xbf"):
        data = data[3:]
    return data.decode("utf-8", errors="replace")


def _pdf_text(data: bytes) -> str:
    reader = PdfReader(io.BytesIO(data))
    if reader.is_encrypted:
        # Owner-password-only PDFs open with an empty user password
        reader.decrypt("")
    pages: List[str] = []
    for page in itertools.islice(reader.pages, MAX_PDF_PAGES):
        pages.append(page.extract_text() or "")
    return "\n".join(pages).strip()


def _docx_xml_text(xml_bytes: bytes) -> str:
    root = ET.fromstring(xml_bytes)
    paragraphs: List[str] = []
    for para in root.iter():
        if not str(para.tag).endswith("}p"):
            continue
        parts = [
            node.text
            for node in para.iter()
            if str(node.tag).endswith("}t") and node.text
        ]
        line = "".join(parts).strip()
        if line:
            paragraphs.append(line)
    return html.unescape("\n".join(paragraphs))


def _docx_text(data: bytes) -> str:
    parts: List[str] = []
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        names = set(zf.namelist())
        for name in _DOCX_PARTS:
            if name not in names:
                continue
            text = _docx_xml_text(zf.read(name))
            if text:
                parts.append(text)
    return "\n\n".join(parts).strip()


def extract_text(attachment: Attachment, *, max_chars: int) -> ExtractedAttachment:
    """Extract text from ``attachment``; never raises for bad input."""
    filename = safe_filename(attachment.filename)
    kind = _classify(filename, attachment.content_type)
    if kind == "unknown" and _looks_like_text(attachment.data):
        kind = "text"
    if kind == "unknown":
        logger.info(
            "attachment_unsupported",
            filename=filename,
            content_type=attachment.content_type,
        )
        return ExtractedAttachment(filename=filename, reason=REASON_UNSUPPORTED)

    try:
        if kind == "pdf":
            text = _pdf_text(attachment.data)
        elif kind == "docx":
            text = _docx_text(attachment.data)
        else:
            text = _decode_text(attachment.data)
    except Exception as exc:
        # Parsers raise a wide range of errors on corrupt input
        logger.warning(
            "attachment_extraction_failed",
            filename=filename,
            kind=kind,
            error_type=type(exc).__name__,
            error=str(exc)[:200],
        )
        return ExtractedAttachment(filename=filename, reason=REASON_FAILED)

    text = text.strip()
    if not text:
        return ExtractedAttachment(filename=filename, reason=REASON_EMPTY)
    truncated = len(text) > max_chars
    if truncated:
        text = text[:max_chars]
    logger.info(
        "attachment_extracted",
        filename=filename,
        kind=kind,
        chars=len(text),
        truncated=truncated,
    )
    return ExtractedAttachment(filename=filename, text=text, truncated=truncated)


async def read_attachment(
    attachment: Attachment, *, max_chars: int, timeout: float
) -> ExtractedAttachment:
    """Run ``extract_text`` in a worker thread bounded by ``timeout`` seconds.

    Raises:
        UpstreamTimeoutError: extraction did not finish in time
    """
    # On timeout the worker thread is abandoned, not stopped; MAX_PDF_PAGES
    # and the upload size limit bound how long it keeps running.
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(extract_text, attachment, max_chars=max_chars),
            timeout,
        )
    except asyncio.TimeoutError as exc:
        logger.error(
            "attachment_extraction_timeout",
            filename=safe_filename(attachment.filename),
            timeout=timeout,
        )
        raise UpstreamTimeoutError("attachment processing timed out") from exc


def render_user_content(text: str, extracted: Optional[ExtractedAttachment]) -> str:
    """Build the content of the new user turn.

    With no attachment the content is exactly ``text``. With one, the text
    (or the upload placeholder when empty) is followed by the attachment
    block or by a note that the file could not be read.
    """
    if extracted is None:
        return text
    lead = text if text.strip() else UPLOAD_PLACEHOLDER
    if not extracted.readable:
        note = (
            f"[Attachment '{extracted.filename}' could not be read: "
            f"{extracted.reason or REASON_FAILED}.]"
        )
        return f"{lead}\n\n{note}"
    block = [f"--- Attachment: {extracted.filename} ---", extracted.text or ""]
    if extracted.truncated:
        block.append("[attachment truncated]")
    block.append("--- End of attachment ---")
    return f"{lead}\n\n" + "\n".join(block)
