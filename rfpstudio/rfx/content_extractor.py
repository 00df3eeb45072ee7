#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Content extractor: uploaded file -> normalized markdown text.

Extractors are picked by capability lookup over (media type, suffix):
  - plain text / markdown  pass-through, re-encoded as UTF-8
  - PDF                    pypdf
  - OOXML Word (.docx)     python-docx, headings mapped to markdown
  - legacy Word (.doc)     UTF-16LE text-run recovery
  - other known binaries   placeholder body (size + manual conversion note)

Anything else is decoded as UTF-8 on a best-effort basis. extract() never
raises: every failure degrades to a placeholder body naming the file, so the
downstream pipeline always has a string to work with.
"""

import io
import logging
import mimetypes
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger("rfpstudio.rfx.extractor")

DEFAULT_TITLE_PREFIX = "RFP Document"

TEXT_MEDIA_TYPES = ("text/plain", "text/markdown", "text/x-markdown")
TEXT_SUFFIXES = (".txt", ".md", ".markdown")


@dataclass
class Document:
    """An uploaded file on local storage."""
    path: Path
    original_name: str
    media_type: str = ""
    size_bytes: int = 0
    modified_at: Optional[datetime] = None

    @property
    def suffix(self) -> str:
        return Path(self.original_name).suffix.lower()

    @classmethod
    def from_path(cls, path, original_name: str, media_type: str = "",
                  modified_at: Optional[datetime] = None) -> "Document":
        """Build a Document from a stored upload. Stat failures leave size/mtime unset."""
        path = Path(path)
        if not media_type:
            media_type = mimetypes.guess_type(original_name)[0] or ""
        size = 0
        if modified_at is None:
            try:
                st = path.stat()
                size = st.st_size
                modified_at = datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
            except OSError as exc:
                logger.info("Could not stat %s: %s", path, exc)
        else:
            try:
                size = path.stat().st_size
            except OSError:
                pass
        return cls(path=path, original_name=original_name, media_type=media_type,
                   size_bytes=size, modified_at=modified_at)


@dataclass
class ExtractedText:
    """Normalized text of one Document.

    raw_text is the decoded content as extracted; body is the markdown handed
    to the rest of the pipeline and always starts with a top-level heading.
    """
    filename: str
    raw_text: str
    body: str
    extractor: str = ""
    cache_key: str = ""
    from_cache: bool = False


# ── placeholders ───────────────────────────────────────────────────────────────

def placeholder_body(kind: str, filename: str, size_bytes: int) -> str:
    return (
        f"# {kind} Document: {filename}\n\n"
        f"[{kind} text could not be extracted automatically.]\n\n"
        f"File size: {size_bytes} bytes\n\n"
        "Manual conversion to plain text or Markdown is recommended for better analysis."
    )


def error_body(filename: str, error) -> str:
    return (
        f"# Error Reading File: {filename}\n\n"
        f"[Error: {error}]\n\n"
        "Please try uploading the file again in a supported format."
    )


def ensure_heading(text: str, filename: str, title_prefix: str = DEFAULT_TITLE_PREFIX) -> str:
    """Prepend a synthetic title heading unless the text already opens with one."""
    if text.strip().startswith("#"):
        return text
    return f"# {title_prefix}: {filename}\n\n{text}"


# ── extractors ─────────────────────────────────────────────────────────────────

class PlainTextExtractor:
    name = "plain_text"

    def can_handle(self, media_type: str, suffix: str) -> bool:
        return media_type in TEXT_MEDIA_TYPES or suffix in TEXT_SUFFIXES

    def extract(self, data: bytes, filename: str) -> str:
        return data.decode("utf-8", errors="replace")


class PdfExtractor:
    name = "pdf"

    def can_handle(self, media_type: str, suffix: str) -> bool:
        return suffix == ".pdf" or media_type == "application/pdf"

    def extract(self, data: bytes, filename: str) -> str:
        from pypdf import PdfReader
        reader = PdfReader(io.BytesIO(data))
        pages = [(page.extract_text() or "").strip() for page in reader.pages]
        text = "\n\n".join(p for p in pages if p)
        if not text:
            return placeholder_body("PDF", filename, len(data))
        return text


class DocxExtractor:
    name = "docx"

    def can_handle(self, media_type: str, suffix: str) -> bool:
        return suffix == ".docx" or media_type == (
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
        )

    def extract(self, data: bytes, filename: str) -> str:
        from docx import Document as DocxDocument
        doc = DocxDocument(io.BytesIO(data))
        blocks = []
        for para in doc.paragraphs:
            text = para.text.strip()
            if not text:
                continue
            style = (para.style.name if para.style is not None else "") or ""
            level = _heading_level(style)
            blocks.append(f"{'#' * level} {text}" if level else text)
        if not blocks:
            return placeholder_body("Word", filename, len(data))
        return "\n\n".join(blocks)


def _heading_level(style_name: str) -> int:
    if style_name == "Title":
        return 1
    m = re.match(r"Heading (\d)", style_name)
    return min(int(m.group(1)), 6) if m else 0


class LegacyWordExtractor:
    """Recovers readable UTF-16LE runs from a binary .doc file."""
    name = "legacy_word"
    MIN_RUN_CHARS = 8
    MIN_TOTAL_CHARS = 20
    _RUN = re.compile(rb"(?:[\x09\x0a\x0d\x20-\x7e]\x00){8,}")

    def can_handle(self, media_type: str, suffix: str) -> bool:
        return suffix == ".doc" or media_type == "application/msword"

    def extract(self, data: bytes, filename: str) -> str:
        runs = []
        for match in self._RUN.finditer(data):
            text = match.group(0).decode("utf-16-le").strip()
            if len(text) >= self.MIN_RUN_CHARS:
                runs.append(text)
        text = "\n\n".join(runs)
        if len(text) < self.MIN_TOTAL_CHARS:
            return placeholder_body("Word", filename, len(data))
        return text


class PlaceholderExtractor:
    """Known binary formats with no text parser."""
    name = "placeholder"
    SUFFIXES = {
        ".odt": "OpenDocument", ".ppt": "PowerPoint", ".pptx": "PowerPoint",
        ".xls": "Excel", ".xlsx": "Excel", ".pages": "Pages",
    }

    def can_handle(self, media_type: str, suffix: str) -> bool:
        return suffix in self.SUFFIXES

    def extract(self, data: bytes, filename: str) -> str:
        kind = self.SUFFIXES.get(Path(filename).suffix.lower(), "Binary")
        return placeholder_body(kind, filename, len(data))


EXTRACTORS = [
    PlainTextExtractor(),
    PdfExtractor(),
    DocxExtractor(),
    LegacyWordExtractor(),
    PlaceholderExtractor(),
]


def select_extractor(media_type: str, suffix: str, extractors=None):
    """First extractor that claims the type, or None for unknown types."""
    for extractor in (extractors if extractors is not None else EXTRACTORS):
        if extractor.can_handle(media_type or "", suffix or ""):
            return extractor
    return None


# ── public API ─────────────────────────────────────────────────────────────────

def extract_bytes(data: bytes, filename: str, media_type: str = "",
                  title_prefix: str = DEFAULT_TITLE_PREFIX,
                  extractors=None) -> ExtractedText:
    """Extract normalized text from in-memory bytes. Never raises."""
    suffix = Path(filename).suffix.lower()
    extractor = select_extractor(media_type, suffix, extractors)
    name = extractor.name if extractor else "utf8_fallback"
    try:
        if extractor is not None:
            raw = extractor.extract(data, filename)
        else:
            try:
                raw = data.decode("utf-8")
            except UnicodeDecodeError:
                raw = (
                    f"# Unknown File Format: {filename}\n\n"
                    "[Could not read file content as text.]\n\n"
                    "Please ensure the file is in a supported text format (TXT, MD, PDF with text)."
                )
                name = "placeholder"
    except Exception as exc:
        logger.warning("Extractor %s failed for %s: %s", name, filename, exc)
        raw = error_body(filename, exc)
        name = "error"
    return ExtractedText(
        filename=filename,
        raw_text=raw,
        body=ensure_heading(raw, filename, title_prefix),
        extractor=name,
    )


def extract(document: Document, title_prefix: str = DEFAULT_TITLE_PREFIX,
            extractors=None) -> ExtractedText:
    """Read a stored Document and extract it. Never raises."""
    try:
        data = Path(document.path).read_bytes()
    except OSError as exc:
        logger.warning("Could not read upload %s: %s", document.path, exc)
        body = error_body(document.original_name, exc)
        return ExtractedText(filename=document.original_name, raw_text=body,
                             body=body, extractor="error")
    return extract_bytes(data, document.original_name, document.media_type,
                         title_prefix=title_prefix, extractors=extractors)
