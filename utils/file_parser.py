"""Decode uploaded criteria and DMP files into plain text."""

from __future__ import annotations

import io
import json
import logging
import re
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional, Union

import docx
from bs4 import BeautifulSoup
from docx.opc.exceptions import PackageNotFoundError
from docx.table import Table

from .pdf_tools import PDFExtractionError, extract_text_with_metadata

if TYPE_CHECKING:  # pragma: no cover
    from .ai_client import ModelClient

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = ("txt", "json", "docx", "doc", "pdf", "html", "htm", "md", "markdown")
MAX_FILE_SIZE = 50 * 1024 * 1024
MIN_DOC_TEXT_LENGTH = 100
PASTED_TEXT_NAME = "pasted-text.txt"

_ZIP_HEADER = b"PK"
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B-\x0C\x0E-\x1F]")
_WIDE_GAPS = re.compile(r"\s{3,}")
_REPEATED_CHAR = re.compile(r"(.)\1{10,}")
_WHITESPACE = re.compile(r"\s+")


class FileParseError(Exception):
    """Raised when an uploaded document cannot be turned into text."""


@dataclass
class DocumentInput:
    """A named blob of document bytes, either uploaded or pasted."""

    name: str
    data: bytes

    @classmethod
    def from_text(cls, text: str, name: str = PASTED_TEXT_NAME) -> "DocumentInput":
        return cls(name=name, data=text.encode("utf-8"))

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "DocumentInput":
        target = Path(path)
        if not target.exists():
            raise FileNotFoundError(f"Document not found: {path}")
        return cls(name=target.name, data=target.read_bytes())

    @property
    def extension(self) -> str:
        return get_file_extension(self.name)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class ParsedDocument:
    """Text decoded from a :class:`DocumentInput`."""

    text: str
    type: str
    name: str
    size: int
    is_json: bool = False


@dataclass
class FileValidation:
    valid: bool
    message: Optional[str] = None
    warning: bool = False


def get_file_extension(name: str) -> str:
    return name.lower().rsplit(".", 1)[-1] if "." in name else ""


def format_file_size(size: int) -> str:
    """Human readable size using binary units (``1.5 KB``)."""

    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    display = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{display} {units[index]}"


def validate_file(
    name: str,
    size: int,
    *,
    allowed_extensions: Iterable[str] = SUPPORTED_EXTENSIONS,
    max_bytes: int = MAX_FILE_SIZE,
) -> FileValidation:
    """Check extension and size before parsing."""

    if not name:
        return FileValidation(valid=False, message="No file provided")

    allowed = tuple(allowed_extensions)
    extension = get_file_extension(name)
    if extension not in allowed:
        return FileValidation(
            valid=False,
            message=f"Unsupported: .{extension}. Allowed: {', '.join(allowed[:4])}",
        )

    if size > max_bytes:
        return FileValidation(
            valid=False,
            message=f"File too large: {size / 1024 / 1024:.1f}MB (max {max_bytes // (1024 * 1024)}MB)",
        )

    if extension == "doc":
        return FileValidation(
            valid=True,
            warning=True,
            message="Old .doc format will use AI-powered text extraction. Best results with .docx.",
        )
    return FileValidation(valid=True)


def parse_document(
    document: DocumentInput,
    client: Optional["ModelClient"] = None,
    *,
    max_bytes: int = MAX_FILE_SIZE,
) -> ParsedDocument:
    """Decode ``document`` according to its extension.

    ``client`` is only used to clean up text recovered from legacy ``.doc``
    files; without it the raw recovered text is returned.
    """

    validation = validate_file(document.name, document.size, max_bytes=max_bytes)
    if not validation.valid:
        raise FileParseError(validation.message or "Invalid file")

    extension = document.extension
    logger.info("Parsing file %s (%s)", document.name, extension)

    is_json = False
    if extension in ("txt", "md", "markdown"):
        text = _decode_text(document.data)
    elif extension == "json":
        text = _parse_json(document.data)
        is_json = True
    elif extension in ("docx", "doc"):
        text = _parse_word(document, client)
    elif extension == "pdf":
        try:
            text = extract_text_with_metadata(document.data, name=document.name).text
        except PDFExtractionError as exc:
            raise FileParseError(f"PDF parse error: {exc}") from exc
    else:
        text = _parse_html(document.data)

    logger.info("Parsed %s: %d characters", document.name, len(text))
    return ParsedDocument(
        text=text,
        type=extension,
        name=document.name,
        size=document.size,
        is_json=is_json,
    )


def _decode_text(data: bytes) -> str:
    return data.decode("utf-8-sig", errors="replace")


def _parse_json(data: bytes) -> str:
    try:
        payload = json.loads(_decode_text(data))
    except json.JSONDecodeError as exc:
        raise FileParseError("Invalid JSON format") from exc
    return json.dumps(payload, indent=2, ensure_ascii=False)


def _parse_html(data: bytes) -> str:
    soup = BeautifulSoup(_decode_text(data), "html.parser")
    for element in soup(["script", "style"]):
        element.decompose()
    return _WHITESPACE.sub(" ", soup.get_text(" ")).strip()


def _parse_word(document: DocumentInput, client: Optional["ModelClient"]) -> str:
    if not document.data.startswith(_ZIP_HEADER):
        logger.warning("Legacy .doc format detected for %s, extracting raw text", document.name)
        raw_text = extract_legacy_doc_text(document.data)
        if len(raw_text) < MIN_DOC_TEXT_LENGTH:
            raise FileParseError(
                "Insufficient text extracted from .doc file. Please save as .docx or paste text."
            )
        if client is None:
            return raw_text
        return client.clean_doc_text(raw_text)

    try:
        word_document = docx.Document(io.BytesIO(document.data))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as exc:
        raise FileParseError("File corrupted. Try: Save as .docx or paste text instead.") from exc

    blocks = []
    for block in word_document.iter_inner_content():
        if isinstance(block, Table):
            blocks.extend(_table_rows(block))
        else:
            text = block.text.strip()
            if text:
                blocks.append(text)
    return "\n".join(blocks)


def _table_rows(table: Table) -> list[str]:
    """Render table rows as markdown-style ``| a | b |`` lines."""

    rows = []
    for row in table.rows:
        cells = []
        previous = None
        for cell in row.cells:
            # merged cells are returned once per grid column
            if previous is not None and cell._tc is previous:
                continue
            previous = cell._tc
            cells.append(_WHITESPACE.sub(" ", cell.text).strip())
        if any(cells):
            rows.append("| " + " | ".join(cells) + " |")
    return rows


def extract_legacy_doc_text(data: bytes) -> str:
    """Recover printable text from a binary Word 97-2003 file."""

    kept = bytes(byte for byte in data if byte >= 32 and byte != 127 or byte in (9, 10, 13))
    text = kept.decode("latin-1")
    text = _CONTROL_CHARS.sub("", text)
    text = _WIDE_GAPS.sub("\n\n", text)
    text = _REPEATED_CHAR.sub(r"\1", text)
    return text.strip()
