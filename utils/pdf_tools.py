"""Text extraction for PDF data management plans."""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Optional, Union

from PyPDF2 import PdfReader
from PyPDF2.errors import PyPdfError


class PDFExtractionError(Exception):
    """Raised when PDF text cannot be extracted."""


@dataclass
class PDFTextExtraction:
    """Extracted text plus the page count of the source document."""

    text: str
    page_count: int


def extract_text_with_metadata(
    source: Union[bytes, bytearray],
    *,
    name: str = "document.pdf",
    max_pages: Optional[int] = None,
) -> PDFTextExtraction:
    """Concatenate page text, separating pages with a blank line."""

    try:
        reader = PdfReader(io.BytesIO(bytes(source)))
        page_count = len(reader.pages)
    except (PyPdfError, ValueError, OSError) as exc:
        raise PDFExtractionError(f"Failed to open PDF: {name}") from exc

    chunks: list[str] = []
    limit = max_pages if max_pages and max_pages > 0 else None
    for index, page in enumerate(reader.pages):
        if limit is not None and index >= limit:
            break
        try:
            text = page.extract_text() or ""
        except (PyPdfError, ValueError, KeyError) as exc:
            raise PDFExtractionError(f"Failed to extract text from page {index + 1} of {name}") from exc
        chunks.append(text.strip())

    content = "\n\n".join(chunk for chunk in chunks if chunk)
    return PDFTextExtraction(text=content, page_count=page_count)
