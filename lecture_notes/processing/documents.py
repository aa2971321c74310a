"""Text extraction for document sources (PDF, DOCX, PPTX, plain text)."""

from __future__ import annotations

import io
import logging
import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Optional

import docx
from docx.opc.exceptions import PackageNotFoundError as DocxPackageError
from pptx import Presentation
from pptx.exc import PackageNotFoundError as PptxPackageError

from ..services.audio_conversion import is_video_file

LOGGER = logging.getLogger(__name__)

DOCUMENT_EXTENSIONS = frozenset({".pdf", ".docx", ".pptx", ".txt", ".md", ".markdown"})


class DocumentExtractionError(ValueError):
    """Raised when a document cannot be read or holds no text."""


class DocumentDependencyError(RuntimeError):
    """Raised when PyMuPDF is not available for PDF extraction."""


def is_document(filename: str, mime_type: Optional[str] = None) -> bool:
    if mime_type in {"application/pdf", "text/plain", "text/markdown"}:
        return True
    return Path(filename or "").suffix.lower() in DOCUMENT_EXTENSIONS


def source_type_for(filename: str) -> str:
    """Return the stored source type label for *filename*."""

    suffix = Path(filename or "").suffix.lower().lstrip(".")
    if suffix in {"pdf", "docx", "pptx"}:
        return suffix
    if suffix in {"txt", "md", "markdown"}:
        return "text"
    return "video" if is_video_file(filename) else "audio"


def _extract_pdf(data: bytes) -> str:
    try:
        import fitz  # type: ignore
    except ImportError as exc:  # pragma: no cover - exercised only without PyMuPDF
        raise DocumentDependencyError("PyMuPDF is required to read PDF documents") from exc

    try:
        document = fitz.open(stream=data, filetype="pdf")
    except Exception as error:  # PyMuPDF raises several unrelated types
        raise DocumentExtractionError(f"Unable to open PDF: {error}") from error
    pages: List[str] = []
    with document:
        for page in document:
            text = page.get_text("text").strip()
            if text:
                pages.append(text)
    return "\n\n".join(pages)


def _extract_docx(data: bytes) -> str:
    document = docx.Document(io.BytesIO(data))
    paragraphs = [paragraph.text.strip() for paragraph in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                paragraphs.append(" | ".join(cells))
    return "\n\n".join(text for text in paragraphs if text)


def _extract_pptx(data: bytes) -> str:
    presentation = Presentation(io.BytesIO(data))
    sections: List[str] = []
    for number, slide in enumerate(presentation.slides, start=1):
        lines: List[str] = []
        for shape in slide.shapes:
            if not shape.has_text_frame:
                continue
            for paragraph in shape.text_frame.paragraphs:
                line = "".join(run.text for run in paragraph.runs).strip()
                if line:
                    lines.append(line)
        if lines:
            sections.append(f"Slide {number}\n" + "\n".join(lines))
    return "\n\n".join(sections)


_OFFICE_READERS: Dict[str, Callable[[bytes], str]] = {".docx": _extract_docx, ".pptx": _extract_pptx}


def extract_document_text(data: bytes, filename: str) -> str:
    """Return the plain text held by the document *data*."""

    suffix = Path(filename or "").suffix.lower()
    LOGGER.debug("Extracting text from %s (%s bytes)", filename, len(data))
    if suffix in {".txt", ".md", ".markdown"}:
        text = data.decode("utf-8", errors="replace")
    elif suffix == ".pdf":
        text = _extract_pdf(data)
    elif suffix in _OFFICE_READERS:
        try:
            text = _OFFICE_READERS[suffix](data)
        except (zipfile.BadZipFile, KeyError, ValueError, DocxPackageError, PptxPackageError) as error:
            raise DocumentExtractionError(f"Unable to read '{filename}': {error}") from error
    else:
        raise DocumentExtractionError(f"Unsupported document type: {suffix or filename}")

    text = text.strip()
    if not text:
        raise DocumentExtractionError(f"'{filename}' contains no extractable text")
    return text


__all__ = [
    "DOCUMENT_EXTENSIONS",
    "DocumentDependencyError",
    "DocumentExtractionError",
    "extract_document_text",
    "is_document",
    "source_type_for",
]
