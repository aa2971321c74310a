"""Markdown to PDF rendering and the cached PDF derivative."""

from __future__ import annotations

import html
import io
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional

from ..services.naming import build_pdf_key
from ..services.objects import ObjectStore
from ..services.storage import TranscriptionRecord, TranscriptionRepository, utc_now


LOGGER = logging.getLogger(__name__)

PDF_KINDS = ("structured", "raw")

PDF_CSS = """
* { font-family: sans-serif; }
body { font-size: 11px; line-height: 1.5; color: #1a1a2e; }
h1 { font-size: 22px; color: #16213e; margin: 0 0 12px 0; }
h2 { font-size: 16px; color: #0f3460; margin: 18px 0 8px 0; }
h3 { font-size: 13px; color: #0f3460; margin: 14px 0 6px 0; }
h4, h5, h6 { font-size: 12px; margin: 10px 0 4px 0; }
p { margin: 0 0 8px 0; }
ul, ol { margin: 0 0 8px 0; }
li { margin: 0 0 3px 0; }
code { font-family: monospace; background-color: #f0f0f5; }
pre { font-family: monospace; font-size: 9px; background-color: #f0f0f5; padding: 6px; }
blockquote { margin: 6px 0 8px 12px; color: #444466; font-style: italic; }
table { border-collapse: collapse; margin: 0 0 10px 0; }
th { background-color: #0f3460; color: #ffffff; padding: 4px; text-align: left; }
td { border: 1px solid #ccccd6; padding: 4px; }
hr { margin: 10px 0; }
"""

_HEADING = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
_RULE = re.compile(r"^\s*([-*_])(\s*\1){2,}\s*$")
_BULLET = re.compile(r"^\s*[-*+]\s+(.*)$")
_NUMBERED = re.compile(r"^\s*\d+[.)]\s+(.*)$")
_TABLE_SEPARATOR = re.compile(r"^\s*\|?\s*:?-{2,}:?\s*(\|\s*:?-{2,}:?\s*)*\|?\s*$")
_BOLD = re.compile(r"(\*\*|__)(?=\S)(.+?)(?<=\S)\1")
_ITALIC = re.compile(r"(?<![\w*])([*_])(?=\S)(.+?)(?<=\S)\1(?![\w*])")
_LINK = re.compile(r"\[([^\]]+)\]\(([^)\s]+)\)")


class PdfRenderError(RuntimeError):
    """Raised when a PDF cannot be produced."""


def render_inline(text: str) -> str:
    """Convert inline Markdown of one line to escaped HTML."""

    parts = re.split(r"(`[^`]+`)", text)
    rendered: List[str] = []
    for part in parts:
        if len(part) > 1 and part.startswith("`") and part.endswith("`"):
            rendered.append(f"<code>{html.escape(part[1:-1])}</code>")
            continue
        escaped = html.escape(part, quote=False)
        escaped = _LINK.sub(r'<a href="\2">\1</a>', escaped)
        escaped = _BOLD.sub(r"<b>\2</b>", escaped)
        escaped = _ITALIC.sub(r"<i>\2</i>", escaped)
        rendered.append(escaped)
    return "".join(rendered)


def _split_row(line: str) -> List[str]:
    stripped = line.strip()
    if stripped.startswith("|"):
        stripped = stripped[1:]
    if stripped.endswith("|"):
        stripped = stripped[:-1]
    return [cell.strip() for cell in stripped.split("|")]


def markdown_to_html(markdown: str) -> str:
    """Convert the Markdown subset produced by the notes prompt to HTML."""

    lines = markdown.replace("\r\n", "\n").split("\n")
    output: List[str] = []
    paragraph: List[str] = []
    list_tag: Optional[str] = None
    index = 0

    def flush_paragraph() -> None:
        if paragraph:
            output.append(f"<p>{render_inline(' '.join(paragraph))}</p>")
            paragraph.clear()

    def close_list() -> None:
        nonlocal list_tag
        if list_tag is not None:
            output.append(f"</{list_tag}>")
            list_tag = None

    while index < len(lines):
        line = lines[index]
        stripped = line.strip()

        if stripped.startswith("```"):
            flush_paragraph()
            close_list()
            code: List[str] = []
            index += 1
            while index < len(lines) and not lines[index].strip().startswith("```"):
                code.append(lines[index])
                index += 1
            output.append(f"<pre>{html.escape(chr(10).join(code))}</pre>")
            index += 1
            continue

        if not stripped:
            flush_paragraph()
            close_list()
            index += 1
            continue

        heading = _HEADING.match(stripped)
        if heading:
            flush_paragraph()
            close_list()
            level = len(heading.group(1))
            output.append(f"<h{level}>{render_inline(heading.group(2))}</h{level}>")
            index += 1
            continue

        if _RULE.match(stripped):
            flush_paragraph()
            close_list()
            output.append("<hr/>")
            index += 1
            continue

        if (
            "|" in stripped
            and index + 1 < len(lines)
            and _TABLE_SEPARATOR.match(lines[index + 1])
        ):
            flush_paragraph()
            close_list()
            header = _split_row(stripped)
            rows: List[List[str]] = []
            index += 2
            while index < len(lines) and "|" in lines[index] and lines[index].strip():
                rows.append(_split_row(lines[index]))
                index += 1
            table = ["<table>", "<tr>" + "".join(f"<th>{render_inline(cell)}</th>" for cell in header) + "</tr>"]
            for row in rows:
                padded = (row + [""] * len(header))[: len(header)]
                table.append("<tr>" + "".join(f"<td>{render_inline(cell)}</td>" for cell in padded) + "</tr>")
            table.append("</table>")
            output.append("".join(table))
            continue

        if stripped.startswith(">"):
            flush_paragraph()
            close_list()
            quoted: List[str] = []
            while index < len(lines) and lines[index].strip().startswith(">"):
                quoted.append(lines[index].strip()[1:].strip())
                index += 1
            output.append(f"<blockquote><p>{render_inline(' '.join(quoted))}</p></blockquote>")
            continue

        bullet = _BULLET.match(line)
        numbered = None if bullet else _NUMBERED.match(line)
        if bullet or numbered:
            flush_paragraph()
            tag = "ul" if bullet else "ol"
            if list_tag != tag:
                close_list()
                output.append(f"<{tag}>")
                list_tag = tag
            item = (bullet or numbered).group(1)
            output.append(f"<li>{render_inline(item)}</li>")
            index += 1
            continue

        close_list()
        paragraph.append(stripped)
        index += 1

    flush_paragraph()
    close_list()
    return "\n".join(output)


def render_markdown_pdf(markdown: str, title: str) -> bytes:
    """Render *markdown* to an A4 PDF with PyMuPDF's story layout engine."""

    try:
        import fitz  # type: ignore
    except ImportError as exc:  # pragma: no cover - exercised only without PyMuPDF
        raise PdfRenderError("PyMuPDF is required to render PDF documents") from exc

    body = markdown.strip()
    if not body.startswith("#"):
        body = f"# {title}\n\n{body}"
    document_html = f"<body>{markdown_to_html(body)}</body>"

    buffer = io.BytesIO()
    try:
        story = fitz.Story(html=document_html, user_css=PDF_CSS)
        writer = fitz.DocumentWriter(buffer)
        mediabox = fitz.paper_rect("a4")
        where = mediabox + (54, 54, -54, -54)
        more = True
        while more:
            device = writer.begin_page(mediabox)
            more, _ = story.place(where)
            story.draw(device)
            writer.end_page()
        writer.close()
    except Exception as error:  # PyMuPDF surfaces layout problems as generic errors
        raise PdfRenderError(f"Unable to render PDF: {error}") from error
    return buffer.getvalue()


@dataclass(frozen=True)
class PdfResult:
    key: str
    url: str
    cached: bool
    generated_at: Optional[str]


class PdfGenerator:
    """Render, upload and cache the PDF derivative of a job."""

    def __init__(
        self,
        repository: TranscriptionRepository,
        object_store: ObjectStore,
        *,
        url_ttl_seconds: int = 86_400,
        renderer: Callable[[str, str], bytes] = render_markdown_pdf,
    ) -> None:
        self._repository = repository
        self._objects = object_store
        self._url_ttl_seconds = url_ttl_seconds
        self._renderer = renderer

    def generate(
        self,
        job: TranscriptionRecord,
        *,
        kind: str = "structured",
        regenerate: bool = False,
    ) -> PdfResult:
        """Return the job's PDF, rendering it only when needed.

        The structured PDF is cached on the job: without *regenerate* an
        existing object is reused and only a fresh URL is issued.
        """

        if kind not in PDF_KINDS:
            raise ValueError(f"Unknown PDF type: {kind}")

        if kind == "structured" and job.pdf_key and not regenerate:
            if self._objects.exists(job.pdf_key):
                LOGGER.debug("Returning cached PDF for %s: %s", job.id, job.pdf_key)
                return PdfResult(
                    key=job.pdf_key,
                    url=self._objects.signed_url(job.pdf_key, self._url_ttl_seconds),
                    cached=True,
                    generated_at=job.pdf_generated_at,
                )
            LOGGER.warning("Cached PDF %s for job %s is missing; rendering again", job.pdf_key, job.id)

        content = job.study_content if kind == "structured" else (job.raw_text or "")
        if not content.strip():
            raise PdfRenderError("No text available to render")

        pdf_bytes = self._renderer(content, job.title)
        if kind == "raw":
            key = f"pdfs/{job.id}/raw-transcript.pdf"
        else:
            key = build_pdf_key(job.id, job.title, kind=kind)
        self._objects.put(key, pdf_bytes, "application/pdf")
        generated_at = utc_now()

        if kind == "structured":
            previous = job.pdf_key
            self._repository.save_pdf_info(job.id, key, generated_at)
            if previous and previous != key:
                try:
                    self._objects.delete(previous)
                except (OSError, ValueError) as error:
                    LOGGER.warning("Could not delete superseded PDF %s: %s", previous, error)
        LOGGER.info("PDF generated for %s: %s (%s bytes)", job.id, key, len(pdf_bytes))
        return PdfResult(
            key=key,
            url=self._objects.signed_url(key, self._url_ttl_seconds),
            cached=False,
            generated_at=generated_at,
        )


__all__ = [
    "PDF_KINDS",
    "PdfGenerator",
    "PdfRenderError",
    "PdfResult",
    "markdown_to_html",
    "render_inline",
    "render_markdown_pdf",
]
