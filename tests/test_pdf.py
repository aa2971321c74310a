from __future__ import annotations

from pathlib import Path
from typing import List, Tuple

import pytest

from lecture_notes.processing.pdf import PdfGenerator, PdfRenderError, markdown_to_html, render_inline
from lecture_notes.services.objects import LocalObjectStore
from lecture_notes.services.progress import JobStatus
from lecture_notes.services.storage import TranscriptionRecord, TranscriptionRepository


class RecordingRenderer:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, str]] = []

    def __call__(self, markdown: str, title: str) -> bytes:
        self.calls.append((markdown, title))
        return b"%PDF-fake"


@pytest.fixture()
def store(tmp_path: Path) -> LocalObjectStore:
    return LocalObjectStore(tmp_path / "objects", secret="pdf-secret")


@pytest.fixture()
def completed_job(repository: TranscriptionRepository) -> TranscriptionRecord:
    job = repository.create_job("local", "Thermodynamics", ["uploads/local/a.wav"])
    repository.try_start(job.id, {JobStatus.PENDING})
    repository.save_raw_text(job.id, "raw words", duration_seconds=3.0, transcription_model="fake/whisper")
    repository.save_structured_text(job.id, "# Thermo\n\n- Entropy", "English")
    repository.write_status(job.id, JobStatus.COMPLETED, progress=1.0)
    return repository.require_job(job.id)


def test_markdown_to_html_covers_the_notes_subset() -> None:
    markdown = "\n".join(
        [
            "# Title",
            "",
            "Intro with **bold** and *italic* text.",
            "",
            "- first",
            "- second",
            "",
            "1. step one",
            "2. step two",
            "",
            "| Term | Meaning |",
            "|------|---------|",
            "| A | alpha |",
            "",
            "```",
            "x < y",
            "```",
            "",
            "---",
        ]
    )

    html = markdown_to_html(markdown)

    assert "<h1>Title</h1>" in html
    assert "<p>Intro with <b>bold</b> and <i>italic</i> text.</p>" in html
    assert "<ul>\n<li>first</li>\n<li>second</li>\n</ul>" in html
    assert "<ol>\n<li>step one</li>\n<li>step two</li>\n</ol>" in html
    assert "<th>Term</th><th>Meaning</th>" in html
    assert "<td>A</td><td>alpha</td>" in html
    assert "<pre>x &lt; y</pre>" in html
    assert "<hr/>" in html


def test_inline_markup_is_escaped() -> None:
    assert render_inline("a <script> & `b < c`") == "a &lt;script&gt; &amp; <code>b &lt; c</code>"


def test_structured_pdf_is_cached_until_regenerated(
    repository: TranscriptionRepository, store: LocalObjectStore, completed_job: TranscriptionRecord
) -> None:
    renderer = RecordingRenderer()
    generator = PdfGenerator(repository, store, renderer=renderer)

    first = generator.generate(completed_job)
    assert first.cached is False
    assert store.get(first.key).data == b"%PDF-fake"
    assert renderer.calls == [("# Thermo\n\n- Entropy", "Thermodynamics")]

    job = repository.require_job(completed_job.id)
    assert job.pdf_key == first.key
    again = generator.generate(job)
    assert again.cached is True
    assert again.key == first.key
    assert len(renderer.calls) == 1

    fresh = generator.generate(job, regenerate=True)
    assert fresh.cached is False
    assert fresh.key != first.key
    assert not store.exists(first.key)
    assert repository.require_job(job.id).pdf_key == fresh.key


def test_missing_cached_object_is_rendered_again(
    repository: TranscriptionRepository, store: LocalObjectStore, completed_job: TranscriptionRecord
) -> None:
    generator = PdfGenerator(repository, store, renderer=RecordingRenderer())
    first = generator.generate(completed_job)
    store.delete(first.key)

    result = generator.generate(repository.require_job(completed_job.id))

    assert result.cached is False
    assert store.exists(result.key)


def test_raw_pdf_uses_the_transcript_and_a_fixed_key(
    repository: TranscriptionRepository, store: LocalObjectStore, completed_job: TranscriptionRecord
) -> None:
    renderer = RecordingRenderer()
    generator = PdfGenerator(repository, store, renderer=renderer)

    result = generator.generate(completed_job, kind="raw")

    assert result.key == f"pdfs/{completed_job.id}/raw-transcript.pdf"
    assert renderer.calls[0][0] == "raw words"
    assert repository.require_job(completed_job.id).pdf_key is None


def test_unknown_kind_and_empty_content_are_rejected(
    repository: TranscriptionRepository, store: LocalObjectStore
) -> None:
    generator = PdfGenerator(repository, store, renderer=RecordingRenderer())
    job = repository.create_job("local", "Empty", ["uploads/local/a.wav"])

    with pytest.raises(ValueError):
        generator.generate(job, kind="slides")
    with pytest.raises(PdfRenderError):
        generator.generate(job)
