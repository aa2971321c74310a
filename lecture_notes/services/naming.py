"""Object key construction for uploaded sources and rendered PDFs."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from pathlib import PurePosixPath

__all__ = ["build_pdf_key", "build_source_key", "new_identifier", "slugify"]

_NON_SLUG = re.compile(r"[^a-z0-9]+")


def slugify(value: str, *, fallback: str = "item") -> str:
    """Lower-case *value* and collapse every run of other characters into ``-``."""

    slug = _NON_SLUG.sub("-", value.strip().lower()).strip("-")
    return slug or fallback


def new_identifier() -> str:
    return uuid.uuid4().hex


def build_source_key(owner_id: str, filename: str) -> str:
    """Return ``uploads/<owner>/<uuid>-<stem><ext>`` for an uploaded file."""

    name = PurePosixPath(filename or "upload")
    return f"uploads/{slugify(owner_id)}/{new_identifier()}-{slugify(name.stem)}{name.suffix.lower()}"


def build_pdf_key(job_id: str, title: str, *, kind: str = "structured") -> str:
    """Return a fresh key under ``pdfs/<job_id>/`` for a rendered document.

    Each call yields a different key so a regenerated PDF never overwrites
    the object a previously signed URL points at.
    """

    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"pdfs/{job_id}/{new_identifier()[:8]}-{slugify(title)}-{kind}-{stamp}.pdf"
