"""Processing backends: segmentation, speech, text generation and PDFs."""

from .documents import DocumentExtractionError, extract_document_text, is_document, source_type_for
from .pdf import PdfGenerator, PdfRenderError, PdfResult, render_markdown_pdf
from .segmentation import Chunk, MediaDecodeError, Segmenter, SegmentationResult, plan_chunk_boundaries
from .structuring import ChatCompletionClient, StructuredNotes, StructuringError, StructuringService
from .transcription import (
    ChunkTranscription,
    FasterWhisperTranscription,
    OpenAICompatibleTranscription,
    RetryingTranscription,
    TranscriptionError,
    UsageMetrics,
)

__all__ = [
    "ChatCompletionClient",
    "Chunk",
    "ChunkTranscription",
    "DocumentExtractionError",
    "FasterWhisperTranscription",
    "MediaDecodeError",
    "OpenAICompatibleTranscription",
    "PdfGenerator",
    "PdfRenderError",
    "PdfResult",
    "RetryingTranscription",
    "SegmentationResult",
    "Segmenter",
    "StructuredNotes",
    "StructuringError",
    "StructuringService",
    "TranscriptionError",
    "UsageMetrics",
    "extract_document_text",
    "is_document",
    "plan_chunk_boundaries",
    "render_markdown_pdf",
]
