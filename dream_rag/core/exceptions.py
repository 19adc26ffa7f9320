"""Typed failures raised by the ingestion and retrieval pipeline."""

from typing import Any


class DreamRagError(Exception):
    """Base error carrying debugging context (source, chunk index, query hash)."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context

    def __str__(self) -> str:
        base = super().__str__()
        if not self.context:
            return base
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{base} ({details})"


class SegmentationError(DreamRagError, ValueError):
    """Source text is empty, not text, or the size parameters are inconsistent."""


class ClassificationDegraded(DreamRagError):
    """Semantic theme signal unavailable; classification continues lexical-only."""


class EmbeddingFailure(DreamRagError):
    """Embedding call exhausted its retry budget or returned a bad vector."""


class StoreWriteFailure(DreamRagError):
    """Knowledge store rejected a batch insert after retrying."""


class StoreReadFailure(DreamRagError):
    """Knowledge store search failed."""
