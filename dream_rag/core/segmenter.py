"""Paragraph- and sentence-aware text segmentation for corpus ingestion.

Splits a source document into ordered, overlapping chunks. Each chunk is a
contiguous slice of the source, so ``start_char``/``end_char`` always index the
original text exactly.

Rules:
- Paragraphs (blank-line separated) accumulate into a buffer; when the next
  paragraph would push the buffer past ``target`` and the buffer already has
  ``min_size`` characters, the buffer is emitted.
- A paragraph that does not fit within ``max_size`` is walked sentence by
  sentence, filling the buffer up to ``max_size``.
- Each new buffer is seeded with an overlap tail of the emitted chunk, cut at a
  sentence start when possible, else a word boundary, else a raw cut.
- An undersized final remainder is merged into the previous chunk.

Usage:
    from dream_rag.core.segmenter import segment_text, analyze_segments

    segments = segment_text(book_text, target=1000, overlap=200, min_size=300, max_size=1500)
    stats = analyze_segments(segments)
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any

from dream_rag.core.config import get_persona_profile
from dream_rag.core.exceptions import SegmentationError
from dream_rag.core.logging import get_logger

logger = get_logger(__name__)

PARAGRAPH_BREAK = re.compile(r"\n\s*\n+")
LINE_BREAK = re.compile(r"\n+")
SENTENCE_END = re.compile(r"[.!?][\"')\]]*\s+")
OVERLAP_SENTENCE_START = re.compile(r"[.!?][\"')\]]*\s+(?=[A-Z\"'])")
WHITESPACE = re.compile(r"\s+")

# Lower-cased tokens that end with a period but do not end a sentence
ABBREVIATIONS = frozenset(
    {
        "dr.",
        "mr.",
        "mrs.",
        "ms.",
        "prof.",
        "sr.",
        "jr.",
        "ph.d.",
        "m.d.",
        "b.a.",
        "m.a.",
        "i.e.",
        "e.g.",
        "etc.",
        "vs.",
        "st.",
        "cf.",
    }
)


@dataclass
class Segment:
    """One chunk of a source document."""

    chunk_index: int
    content: str
    start_char: int
    end_char: int
    total_chunks: int = 0
    token_estimate: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class SegmentStats:
    """Size statistics over a segmentation run."""

    total_chunks: int
    avg_size: float
    min_size: int
    max_size: int
    total_tokens: int
    avg_tokens: float


def estimate_tokens(text: str) -> int:
    """Rough token count: average of a word-based and a character-based estimate."""
    words = len(text.split())
    return math.ceil((words * 1.3 + len(text) / 4) / 2)


# =============================================================================
# Span helpers
# =============================================================================


def _strip_span(text: str, start: int, end: int) -> tuple[int, int] | None:
    """Shrink a span to exclude surrounding whitespace; None if nothing remains."""
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    if start >= end:
        return None
    return start, end


def _split_spans(text: str, start: int, end: int, pattern: re.Pattern) -> list[tuple[int, int]]:
    """Split text[start:end] on a separator pattern into stripped spans."""
    spans = []
    cursor = start
    for match in pattern.finditer(text, start, end):
        span = _strip_span(text, cursor, match.start())
        if span:
            spans.append(span)
        cursor = match.end()
    span = _strip_span(text, cursor, end)
    if span:
        spans.append(span)
    return spans


def _is_abbreviation(text: str, period_index: int) -> bool:
    """True if the period at period_index closes an abbreviation or an initial."""
    token_start = period_index
    while token_start > 0 and not text[token_start - 1].isspace():
        token_start -= 1
    token = text[token_start : period_index + 1].lower().lstrip("(\"'")
    if token in ABBREVIATIONS:
        return True
    # Single-letter initials such as "C. G. Jung"
    return len(token) == 2 and token[0].isalpha()


def _sentence_spans(text: str, start: int, end: int) -> list[tuple[int, int]]:
    """Split text[start:end] into sentence spans, honoring abbreviations."""
    spans = []
    cursor = start
    for match in SENTENCE_END.finditer(text, start, end):
        if text[match.start()] == "." and _is_abbreviation(text, match.start()):
            continue
        span = _strip_span(text, cursor, match.end())
        if span:
            spans.append(span)
        cursor = match.end()
    span = _strip_span(text, cursor, end)
    if span:
        spans.append(span)
    return spans


def _word_spans(text: str, start: int, end: int, limit: int) -> list[tuple[int, int]]:
    """Hard-split a span into pieces of at most `limit` chars at word boundaries."""
    pieces = []
    cursor = start
    while end - cursor > limit:
        cut = text.rfind(" ", cursor + 1, cursor + limit + 1)
        if cut <= cursor:
            cut = cursor + limit
        span = _strip_span(text, cursor, cut)
        if span:
            pieces.append(span)
        cursor = cut
    span = _strip_span(text, cursor, end)
    if span:
        pieces.append(span)
    return pieces


def split_sentences(text: str) -> list[str]:
    """Split text into sentences without breaking on common abbreviations."""
    return [text[s:e] for s, e in _sentence_spans(text, 0, len(text))]


def _overlap_start(text: str, start: int, end: int, overlap: int) -> int:
    """
    Find where the overlap tail of text[start:end] begins.

    Prefers the first sentence start in the overlap window (as long as it keeps
    at least a fifth of the window), then the first word boundary, then a raw cut.
    """
    if overlap <= 0:
        return end
    if end - start <= overlap:
        return start

    window_start = end - overlap
    match = OVERLAP_SENTENCE_START.search(text, window_start, end)
    if match and match.end() - window_start < overlap * 0.8:
        return match.end()

    ws = WHITESPACE.search(text, window_start, end)
    if ws and ws.end() < end:
        return ws.end()

    return window_start


# =============================================================================
# Segmentation
# =============================================================================


class _ChunkBuilder:
    """Accumulates spans of the source into chunk bounds."""

    def __init__(self, text: str, target: int, overlap: int, min_size: int, max_size: int):
        self.text = text
        self.target = target
        self.overlap = overlap
        self.min_size = min_size
        self.max_size = max_size
        self.bounds: list[list[int]] = []
        self.start: int | None = None
        self.end = 0
        self.seed_only = False  # buffer holds only the overlap tail of the last chunk

    @property
    def size(self) -> int:
        return 0 if self.start is None else self.end - self.start

    def _reset(self, start: int, end: int) -> None:
        self.start, self.end = start, end
        self.seed_only = False

    def _extend(self, end: int) -> None:
        self.end = end
        self.seed_only = False

    def _emit(self) -> None:
        self.bounds.append([self.start, self.end])
        seed = _overlap_start(self.text, self.start, self.end, self.overlap)
        if seed >= self.end:
            # No overlap: the next unit starts a fresh buffer
            self.start = None
            self.seed_only = False
        else:
            self.start = seed
            self.seed_only = True

    def add_paragraph(self, p_start: int, p_end: int, sentences) -> None:
        if self.start is not None and not self.seed_only:
            if p_end - self.start <= self.target:
                self._extend(p_end)
                return
            if self.size < self.min_size and p_end - self.start <= self.max_size:
                self._extend(p_end)
                return
            if self.size >= self.min_size:
                self._emit()

        if self.start is None:
            if p_end - p_start <= self.max_size:
                self._reset(p_start, p_end)
            else:
                self._add_sentences(sentences(p_start, p_end))
            return

        if self.seed_only and p_end - self.start <= self.max_size:
            self._extend(p_end)
            return

        self._add_sentences(sentences(p_start, p_end))

    def _add_sentences(self, spans: list[tuple[int, int]]) -> None:
        for s_start, s_end in spans:
            self.add_sentence(s_start, s_end)

    def add_sentence(self, s_start: int, s_end: int) -> None:
        if self.start is None:
            self._reset(s_start, s_end)
            return
        if s_end - self.start <= self.max_size:
            self._extend(s_end)
            return
        if self.seed_only:
            # Overlap tail plus this sentence would overflow; drop the tail
            self._reset(s_start, s_end)
            return
        if self.size >= self.min_size:
            self._emit()
            if self.start is None or s_end - self.start > self.max_size:
                self._reset(s_start, s_end)
            else:
                self._extend(s_end)
            return

        # Undersized buffer and a sentence too long to append: cut the sentence
        room = self.max_size - (s_start - self.start)
        if room < 1:
            self.bounds.append([self.start, self.end])
            self._reset(s_start, s_end)
            return
        cut = self.text.rfind(" ", s_start + 1, s_start + room + 1)
        if cut <= s_start:
            cut = s_start + room
        head = _strip_span(self.text, s_start, cut)
        tail = _strip_span(self.text, cut, s_end)
        if head:
            self._extend(head[1])
        if tail:
            self.add_sentence(*tail)

    def finish(self) -> list[list[int]]:
        if self.start is not None and not self.seed_only:
            if self.bounds and self.size < self.min_size:
                self.bounds[-1][1] = self.end
            else:
                self.bounds.append([self.start, self.end])
        return self.bounds


def segment_text(
    text: str,
    target: int = 1000,
    overlap: int = 200,
    min_size: int = 300,
    max_size: int = 1500,
    respect_paragraphs: bool = True,
    respect_sentences: bool = True,
    metadata: dict[str, Any] | None = None,
) -> list[Segment]:
    """
    Split text into bounded, overlapping chunks.

    Args:
        text: Source text
        target: Preferred chunk size in characters
        overlap: Max characters carried from one chunk into the next
        min_size: Chunks are not emitted below this size (except a lone chunk)
        max_size: Upper bound for chunks built from oversized paragraphs
        respect_paragraphs: Accumulate whole paragraphs where possible
        respect_sentences: Split oversized paragraphs at sentence boundaries
        metadata: Optional metadata copied into each segment

    Returns:
        Ordered list of Segment objects (empty for blank input)

    Raises:
        SegmentationError: If text is not a string or the sizes are inconsistent
    """
    if not isinstance(text, str):
        raise SegmentationError(
            f"Expected text to segment, got {type(text).__name__}",
            input_type=type(text).__name__,
        )
    if overlap < 0 or overlap >= target:
        raise SegmentationError(f"overlap ({overlap}) must be in [0, target ({target}))")
    if min_size > target:
        raise SegmentationError(f"min_size ({min_size}) must not exceed target ({target})")
    if max_size < target:
        raise SegmentationError(f"max_size ({max_size}) must be at least target ({target})")

    if not text.strip():
        return []

    def sentences(start: int, end: int) -> list[tuple[int, int]]:
        spans = _sentence_spans(text, start, end) if respect_sentences else [(start, end)]
        units = []
        for s, e in spans:
            if e - s > max_size:
                units.extend(_word_spans(text, s, e, max_size))
            else:
                units.append((s, e))
        return units

    if respect_paragraphs:
        paragraphs = []
        for s, e in _split_spans(text, 0, len(text), PARAGRAPH_BREAK):
            if e - s > 2 * max_size:
                paragraphs.extend(_split_spans(text, s, e, LINE_BREAK))
            else:
                paragraphs.append((s, e))
    else:
        # One paragraph: everything is walked sentence by sentence
        whole = _strip_span(text, 0, len(text))
        paragraphs = [whole] if whole else []

    builder = _ChunkBuilder(text, target, overlap, min_size, max_size)
    for p_start, p_end in paragraphs:
        builder.add_paragraph(p_start, p_end, sentences)
    bounds = builder.finish()

    segments = []
    for index, (start, end) in enumerate(bounds):
        content = text[start:end]
        segments.append(
            Segment(
                chunk_index=index,
                content=content,
                start_char=start,
                end_char=end,
                total_chunks=len(bounds),
                token_estimate=estimate_tokens(content),
                metadata=dict(metadata or {}),
            )
        )

    logger.debug(f"Segmented {len(text)} chars into {len(segments)} chunks")
    return segments


def segment_for_persona(
    text: str, persona: str, metadata: dict[str, Any] | None = None
) -> list[Segment]:
    """Segment text with the chunking profile configured for a persona's corpus."""
    profile = get_persona_profile(persona)
    return segment_text(
        text,
        target=profile.chunk_target,
        overlap=profile.chunk_overlap,
        min_size=profile.chunk_min,
        max_size=profile.chunk_max,
        metadata=metadata,
    )


def non_overlap_text(segments: list[Segment], source: str) -> str:
    """Concatenate the portion of each segment not already covered by its predecessor."""
    parts = []
    covered = None
    for seg in segments:
        start = seg.start_char if covered is None else covered
        parts.append(source[start : seg.end_char])
        covered = seg.end_char
    return "".join(parts)


def analyze_segments(segments: list[Segment]) -> SegmentStats:
    """
    Compute size statistics for a segmentation run.

    Example:
        >>> stats = analyze_segments(segment_text("Short text."))
        >>> stats.total_chunks
        1
    """
    if not segments:
        return SegmentStats(0, 0.0, 0, 0, 0, 0.0)

    sizes = [s.size for s in segments]
    tokens = [s.token_estimate for s in segments]
    return SegmentStats(
        total_chunks=len(segments),
        avg_size=sum(sizes) / len(sizes),
        min_size=min(sizes),
        max_size=max(sizes),
        total_tokens=sum(tokens),
        avg_tokens=sum(tokens) / len(tokens),
    )
