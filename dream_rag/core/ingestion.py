"""Ingestion pipeline: segment, classify, embed and store source documents.

Per document:
    segment -> dedup against stored content hashes -> embed + classify with
    bounded concurrency -> assemble records in chunk order -> batched writes.

A chunk is either fully built (content, embedding, classification) and
written, or not written at all. Embedding failures drop the one chunk; a
rejected batch is retried once, then recorded as a ``StoreWriteFailure``.
Re-running ingestion for the same source skips chunks whose content hash is
already stored.
"""

import asyncio
import hashlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dream_rag.core.config import Settings, get_persona_profile, get_settings
from dream_rag.core.exceptions import EmbeddingFailure, SegmentationError, StoreWriteFailure
from dream_rag.core.lexical import sparse_term_weights
from dream_rag.core.logging import get_logger
from dream_rag.core.schemas_knowledge import KnowledgeChunk
from dream_rag.core.segmenter import Segment, segment_for_persona

logger = get_logger(__name__)


# Known corpus files and their bibliographic details
BOOK_METADATA: dict[str, dict[str, Any]] = {
    "archetypes.txt": {
        "title": "The Archetypes and the Collective Unconscious",
        "author": "Carl Jung",
        "year": 1969,
    },
    "dreams.txt": {"title": "Dreams", "author": "Carl Jung", "year": 1974},
    "man-and-his-symbols.txt": {"title": "Man and His Symbols", "author": "Carl Jung", "year": 1964},
    "memories-dreams-reflections.txt": {
        "title": "Memories, Dreams, Reflections",
        "author": "Carl Jung",
        "year": 1963,
    },
    "interpretation-of-dreams.txt": {
        "title": "The Interpretation of Dreams",
        "author": "Sigmund Freud",
        "year": 1899,
    },
    "beyond-the-pleasure-principle.txt": {
        "title": "Beyond the Pleasure Principle",
        "author": "Sigmund Freud",
        "year": 1920,
    },
    "the-ego-and-the-id.txt": {"title": "The Ego and the Id", "author": "Sigmund Freud", "year": 1923},
    "psychopathology-of-everyday-life.txt": {
        "title": "The Psychopathology of Everyday Life",
        "author": "Sigmund Freud",
        "year": 1901,
    },
    "the-unconscious.txt": {"title": "The Unconscious", "author": "Sigmund Freud", "year": 1915},
    "on-dreams.txt": {"title": "On Dreams", "author": "Sigmund Freud", "year": 1901},
    "dora.txt": {
        "title": "Fragment of an Analysis of a Case of Hysteria (Dora)",
        "author": "Sigmund Freud",
        "year": 1905,
    },
    "little-hans.txt": {
        "title": "Analysis of a Phobia in a Five-year-old Boy (Little Hans)",
        "author": "Sigmund Freud",
        "year": 1909,
    },
    "wolf-man.txt": {
        "title": "From the History of an Infantile Neurosis (Wolf Man)",
        "author": "Sigmund Freud",
        "year": 1918,
    },
}

_FILENAME_SEPARATORS = re.compile(r"[-_]+")


def describe_source(filename: str) -> dict[str, Any]:
    """Bibliographic metadata for a corpus file; unknown files get a title from the name."""
    name = Path(filename).name
    known = BOOK_METADATA.get(name.lower())
    if known:
        return {"filename": name, **known}
    title = _FILENAME_SEPARATORS.sub(" ", Path(name).stem).strip().title()
    return {"filename": name, "title": title, "author": None, "year": None}


def content_hash(persona: str, source: str, chunk_index: int, content: str) -> str:
    """Stable dedup key for a chunk: persona, source, position and leading content."""
    key = f"{persona}:{source}:{chunk_index}:{content[:100]}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


@dataclass
class SourceDocument:
    """One source text to ingest into a persona's corpus."""

    persona: str
    source: str
    text: str
    chapter: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestionStats:
    """Counters for one ingestion run."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    duplicates: int = 0
    errors: list[str] = field(default_factory=list)
    interrupted: bool = False

    def merge(self, other: "IngestionStats") -> None:
        self.total += other.total
        self.successful += other.successful
        self.failed += other.failed
        self.duplicates += other.duplicates
        self.errors.extend(other.errors)
        self.interrupted = self.interrupted or other.interrupted


class IngestionPipeline:
    """Writes classified, embedded chunks of source documents to the knowledge store."""

    def __init__(self, store, embedder, classifier, settings: Settings | None = None):
        self.store = store
        self.embedder = embedder
        self.classifier = classifier
        self.settings = settings or get_settings()
        self._semaphore = asyncio.Semaphore(self.settings.INGEST_CONCURRENCY)
        self._stop = False

    def request_stop(self) -> None:
        """Stop after the chunks currently in flight; nothing half-built is written."""
        self._stop = True
        logger.info("Ingestion stop requested")

    @property
    def stopped(self) -> bool:
        return self._stop

    # =========================================================================
    # Public API
    # =========================================================================

    async def ingest_many(self, documents: list[SourceDocument]) -> IngestionStats:
        """Ingest documents concurrently; per-document failures do not abort the run."""
        totals = IngestionStats()
        for stats in await asyncio.gather(*(self.ingest_document(doc) for doc in documents)):
            totals.merge(stats)

        logger.info(
            f"Ingestion complete: {totals.successful}/{totals.total} chunks stored, "
            f"{totals.duplicates} duplicates, {totals.failed} failed",
            extra={"extra_data": {"documents": len(documents)}},
        )
        return totals

    async def ingest_document(self, document: SourceDocument) -> IngestionStats:
        stats = IngestionStats()
        context = {"persona": document.persona, "source": document.source}

        try:
            segments = segment_for_persona(document.text, document.persona)
        except SegmentationError as e:
            stats.errors.append(f"{document.source}: {e}")
            logger.error(f"Segmentation failed: {e}", extra={"extra_data": context})
            return stats

        stats.total = len(segments)
        if not segments:
            return stats

        try:
            existing = await asyncio.to_thread(
                self.store.existing_hashes, document.persona, document.source
            )
        except Exception as e:
            stats.failed = len(segments)
            stats.errors.append(f"{document.source}: duplicate check failed: {e}")
            logger.error(f"Duplicate check failed, skipping source: {e}", extra={"extra_data": context})
            return stats

        pending: list[tuple[Segment, str]] = []
        for segment in segments:
            digest = content_hash(
                document.persona, document.source, segment.chunk_index, segment.content
            )
            if digest in existing:
                stats.duplicates += 1
            else:
                pending.append((segment, digest))

        if stats.duplicates:
            logger.info(
                f"Skipping {stats.duplicates} chunks already stored",
                extra={"extra_data": context},
            )

        await asyncio.to_thread(self.classifier.warm_up)
        built = await asyncio.gather(
            *(self._build_chunk(document, segment, digest, stats) for segment, digest in pending)
        )
        chunks = [chunk for chunk in built if chunk is not None]

        await self._write(document, chunks, stats)
        logger.info(
            f"Ingested {stats.successful}/{stats.total} chunks from {document.source}",
            extra={"extra_data": context},
        )
        return stats

    async def reclassify_source(self, persona: str, source: str) -> IngestionStats:
        """Re-run classification over stored chunks, keeping the prior labels as history."""
        stats = IngestionStats()
        rows = await asyncio.to_thread(self.store.list_chunks, persona, source)
        stats.total = len(rows)

        for row in rows:
            if self._stop:
                stats.interrupted = True
                break
            classification = await self.classifier.aclassify(row["content"], persona)
            try:
                await asyncio.to_thread(self.store.update_classification, row["id"], classification)
                stats.successful += 1
            except Exception as e:
                stats.failed += 1
                stats.errors.append(f"chunk {row['id']}: {e}")
                logger.error(f"Failed to update classification for chunk {row['id']}: {e}")

        return stats

    # =========================================================================
    # Steps
    # =========================================================================

    async def _build_chunk(
        self, document: SourceDocument, segment: Segment, digest: str, stats: IngestionStats
    ) -> KnowledgeChunk | None:
        async with self._semaphore:
            if self._stop:
                stats.interrupted = True
                return None

            try:
                embedding = await asyncio.to_thread(self.embedder.embed, segment.content)
            except EmbeddingFailure as e:
                stats.failed += 1
                stats.errors.append(f"{document.source}#{segment.chunk_index}: {e}")
                logger.error(
                    f"Embedding failed for chunk {segment.chunk_index}: {e}",
                    extra={
                        "extra_data": {"source": document.source, "chunk_index": segment.chunk_index}
                    },
                )
                return None

            classification = await self.classifier.aclassify(
                segment.content, document.persona, embedding
            )

        metadata = {
            **describe_source(document.source),
            **document.metadata,
            "content_hash": digest,
            "start_char": segment.start_char,
            "end_char": segment.end_char,
            "total_chunks": segment.total_chunks,
            "token_estimate": segment.token_estimate,
            **classification.to_metadata(),
        }
        if classification.degraded:
            metadata["classification_degraded"] = True

        return KnowledgeChunk(
            interpreter_type=document.persona,
            source=document.source,
            chapter=document.chapter,
            chunk_index=segment.chunk_index,
            content=segment.content,
            content_type=classification.primary_type,
            themes=classification.applicable_themes,
            concepts=classification.concepts,
            confidence=classification.confidence,
            embedding=embedding,
            sparse_embedding=(
                sparse_term_weights(segment.content) if self.settings.HYBRID_ENABLED else None
            ),
            metadata=metadata,
        )

    async def _write(
        self, document: SourceDocument, chunks: list[KnowledgeChunk], stats: IngestionStats
    ) -> None:
        """Write chunks in chunk-index order, in batches of the persona batch size."""
        batch_size = get_persona_profile(document.persona).batch_size
        chunks.sort(key=lambda c: c.chunk_index)

        for start in range(0, len(chunks), batch_size):
            if self._stop:
                stats.interrupted = True
                logger.info(
                    f"Stopped before writing chunks {chunks[start].chunk_index}+ "
                    f"of {document.source}"
                )
                return

            batch = chunks[start : start + batch_size]
            try:
                await self._insert_with_retry(document, batch)
                stats.successful += len(batch)
            except StoreWriteFailure as e:
                stats.failed += len(batch)
                stats.errors.append(str(e))

    async def _insert_with_retry(self, document: SourceDocument, batch: list[KnowledgeChunk]):
        records = [chunk.to_record() for chunk in batch]
        first, last = batch[0].chunk_index, batch[-1].chunk_index
        max_attempts = self.settings.STORE_WRITE_ATTEMPTS

        for attempt in range(max_attempts):
            try:
                return await asyncio.to_thread(self.store.insert_chunks, records)
            except Exception as e:
                if attempt < max_attempts - 1:
                    delay = self.settings.STORE_BACKOFF_SECONDS * (2**attempt)
                    logger.warning(
                        f"Batch write attempt {attempt + 1} failed: {e}. Retry in {delay}s",
                        extra={"extra_data": {"source": document.source, "chunks": f"{first}-{last}"}},
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"Batch write failed after {max_attempts} attempts: {e}")
                    raise StoreWriteFailure(
                        f"Batch write failed after {max_attempts} attempts: {e}",
                        source=document.source,
                        chunks=f"{first}-{last}",
                    ) from e
