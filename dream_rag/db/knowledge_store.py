"""Knowledge store interface and its Supabase/pgvector implementation."""

import json
import time
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Protocol

from dream_rag.core.config import Settings, get_settings
from dream_rag.core.exceptions import StoreReadFailure, StoreWriteFailure
from dream_rag.core.logging import get_logger
from dream_rag.core.schemas_knowledge import ChunkClassification, MetadataFilter, Theme
from dream_rag.db.supabase_client import get_supabase

logger = get_logger(__name__)

KNOWLEDGE_TABLE = "knowledge_base"
THEMES_TABLE = "themes"


class KnowledgeStore(Protocol):
    """Operations the pipeline and retrieval engine need from a vector store."""

    def insert_chunks(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]: ...

    def similarity_search(
        self,
        query_embedding: list[float],
        persona: str,
        threshold: float,
        max_results: int,
        metadata_filter: MetadataFilter | None = None,
    ) -> list[dict[str, Any]]: ...

    def search_themes(
        self, query_embedding: list[float], threshold: float, max_results: int
    ) -> list[dict[str, Any]]: ...

    def get_theme_embedding(self, code: str) -> list[float] | None: ...

    def existing_hashes(self, persona: str, source: str) -> set[str]: ...

    def text_search(self, persona: str, query: str, limit: int) -> list[dict[str, Any]]: ...

    def list_chunks(self, persona: str, source: str) -> list[dict[str, Any]]: ...

    def update_classification(
        self, chunk_id: int | str, classification: ChunkClassification
    ) -> dict[str, Any]: ...

    def delete_source(self, persona: str, source: str) -> int: ...

    def stats(self, persona: str) -> dict[str, Any]: ...


def _parse_vector(value: Any) -> list[float] | None:
    """pgvector columns come back as '[0.1,0.2,...]' strings through PostgREST."""
    if value is None:
        return None
    if isinstance(value, str):
        value = json.loads(value)
    return [float(v) for v in value]


def classification_audit_entry(row: dict[str, Any]) -> dict[str, Any]:
    """Snapshot of the classification fields of a row before they are replaced."""
    metadata = row.get("metadata") or {}
    return {
        "content_type": row.get("content_type"),
        "themes": metadata.get("themes", []),
        "concepts": metadata.get("concepts", []),
        "confidence": metadata.get("confidence"),
        "replaced_at": datetime.now(timezone.utc).isoformat(),
    }


def apply_classification(
    row: dict[str, Any], classification: ChunkClassification
) -> dict[str, Any]:
    """
    Build the update payload for a re-classified row.

    The prior content type, themes, concepts and confidence are appended to
    ``metadata.classification_history`` before being overwritten.
    """
    metadata = dict(row.get("metadata") or {})
    history = list(metadata.get("classification_history", []))
    history.append(classification_audit_entry(row))

    metadata.update(
        {
            "themes": classification.applicable_themes,
            "concepts": classification.concepts,
            "confidence": classification.confidence.model_dump(),
            **classification.to_metadata(),
            "classification_history": history,
        }
    )
    return {"content_type": classification.primary_type, "metadata": metadata}


class SupabaseKnowledgeStore:
    """
    Knowledge store backed by the ``knowledge_base`` and ``themes`` tables.

    Similarity search goes through the ``search_knowledge`` RPC, which also
    applies the metadata filter. Reads are retried with backoff; writes raise
    on the first rejection and leave retrying to the ingestion pipeline.
    """

    def __init__(self, client=None, settings: Settings | None = None):
        self._client = client
        self.settings = settings or get_settings()

    @property
    def client(self):
        if self._client is None:
            self._client = get_supabase()
        return self._client

    # =========================================================================
    # Writes
    # =========================================================================

    def insert_chunks(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Insert one batch of chunk rows in a single statement.

        Raises:
            StoreWriteFailure: If the batch is rejected; nothing from it is written
        """
        if not records:
            return []

        try:
            response = self.client.table(KNOWLEDGE_TABLE).insert(records).execute()
        except Exception as e:
            raise StoreWriteFailure(
                f"Batch insert rejected: {e}",
                source=records[0].get("source"),
                count=len(records),
            ) from e

        if not response.data:
            raise StoreWriteFailure(
                "No data returned from batch insert",
                source=records[0].get("source"),
                count=len(records),
            )

        logger.info(
            f"Inserted {len(response.data)} knowledge chunks",
            extra={"extra_data": {"source": records[0].get("source")}},
        )
        return response.data

    def upsert_themes(self, themes: list[Theme]) -> int:
        """Write vocabulary entries (and their embeddings) to the themes table."""
        rows = [theme.model_dump() for theme in themes]
        if not rows:
            return 0
        try:
            response = self.client.table(THEMES_TABLE).upsert(rows, on_conflict="code").execute()
        except Exception as e:
            raise StoreWriteFailure(f"Theme upsert rejected: {e}", count=len(rows)) from e
        return len(response.data or [])

    def update_classification(
        self, chunk_id: int | str, classification: ChunkClassification
    ) -> dict[str, Any]:
        response = self._read(
            "Chunk load",
            lambda: (
                self.client.table(KNOWLEDGE_TABLE)
                .select("id, content_type, metadata")
                .eq("id", chunk_id)
                .single()
                .execute()
            ),
            chunk_id=chunk_id,
        )

        if not response.data:
            raise StoreReadFailure("Chunk not found", chunk_id=chunk_id)

        payload = apply_classification(response.data, classification)
        try:
            updated = (
                self.client.table(KNOWLEDGE_TABLE).update(payload).eq("id", chunk_id).execute()
            )
        except Exception as e:
            raise StoreWriteFailure(
                f"Classification update rejected: {e}", chunk_id=chunk_id
            ) from e

        logger.debug(
            f"Re-classified chunk {chunk_id} as {classification.primary_type}",
            extra={"extra_data": {"chunk_id": chunk_id}},
        )
        return updated.data[0] if updated.data else payload

    def delete_source(self, persona: str, source: str) -> int:
        try:
            response = (
                self.client.table(KNOWLEDGE_TABLE)
                .delete()
                .eq("interpreter_type", persona)
                .eq("source", source)
                .execute()
            )
        except Exception as e:
            raise StoreWriteFailure(f"Delete failed: {e}", source=source) from e

        deleted = len(response.data or [])
        logger.info(f"Deleted {deleted} chunks for {persona}/{source}")
        return deleted

    # =========================================================================
    # Reads
    # =========================================================================

    def _read(self, operation: str, request: Callable[[], Any], **context: Any) -> Any:
        """
        Execute a read, retrying transient failures with exponential backoff.

        Raises:
            StoreReadFailure: If all ``STORE_READ_ATTEMPTS`` attempts fail
        """
        max_attempts = self.settings.STORE_READ_ATTEMPTS
        for attempt in range(max_attempts):
            try:
                return request()
            except Exception as e:
                if attempt < max_attempts - 1:
                    delay = self.settings.STORE_BACKOFF_SECONDS * (2**attempt)
                    logger.warning(
                        f"{operation} attempt {attempt + 1} failed: {e}. Retry in {delay}s",
                        extra={"extra_data": context},
                    )
                    time.sleep(delay)
                else:
                    logger.error(f"{operation} failed after {max_attempts} attempts: {e}")
                    raise StoreReadFailure(
                        f"{operation} failed after {max_attempts} attempts: {e}", **context
                    ) from e

    def similarity_search(
        self,
        query_embedding: list[float],
        persona: str,
        threshold: float,
        max_results: int,
        metadata_filter: MetadataFilter | None = None,
    ) -> list[dict[str, Any]]:
        """
        Candidates above the threshold, ordered by similarity descending.

        The metadata filter is evaluated inside the ``search_knowledge`` RPC,
        so ``max_results`` always counts matching rows.

        Raises:
            StoreReadFailure: If the RPC keeps failing
        """
        params = {
            "query_embedding": query_embedding,
            "target_interpreter": persona,
            "similarity_threshold": threshold,
            "max_results": max_results,
            "metadata_filter": metadata_filter.to_rpc() if metadata_filter else None,
        }
        response = self._read(
            "search_knowledge",
            lambda: self.client.rpc("search_knowledge", params).execute(),
            persona=persona,
        )

        rows = response.data or []
        logger.info(
            f"Found {len(rows)} matching chunks",
            extra={"extra_data": {"persona": persona, "threshold": threshold}},
        )
        return rows

    def search_themes(
        self, query_embedding: list[float], threshold: float, max_results: int
    ) -> list[dict[str, Any]]:
        params = {
            "query_embedding": query_embedding,
            "similarity_threshold": threshold,
            "max_results": max_results,
        }
        response = self._read(
            "search_themes", lambda: self.client.rpc("search_themes", params).execute()
        )
        return response.data or []

    def get_theme_embedding(self, code: str) -> list[float] | None:
        response = self._read(
            "Theme lookup",
            lambda: (
                self.client.table(THEMES_TABLE)
                .select("embedding")
                .eq("code", code)
                .limit(1)
                .execute()
            ),
            code=code,
        )
        if not response.data:
            return None
        return _parse_vector(response.data[0].get("embedding"))

    def existing_hashes(self, persona: str, source: str) -> set[str]:
        response = self._read(
            "Hash lookup",
            lambda: (
                self.client.table(KNOWLEDGE_TABLE)
                .select("metadata->>content_hash")
                .eq("interpreter_type", persona)
                .eq("source", source)
                .execute()
            ),
            source=source,
        )
        return {row["content_hash"] for row in response.data or [] if row.get("content_hash")}

    def text_search(self, persona: str, query: str, limit: int) -> list[dict[str, Any]]:
        """Full-text candidates for the lexical fallback path."""
        response = self._read(
            "Text search",
            lambda: (
                self.client.table(KNOWLEDGE_TABLE)
                .select("id, content, source, chapter, content_type, metadata")
                .eq("interpreter_type", persona)
                .text_search("content", query, options={"type": "websearch", "config": "english"})
                .limit(limit)
                .execute()
            ),
            persona=persona,
        )
        return response.data or []

    def list_chunks(self, persona: str, source: str) -> list[dict[str, Any]]:
        response = self._read(
            "Chunk listing",
            lambda: (
                self.client.table(KNOWLEDGE_TABLE)
                .select("id, content, content_type, metadata")
                .eq("interpreter_type", persona)
                .eq("source", source)
                .order("id")
                .execute()
            ),
            source=source,
        )
        return response.data or []

    def stats(self, persona: str) -> dict[str, Any]:
        response = self._read(
            "Stats query",
            lambda: (
                self.client.table(KNOWLEDGE_TABLE)
                .select("source, content_type")
                .eq("interpreter_type", persona)
                .execute()
            ),
            persona=persona,
        )

        rows = response.data or []
        return {
            "persona": persona,
            "total_chunks": len(rows),
            "sources": len({row.get("source") for row in rows}),
            "content_types": dict(Counter(row.get("content_type") for row in rows)),
        }
