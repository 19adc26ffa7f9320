"""In-memory knowledge store and deterministic embedder for offline tests."""

import hashlib
import math
from collections import Counter
from typing import Any

from dream_rag.core.exceptions import EmbeddingFailure, StoreReadFailure, StoreWriteFailure
from dream_rag.core.lexical import tokenize
from dream_rag.core.schemas_knowledge import ChunkClassification, MetadataFilter
from dream_rag.db.knowledge_store import apply_classification

FAKE_DIM = 512


class HashingEmbedder:
    """
    Bag-of-words vectors hashed into a fixed number of buckets.

    A constant bias component keeps every similarity slightly positive, so
    unrelated texts still score above zero.
    """

    def __init__(self, dimension: int = FAKE_DIM, fail: bool = False):
        self.dimension = dimension
        self.fail = fail
        self.calls = 0

    def _bucket(self, token: str) -> int:
        digest = hashlib.md5(token.encode("utf-8")).hexdigest()
        return 1 + int(digest, 16) % (self.dimension - 1)

    def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.fail:
            raise EmbeddingFailure("embedding service unavailable")
        vector = [0.0] * self.dimension
        vector[0] = 1.0
        for token, count in Counter(tokenize(text)).items():
            vector[self._bucket(token)] += count
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector]

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(text) for text in texts]


def cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if not na or not nb:
        return 0.0
    return dot / (na * nb)


class FakeKnowledgeStore:
    """In-memory implementation of the KnowledgeStore protocol."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.rows: list[dict[str, Any]] = []
        self.themes: dict[str, list[float]] = {}
        self.insert_calls = 0
        self.fail_inserts = 0
        self.fail_reads = False
        self._next_id = 1

    # Helpers for arranging test data
    def add(
        self,
        content: str,
        embedding: list[float],
        persona: str = "jung",
        content_type: str = "general",
        source: str = "test-source",
        metadata: dict[str, Any] | None = None,
        similarity: float | None = None,
    ) -> int:
        """Add a row; ``similarity`` pins its score for every query."""
        row = {
            "id": self._next_id,
            "interpreter_type": persona,
            "source": source,
            "chapter": None,
            "content": content,
            "content_type": content_type,
            "metadata": dict(metadata or {}),
            "embedding": embedding,
            "fixed_similarity": similarity,
        }
        self.rows.append(row)
        self._next_id += 1
        return row["id"]

    def _public(self, row: dict[str, Any], similarity: float | None = None) -> dict[str, Any]:
        hidden = ("embedding", "sparse_embedding", "fixed_similarity")
        result = {k: v for k, v in row.items() if k not in hidden}
        if similarity is not None:
            result["similarity"] = similarity
        return result

    def _check_read(self):
        if self.fail_reads:
            raise StoreReadFailure("store unavailable")

    # Protocol
    def insert_chunks(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        self.insert_calls += 1
        if self.fail_inserts > 0:
            self.fail_inserts -= 1
            raise StoreWriteFailure("batch rejected")
        inserted = []
        for record in records:
            row = dict(record)
            row["id"] = self._next_id
            self._next_id += 1
            self.rows.append(row)
            inserted.append(row)
        return inserted

    def similarity_search(
        self,
        query_embedding: list[float],
        persona: str,
        threshold: float,
        max_results: int,
        metadata_filter: MetadataFilter | None = None,
    ) -> list[dict[str, Any]]:
        self._check_read()
        scored = []
        for row in self.rows:
            if row["interpreter_type"] != persona:
                continue
            similarity = row.get("fixed_similarity")
            if similarity is None:
                similarity = cosine(query_embedding, row["embedding"])
            if similarity <= threshold:
                continue
            if metadata_filter and not metadata_filter.matches(row):
                continue
            scored.append((similarity, row))
        scored.sort(key=lambda item: (-item[0], item[1]["id"]))
        return [self._public(row, sim) for sim, row in scored[:max_results]]

    def search_themes(
        self, query_embedding: list[float], threshold: float, max_results: int
    ) -> list[dict[str, Any]]:
        self._check_read()
        scored = [
            {"code": code, "label": code.title(), "similarity": cosine(query_embedding, vector)}
            for code, vector in self.themes.items()
        ]
        scored = [s for s in scored if s["similarity"] > threshold]
        scored.sort(key=lambda s: (-s["similarity"], s["code"]))
        return scored[:max_results]

    def get_theme_embedding(self, code: str) -> list[float] | None:
        self._check_read()
        return self.themes.get(code)

    def existing_hashes(self, persona: str, source: str) -> set[str]:
        self._check_read()
        return {
            row["metadata"].get("content_hash")
            for row in self.rows
            if row["interpreter_type"] == persona
            and row["source"] == source
            and row["metadata"].get("content_hash")
        }

    def text_search(self, persona: str, query: str, limit: int) -> list[dict[str, Any]]:
        self._check_read()
        terms = set(tokenize(query))
        matches = [
            self._public(row)
            for row in self.rows
            if row["interpreter_type"] == persona and terms & set(tokenize(row["content"]))
        ]
        return matches[:limit]

    def list_chunks(self, persona: str, source: str) -> list[dict[str, Any]]:
        return [
            self._public(row)
            for row in self.rows
            if row["interpreter_type"] == persona and row["source"] == source
        ]

    def update_classification(
        self, chunk_id: int | str, classification: ChunkClassification
    ) -> dict[str, Any]:
        for row in self.rows:
            if row["id"] == chunk_id:
                row.update(apply_classification(row, classification))
                return self._public(row)
        raise StoreReadFailure("Chunk not found", chunk_id=chunk_id)

    def delete_source(self, persona: str, source: str) -> int:
        before = len(self.rows)
        self.rows = [
            row
            for row in self.rows
            if not (row["interpreter_type"] == persona and row["source"] == source)
        ]
        return before - len(self.rows)

    def stats(self, persona: str) -> dict[str, Any]:
        rows = [row for row in self.rows if row["interpreter_type"] == persona]
        return {
            "persona": persona,
            "total_chunks": len(rows),
            "sources": len({row["source"] for row in rows}),
            "content_types": dict(Counter(row["content_type"] for row in rows)),
        }
