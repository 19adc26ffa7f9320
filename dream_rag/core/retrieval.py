"""Hybrid retrieval and ranking over the persona knowledge base.

One call to ``RetrievalEngine.retrieve`` runs:

1. Query pre-analysis: boost themes, result count, optional narrowed filter.
2. Query embedding (the adapter owns timeouts and bounded retry).
3. Similarity search capped at ``max_results * SEARCH_CANDIDATE_MULTIPLIER``.
4. Score blending: ``SEMANTIC_WEIGHT * similarity + LEXICAL_WEIGHT * bm25``,
   a content-type multiplier, then an additive theme boost.
5. Quality floor on each passage's own similarity, then the anti-repetition
   filter, topping up from a broadened filter once if too few passages survive.
6. Deterministic ordering, truncation and tracker update.

External failures never propagate. A failed embedding falls back to store
full-text search ranked by BM25; a failed store read yields an empty result.
An empty ``RetrievalResult`` is a valid outcome, not an error.
"""

import asyncio
from typing import Any

from dream_rag.core.config import Settings, get_persona_profile, get_settings
from dream_rag.core.lexical import BM25Scorer
from dream_rag.core.logging import get_logger, query_fingerprint
from dream_rag.core.query_analysis import QueryAnalysis, analyze_query
from dream_rag.core.schemas_knowledge import (
    ContentType,
    MetadataFilter,
    RetrievalQuery,
    RetrievalResult,
    ScoredPassage,
)
from dream_rag.core.session import RepetitionTracker
from dream_rag.core.vocabulary import ThemeVocabulary, load_vocabulary

logger = get_logger(__name__)

CONTENT_TYPE_MULTIPLIERS = {
    ContentType.DREAM_EXAMPLE: 1.1,
    ContentType.SYMBOL: 1.05,
}
THEME_BOOST_STEP = 0.08
THEME_BOOST_CAP = 0.2

DEGRADED_EMBEDDING = "embedding"
DEGRADED_STORE = "store"
DEGRADED_LEXICAL = "lexical"


def _id_key(chunk_id: Any) -> tuple[int, Any]:
    """Sort key for ids: numeric ids first in numeric order, then strings."""
    try:
        return (0, int(chunk_id))
    except (TypeError, ValueError):
        return (1, str(chunk_id))


def ranking_key(passage: ScoredPassage) -> tuple:
    """Blended score desc, then semantic similarity desc, then lower id."""
    return (-passage.score, -passage.semantic_score, _id_key(passage.chunk_id))


def candidate_themes(row: dict[str, Any]) -> set[str]:
    """Theme codes and subtopics a candidate row is tagged with."""
    metadata = row.get("metadata") or {}
    tags: set[str] = set()
    for key in ("themes", "subtopic"):
        value = row.get(key, metadata.get(key))
        if isinstance(value, str):
            tags.add(value)
        elif value:
            tags.update(value)
    return tags


def theme_boost(row: dict[str, Any], boost_themes: list[str]) -> tuple[float, list[str]]:
    """Additive bonus for candidates tagged with any of the boost themes."""
    if not boost_themes:
        return 0.0, []
    tags = candidate_themes(row)
    matched = [theme for theme in boost_themes if theme in tags]
    return min(THEME_BOOST_CAP, THEME_BOOST_STEP * len(matched)), matched


class RetrievalEngine:
    """Ranks knowledge-base passages for a dream narrative."""

    def __init__(
        self,
        store,
        embedder,
        settings: Settings | None = None,
        vocabulary: ThemeVocabulary | None = None,
    ):
        self.store = store
        self.embedder = embedder
        self.settings = settings or get_settings()
        self._vocabulary = vocabulary

    @property
    def vocabulary(self) -> ThemeVocabulary:
        if self._vocabulary is None:
            self._vocabulary = load_vocabulary()
        return self._vocabulary

    # =========================================================================
    # Public API
    # =========================================================================

    async def retrieve(
        self, query: RetrievalQuery, tracker: RepetitionTracker | None = None
    ) -> RetrievalResult:
        """
        Retrieve ranked passages for one query.

        Args:
            query: Query text, persona and optional overrides
            tracker: Session anti-repetition tracker, updated with returned ids

        Returns:
            RetrievalResult; ``passages`` is empty when nothing qualifies or
            when no signal at all is available
        """
        fingerprint = query_fingerprint(query.text)
        profile = get_persona_profile(query.persona)
        analysis = self._analyze(query)

        threshold = (
            query.similarity_threshold
            if query.similarity_threshold is not None
            else profile.similarity_threshold
        )
        max_results = query.max_results or analysis.max_results
        metadata_filter = query.metadata_filter or analysis.metadata_filter
        boost_themes = list(dict.fromkeys([*query.boost_themes, *analysis.boost_themes]))
        hybrid = query.hybrid if query.hybrid is not None else self.settings.HYBRID_ENABLED
        degraded: list[str] = []

        result = RetrievalResult(
            persona=query.persona, query_fingerprint=fingerprint, boost_themes=boost_themes
        )

        if not query.text.strip():
            return result

        # =====================================================================
        # Embed
        # =====================================================================
        vector = await self._embed_query(query.text, fingerprint, degraded)

        # =====================================================================
        # Candidates and scoring
        # =====================================================================
        cap = max_results * self.settings.SEARCH_CANDIDATE_MULTIPLIER
        passages = await self._ranked_candidates(
            query, vector, threshold, cap, metadata_filter, boost_themes, hybrid, degraded
        )

        # =====================================================================
        # Anti-repetition, broadening once if a narrowed filter starved results
        # =====================================================================
        excluded = tracker.snapshot() if tracker is not None else frozenset()
        passages = [p for p in passages if str(p.chunk_id) not in excluded]

        minimum = self.settings.MIN_RESULTS_BEFORE_BROADEN
        if len(passages) < minimum and metadata_filter is not None:
            broader = self._broaden(metadata_filter, query.persona)
            logger.info(
                f"Only {len(passages)} passages after filtering, broadening search",
                extra={"extra_data": {"fingerprint": fingerprint, "persona": query.persona}},
            )
            more = await self._ranked_candidates(
                query, vector, threshold, cap, broader, boost_themes, hybrid, degraded
            )
            seen = {str(p.chunk_id) for p in passages} | excluded
            more = sorted((p for p in more if str(p.chunk_id) not in seen), key=ranking_key)
            # Top up to the minimum only; passage counts stay monotone in the threshold
            passages.extend(more[: minimum - len(passages)])
            result.broadened = True

        # =====================================================================
        # Order, truncate, remember
        # =====================================================================
        passages.sort(key=ranking_key)
        result.passages = passages[:max_results]
        result.degraded_signals = list(dict.fromkeys(degraded))

        if tracker is not None:
            tracker.add_many(p.chunk_id for p in result.passages)

        logger.info(
            f"Retrieved {len(result.passages)} passages for {query.persona}",
            extra={
                "extra_data": {
                    "fingerprint": fingerprint,
                    "threshold": threshold,
                    "boost_themes": len(boost_themes),
                    "broadened": result.broadened,
                    "degraded": ",".join(result.degraded_signals) or None,
                }
            },
        )
        return result

    async def retrieve_themes(
        self, text: str, threshold: float = 0.3, limit: int = 10
    ) -> list[dict[str, Any]]:
        """
        Vocabulary themes most similar to the text, via the store's theme search.

        Unknown codes returned by the store are dropped. Failures yield [].
        """
        fingerprint = query_fingerprint(text)
        try:
            vector = await asyncio.to_thread(self.embedder.embed, text)
            rows = await asyncio.to_thread(self.store.search_themes, vector, threshold, limit)
        except Exception as e:
            logger.warning(
                f"Theme search unavailable: {e}",
                extra={"extra_data": {"fingerprint": fingerprint}},
            )
            return []

        valid = set(self.vocabulary.validate_codes([row.get("code") for row in rows]))
        themes = [
            {
                "code": row["code"],
                "label": row.get("label", ""),
                "similarity": float(row.get("similarity", 0.0)),
            }
            for row in rows
            if row.get("code") in valid
        ]
        themes.sort(key=lambda t: (-t["similarity"], t["code"]))
        return themes[:limit]

    # =========================================================================
    # Steps
    # =========================================================================

    def _analyze(self, query: RetrievalQuery) -> QueryAnalysis:
        try:
            return analyze_query(query.text, query.persona)
        except Exception as e:
            logger.warning(f"Query pre-analysis failed, using defaults: {e}")
            profile = get_persona_profile(query.persona)
            return QueryAnalysis(max_results=profile.max_results)

    async def _embed_query(
        self, text: str, fingerprint: str, degraded: list[str]
    ) -> list[float] | None:
        try:
            return await asyncio.to_thread(self.embedder.embed, text)
        except Exception as e:
            degraded.append(DEGRADED_EMBEDDING)
            logger.error(
                f"Query embedding failed, falling back to lexical search: {e}",
                extra={"extra_data": {"fingerprint": fingerprint}},
            )
            return None

    def _broaden(self, current: MetadataFilter, persona: str) -> MetadataFilter | None:
        """Superset scope for a narrowed filter: the persona's broadened filter, else none."""
        profile = get_persona_profile(persona)
        if profile.broadened_filter:
            broader = MetadataFilter(**profile.broadened_filter)
            if broader.field == current.field and set(current.values) < set(broader.values):
                return broader
        return None

    async def _fetch(
        self,
        query: RetrievalQuery,
        vector: list[float] | None,
        threshold: float,
        cap: int,
        metadata_filter: MetadataFilter | None,
        degraded: list[str],
    ) -> tuple[list[dict[str, Any]], bool]:
        """
        Candidate rows and whether they came from the lexical fallback.
        """
        if vector is not None:
            try:
                rows = await asyncio.to_thread(
                    self.store.similarity_search,
                    vector,
                    query.persona,
                    threshold,
                    cap,
                    metadata_filter,
                )
                return rows, False
            except Exception as e:
                degraded.append(DEGRADED_STORE)
                logger.error(f"Similarity search failed: {e}")
                return [], False

        try:
            rows = await asyncio.to_thread(self.store.text_search, query.persona, query.text, cap)
        except Exception as e:
            degraded.append(DEGRADED_STORE)
            logger.error(f"Lexical fallback search failed: {e}")
            return [], True

        if metadata_filter is not None:
            rows = [row for row in rows if metadata_filter.matches(row)]
        return rows, True

    def _lexical_scores(self, text: str, rows: list[dict[str, Any]], degraded: list[str]):
        try:
            return BM25Scorer([row.get("content", "") for row in rows]).normalized_scores(text)
        except Exception as e:
            degraded.append(DEGRADED_LEXICAL)
            logger.warning(f"Lexical scoring failed, using semantic only: {e}")
            return None

    async def _ranked_candidates(
        self,
        query: RetrievalQuery,
        vector: list[float] | None,
        threshold: float,
        cap: int,
        metadata_filter: MetadataFilter | None,
        boost_themes: list[str],
        hybrid: bool,
        degraded: list[str],
    ) -> list[ScoredPassage]:
        rows, lexical_only = await self._fetch(
            query, vector, threshold, cap, metadata_filter, degraded
        )
        if not rows:
            return []

        lexical = None
        if hybrid or lexical_only:
            lexical = self._lexical_scores(query.text, rows, degraded)
        if lexical_only and lexical is None:
            return []

        passages = []
        for i, row in enumerate(rows):
            semantic = float(row.get("similarity") or 0.0)
            lexical_score = lexical[i] if lexical is not None else 0.0

            if lexical_only:
                blended = lexical_score
            elif lexical is not None:
                blended = (
                    self.settings.SEMANTIC_WEIGHT * semantic
                    + self.settings.LEXICAL_WEIGHT * lexical_score
                )
            else:
                blended = semantic

            content_type = row.get("content_type") or ContentType.GENERAL
            blended *= CONTENT_TYPE_MULTIPLIERS.get(content_type, 1.0)
            boost, matched = theme_boost(row, boost_themes)
            score = blended + boost

            # The floor looks at the passage's own similarity; normalized BM25 is
            # relative to the candidate set and only reorders
            own_score = lexical_score if lexical_only else semantic
            if own_score < self.settings.MIN_PASSAGE_SCORE:
                continue

            metadata = row.get("metadata") or {}
            passages.append(
                ScoredPassage(
                    chunk_id=row["id"],
                    content=row.get("content", ""),
                    source=row.get("source") or "",
                    chapter=row.get("chapter"),
                    content_type=content_type,
                    themes=list(metadata.get("themes", [])),
                    score=round(score, 6),
                    semantic_score=round(semantic, 6),
                    lexical_score=round(lexical_score, 6),
                    boost_score=round(boost, 6),
                    matched_themes=matched,
                    metadata=metadata,
                )
            )
        return passages
