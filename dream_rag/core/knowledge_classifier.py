"""Theme-aware knowledge classifier for corpus chunks.

Combines the baseline content-type scorer with theme matching against the
controlled vocabulary:

1. Gate: decide whether the passage reads as theoretical/expository writing or
   as first-person dream narration. Theoretical passages get a stricter
   semantic threshold, a higher keyword threshold and score floor, and a
   discounted theme confidence, so discussion *about* mazes or beaches is not
   tagged with those narrative themes.
2. Lexical pass over each theme's keyword set (exact code match weighs 5).
3. Semantic pass: cosine similarity between the chunk embedding and each theme
   embedding, adding ``similarity * 10`` above the active threshold.
4. Keep the top five themes clearing the floor (two for theoretical text) and
   map them to concepts.

Semantic failures degrade to lexical-only matching. Any other internal error
produces a minimal-confidence fallback classification; the classifier never
raises for a single chunk.

Usage:
    from dream_rag.core.knowledge_classifier import KnowledgeClassifier

    classifier = KnowledgeClassifier(embedder=adapter, store=store)
    result = classifier.classify(chunk_text, persona="jung", embedding=chunk_vector)
"""

import asyncio
import re
from collections import Counter
from dataclasses import dataclass

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity

from dream_rag.core.config import Settings, get_settings
from dream_rag.core.content_classifier import classify_content
from dream_rag.core.exceptions import ClassificationDegraded
from dream_rag.core.logging import get_logger, query_fingerprint
from dream_rag.core.schemas_knowledge import (
    ChunkClassification,
    ClassificationConfidence,
    ContentType,
)
from dream_rag.core.theme_concepts import map_themes_to_concepts
from dream_rag.core.vocabulary import COMMON_WORDS, ThemeVocabulary, load_vocabulary

logger = get_logger(__name__)


# =============================================================================
# Gate parameters
# =============================================================================


@dataclass(frozen=True)
class ThemeGate:
    """Matching strictness for one side of the theoretical/narrative gate."""

    semantic_threshold: float
    keyword_threshold: float
    min_score: float
    confidence_divisor: float


NARRATIVE_GATE = ThemeGate(
    semantic_threshold=0.4, keyword_threshold=1, min_score=2, confidence_divisor=15
)
THEORETICAL_GATE = ThemeGate(
    semantic_threshold=0.6, keyword_threshold=3, min_score=5, confidence_divisor=30
)

EXACT_MATCH_WEIGHT = 5
KEYWORD_WEIGHT = 1
SEMANTIC_WEIGHT = 10
MAX_THEMES = 5
MAX_THEORETICAL_THEMES = 2
MAX_KEYWORDS = 15

THEORETICAL_INDICATORS = [
    "theory", "hypothesis", "concept", "principle", "framework",
    "methodology", "approach", "technique", "method", "process",
    "freud", "jung", "analysis", "psychoanalysis", "psychological",
    "according to", "suggests that", "we can see", "it is clear",
    "this indicates", "the patient", "case study", "research",
]  # fmt: skip

NARRATIVE_INDICATORS = [
    "i dreamed", "i was", "i found myself", "i saw", "i felt",
    "in the dream", "then i", "suddenly i", "i realized",
    "i woke up", "the dream", "my dream",
]  # fmt: skip

_THEORETICAL_PATTERNS = [re.compile(rf"\b{re.escape(i)}") for i in THEORETICAL_INDICATORS]
_NARRATIVE_PATTERNS = [re.compile(rf"\b{re.escape(i)}\b") for i in NARRATIVE_INDICATORS]

SYMBOL_PATTERNS = [
    # Archetypal figures
    re.compile(
        r"\b(shadow|anima|animus|self|wise old man|great mother|trickster|hero|child)\b", re.I
    ),
    # Elements and landscape
    re.compile(r"\b(water|fire|earth|air|tree|mountain|ocean|river|sun|moon|star)\b", re.I),
    # Animals
    re.compile(r"\b(snake|serpent|dragon|lion|wolf|bear|eagle|dove|spider|butterfly)\b", re.I),
    # Objects
    re.compile(r"\b(mirror|door|key|bridge|sword|crown|ring|book|mask|vessel)\b", re.I),
]

TECHNICAL_TERMS = re.compile(
    r"\b(unconscious|archetype|individuation|projection|transference|complex|neurosis|psyche)\b",
    re.I,
)

_NON_WORD = re.compile(r"[^\w\s]")
_SENTENCE_SPLIT = re.compile(r"[.!?]+")


# =============================================================================
# Text heuristics
# =============================================================================


def theoretical_scores(text: str) -> tuple[int, int]:
    """Count (theoretical, narrative) indicators present in the text."""
    lowered = text.lower()
    theoretical = sum(1 for p in _THEORETICAL_PATTERNS if p.search(lowered))
    narrative = sum(1 for p in _NARRATIVE_PATTERNS if p.search(lowered))
    return theoretical, narrative


def is_theoretical(text: str) -> bool:
    """True when discourse markers outnumber first-person narrative markers."""
    theoretical, narrative = theoretical_scores(text)
    return theoretical > narrative and theoretical > 0


def refine_content_type(basic_type: str, text: str, theoretical: bool) -> str:
    """Ordered content-type checks; the first match wins."""
    lowered = text.lower()

    if "dream" in lowered and any(m in lowered for m in ("i was", "i found myself", "i saw")):
        return ContentType.DREAM_EXAMPLE

    if theoretical:
        if any(m in lowered for m in ("method", "technique", "approach")):
            return ContentType.METHODOLOGY
        return ContentType.THEORY

    if any(m in lowered for m in ("patient", "case", "analysis of")) and "session" in lowered:
        return ContentType.CASE_STUDY

    if "symbol" in lowered and ("represents" in lowered or "signifies" in lowered):
        return ContentType.SYMBOL

    return basic_type


def detect_symbols(text: str) -> list[str]:
    """Symbol words found in the text, lower-cased and grouped by symbol family."""
    found: dict[str, None] = {}
    for pattern in SYMBOL_PATTERNS:
        for match in pattern.finditer(text):
            found.setdefault(match.group(0).lower(), None)
    return list(found)


def calculate_complexity(text: str) -> float:
    """Descriptive complexity in [0, 1] from sentence length, long words and jargon."""
    sentences = [s for s in _SENTENCE_SPLIT.split(text) if s.strip()]
    words = text.split()
    avg_sentence_length = len(words) / len(sentences) if sentences else 0

    score = 0.0
    if avg_sentence_length > 25:
        score += 0.3
    elif avg_sentence_length > 20:
        score += 0.2
    elif avg_sentence_length > 15:
        score += 0.1

    long_words = sum(1 for w in words if len(w) > 7)
    score += (long_words / max(len(words), 1)) * 0.4
    score += min(0.3, len(TECHNICAL_TERMS.findall(text)) * 0.05)
    return min(1.0, score)


def overall_confidence(content: float, themes: float, symbol_count: int) -> float:
    """Weighted overall confidence, never above 0.95."""
    confidence = content * 0.5 + themes * 0.3 + min(0.2, symbol_count * 0.04)
    return round(min(0.95, confidence), 4)


def fallback_classification() -> ChunkClassification:
    """Minimal-confidence classification used when classification itself fails."""
    return ChunkClassification(
        primary_type=ContentType.GENERAL,
        confidence=ClassificationConfidence(content_type=0.1, themes=0.0, overall=0.05),
        degraded=True,
    )


# =============================================================================
# Classifier
# =============================================================================


class KnowledgeClassifier:
    """Assigns content type, themes, concepts and symbols to corpus chunks."""

    def __init__(
        self,
        vocabulary: ThemeVocabulary | None = None,
        embedder=None,
        store=None,
        settings: Settings | None = None,
    ):
        self.vocabulary = vocabulary or load_vocabulary()
        self.embedder = embedder
        self.store = store
        self.settings = settings or get_settings()
        self._theme_codes: list[str] = []
        self._theme_matrix: np.ndarray | None = None
        self._prepare_error: ClassificationDegraded | None = None
        self._keyword_patterns = {
            code: [
                (kw, re.compile(rf"\b{re.escape(kw)}\b"))
                for kw in self.vocabulary.keywords_for(code)
            ]
            for code in self.vocabulary.codes
        }
        self._theme_code_words = {code.lower() for code in self.vocabulary.codes}

    # -------------------------------------------------------------------------
    # Theme embeddings
    # -------------------------------------------------------------------------

    def prepare(self) -> bool:
        """
        Load theme embeddings once: vocabulary first, then the store, then the embedder.

        A failure is remembered, so later calls fail fast instead of hitting
        the store or embedder again for every chunk.

        Returns:
            True if a semantic pass is available

        Raises:
            ClassificationDegraded: If embeddings are needed but cannot be obtained
        """
        if self._theme_matrix is not None:
            return True
        if self._prepare_error is not None:
            raise self._prepare_error

        try:
            embeddings = self._collect_theme_embeddings()
        except ClassificationDegraded as e:
            self._prepare_error = e
            raise

        if not embeddings:
            return False

        self.vocabulary.attach_embeddings(embeddings)
        self._theme_codes = [code for code in self.vocabulary.codes if code in embeddings]
        self._theme_matrix = np.array([embeddings[code] for code in self._theme_codes], dtype=float)
        logger.info(f"Prepared {len(self._theme_codes)} theme embeddings for semantic matching")
        return True

    def _collect_theme_embeddings(self) -> dict[str, list[float]]:
        embeddings = self.vocabulary.embeddings()
        missing = [code for code in self.vocabulary.codes if code not in embeddings]

        if missing and self.store is not None:
            for code in missing:
                try:
                    vector = self.store.get_theme_embedding(code)
                except Exception as e:
                    raise ClassificationDegraded(f"Theme embedding lookup failed: {e}") from e
                if vector:
                    embeddings[code] = vector
            missing = [code for code in missing if code not in embeddings]

        if missing and self.embedder is not None:
            try:
                vectors = self.embedder.embed_many(
                    [self.vocabulary.embedding_text(code) for code in missing]
                )
            except Exception as e:
                raise ClassificationDegraded(f"Theme embedding generation failed: {e}") from e
            embeddings.update(dict(zip(missing, vectors)))
        return embeddings

    @property
    def semantic_available(self) -> bool:
        return self._theme_matrix is not None

    # -------------------------------------------------------------------------
    # Theme matching
    # -------------------------------------------------------------------------

    def lexical_theme_scores(self, text: str, gate: ThemeGate) -> dict[str, float]:
        lowered = text.lower()
        scores: dict[str, float] = {}
        for code, patterns in self._keyword_patterns.items():
            exact = code.lower().replace("_", " ")
            score = 0
            for keyword, pattern in patterns:
                count = len(pattern.findall(lowered))
                if not count:
                    continue
                score += count * (EXACT_MATCH_WEIGHT if keyword == exact else KEYWORD_WEIGHT)
            if score >= gate.keyword_threshold:
                scores[code] = float(score)
        return scores

    def semantic_theme_scores(
        self, text: str, embedding: list[float] | None, gate: ThemeGate
    ) -> dict[str, float]:
        """
        Cosine similarity against every theme embedding above the gate threshold.

        Raises:
            ClassificationDegraded: If theme or chunk embeddings are unavailable
        """
        if not self.prepare():
            return {}

        if embedding is None:
            if self.embedder is None:
                raise ClassificationDegraded("No chunk embedding and no embedder configured")
            try:
                embedding = self.embedder.embed(text)
            except Exception as e:
                raise ClassificationDegraded(f"Chunk embedding failed: {e}") from e

        vector = np.array(embedding, dtype=float).reshape(1, -1)
        if vector.shape[1] != self._theme_matrix.shape[1]:
            raise ClassificationDegraded(
                f"Chunk embedding dimension {vector.shape[1]} does not match "
                f"theme dimension {self._theme_matrix.shape[1]}"
            )

        similarities = cosine_similarity(vector, self._theme_matrix)[0]
        return {
            code: float(sim) * SEMANTIC_WEIGHT
            for code, sim in zip(self._theme_codes, similarities)
            if sim > gate.semantic_threshold
        }

    def match_themes(
        self, text: str, embedding: list[float] | None = None
    ) -> tuple[list[str], float, dict[str, float], bool, bool]:
        """
        Hybrid theme matching.

        Returns:
            (themes, theme_confidence, scores, is_theoretical, degraded)
        """
        theoretical = is_theoretical(text)
        gate = THEORETICAL_GATE if theoretical else NARRATIVE_GATE

        scores = self.lexical_theme_scores(text, gate)
        degraded = False

        if self.embedder is not None or self.store is not None or embedding is not None:
            try:
                for code, semantic in self.semantic_theme_scores(text, embedding, gate).items():
                    scores[code] = scores.get(code, 0.0) + semantic
            except ClassificationDegraded as e:
                degraded = True
                logger.warning(
                    f"Semantic theme matching unavailable, using keywords only: {e}",
                    extra={"extra_data": {"fingerprint": query_fingerprint(text)}},
                )

        # Descending score; code breaks ties so the result is deterministic
        limit = MAX_THEORETICAL_THEMES if theoretical else MAX_THEMES
        ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))[:limit]
        themes = [code for code, score in ranked if score >= gate.min_score]
        themes = self.vocabulary.validate_codes(themes)

        confidence = 0.0
        if themes:
            confidence = min(0.9, ranked[0][1] / gate.confidence_divisor)
            if theoretical:
                confidence *= self.settings.THEORETICAL_CONFIDENCE_DISCOUNT

        kept_scores = {code: round(score, 4) for code, score in ranked if code in themes}
        return themes, round(confidence, 4), kept_scores, theoretical, degraded

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def extract_keywords(self, text: str) -> list[str]:
        """Most frequent meaningful words (longer than four chars, not theme codes)."""
        words = [
            w
            for w in _NON_WORD.sub(" ", text.lower()).split()
            if len(w) > 4 and w not in COMMON_WORDS and w not in self._theme_code_words
        ]
        return [word for word, _ in Counter(words).most_common(MAX_KEYWORDS)]

    def classify(
        self, text: str, persona: str = "jung", embedding: list[float] | None = None
    ) -> ChunkClassification:
        """
        Classify one chunk.

        Args:
            text: Chunk text
            persona: Corpus/persona identifier (used for logging context)
            embedding: Precomputed chunk embedding, if the caller already has one

        Returns:
            ChunkClassification. Never raises; internal errors produce a fallback.
        """
        try:
            basic = classify_content(text)
            themes, theme_confidence, theme_scores, theoretical, degraded = self.match_themes(
                text, embedding
            )
            mapping = map_themes_to_concepts(themes)
            symbols = detect_symbols(text)

            return ChunkClassification(
                primary_type=refine_content_type(basic.primary_type, text, theoretical),
                secondary_types=basic.secondary_types,
                topics=basic.topics,
                confidence=ClassificationConfidence(
                    content_type=basic.confidence,
                    themes=theme_confidence,
                    overall=overall_confidence(basic.confidence, theme_confidence, len(symbols)),
                ),
                applicable_themes=themes,
                concepts=mapping.concepts,
                interpretive_hints=mapping.interpretive_hints,
                symbols_present=symbols,
                keywords=self.extract_keywords(text),
                complexity=calculate_complexity(text),
                has_symbols=basic.has_symbols or bool(symbols),
                has_examples=basic.has_examples,
                has_case_study=basic.has_case_study,
                has_exercise=basic.has_exercise,
                has_quotes='"' in text or "\u201c" in text,
                word_count=len(text.split()),
                is_theoretical=theoretical,
                degraded=degraded,
                theme_scores=theme_scores,
            )
        except Exception as e:
            logger.error(
                f"Classification failed, returning fallback: {e}",
                extra={"extra_data": {"persona": persona, "fingerprint": query_fingerprint(text)}},
            )
            return fallback_classification()

    async def aclassify(
        self, text: str, persona: str = "jung", embedding: list[float] | None = None
    ) -> ChunkClassification:
        """Async wrapper around classify using thread pool."""
        return await asyncio.to_thread(self.classify, text, persona, embedding)

    async def classify_batch(
        self,
        items: list[tuple[str, list[float] | None]],
        persona: str = "jung",
        concurrency: int | None = None,
    ) -> list[ChunkClassification]:
        """
        Classify (text, embedding) pairs with bounded concurrency.

        Results are returned in input order.
        """
        await asyncio.to_thread(self.warm_up)
        semaphore = asyncio.Semaphore(concurrency or self.settings.INGEST_CONCURRENCY)

        async def run(text: str, embedding: list[float] | None) -> ChunkClassification:
            async with semaphore:
                return await self.aclassify(text, persona, embedding)

        return list(await asyncio.gather(*(run(text, emb) for text, emb in items)))

    def warm_up(self) -> None:
        """Load theme embeddings up front; a failure only means lexical-only matching."""
        if self.embedder is None and self.store is None:
            return
        try:
            self.prepare()
        except ClassificationDegraded as e:
            logger.warning(f"Theme embeddings unavailable before batch: {e}")
