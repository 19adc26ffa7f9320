"""Pydantic schemas for knowledge chunks, themes, and retrieval results."""

from typing import Any

from pydantic import BaseModel, Field, field_validator


class ContentType:
    """Closed set of content-type labels (what kind of writing a chunk is)."""

    THEORY = "theory"
    METHODOLOGY = "methodology"
    CASE_STUDY = "case_study"
    DREAM_EXAMPLE = "dream_example"
    SYMBOL = "symbol"
    TECHNIQUE = "technique"
    DEFINITION = "definition"
    BIOGRAPHY = "biography"
    PRACTICE = "practice"
    GENERAL = "general"

    ALL = (
        THEORY,
        METHODOLOGY,
        CASE_STUDY,
        DREAM_EXAMPLE,
        SYMBOL,
        TECHNIQUE,
        DEFINITION,
        BIOGRAPHY,
        PRACTICE,
        GENERAL,
    )


class Theme(BaseModel):
    """Controlled-vocabulary theme entry."""

    code: str
    label: str
    description: str = ""
    embedding: list[float] | None = None


class ClassificationConfidence(BaseModel):
    """Per-dimension confidence, each in [0, 1]."""

    content_type: float = Field(default=0.0, ge=0.0, le=1.0)
    themes: float = Field(default=0.0, ge=0.0, le=1.0)
    overall: float = Field(default=0.0, ge=0.0, le=0.95)


class ChunkClassification(BaseModel):
    """Result of classifying one chunk of text."""

    primary_type: str = ContentType.GENERAL
    secondary_types: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    confidence: ClassificationConfidence = Field(default_factory=ClassificationConfidence)
    applicable_themes: list[str] = Field(default_factory=list)
    concepts: list[str] = Field(default_factory=list)
    interpretive_hints: list[str] = Field(default_factory=list)
    symbols_present: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    complexity: float = Field(default=0.0, ge=0.0, le=1.0)
    has_symbols: bool = False
    has_examples: bool = False
    has_case_study: bool = False
    has_exercise: bool = False
    has_quotes: bool = False
    word_count: int = 0
    is_theoretical: bool = False
    degraded: bool = False  # semantic theme signal was unavailable
    theme_scores: dict[str, float] = Field(default_factory=dict)

    def to_metadata(self) -> dict[str, Any]:
        """Descriptive fields stored in a chunk's ``metadata`` column."""
        return {
            "symbols": self.symbols_present,
            "keywords": self.keywords,
            "complexity": self.complexity,
            "is_theoretical": self.is_theoretical,
            "secondary_types": self.secondary_types,
            "topics": self.topics,
            "has_symbols": self.has_symbols,
            "has_examples": self.has_examples,
            "has_case_study": self.has_case_study,
            "has_exercise": self.has_exercise,
            "has_quotes": self.has_quotes,
            "word_count": self.word_count,
        }


class KnowledgeChunk(BaseModel):
    """A retrievable unit of source text with classification and embedding."""

    id: int | str | None = None  # assigned by the store at write time
    interpreter_type: str
    source: str
    chapter: str | None = None
    chunk_index: int = 0
    content: str
    content_type: str = ContentType.GENERAL
    themes: list[str] = Field(default_factory=list)
    concepts: list[str] = Field(default_factory=list)
    confidence: ClassificationConfidence = Field(default_factory=ClassificationConfidence)
    embedding: list[float] | None = None
    sparse_embedding: dict[str, float] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("chunk content must not be empty")
        return v

    def to_record(self) -> dict[str, Any]:
        """Row shape written to the knowledge_base table."""
        metadata = dict(self.metadata)
        metadata.update(
            {
                "chunk_index": self.chunk_index,
                "themes": self.themes,
                "concepts": self.concepts,
                "confidence": self.confidence.model_dump(),
            }
        )
        record = {
            "interpreter_type": self.interpreter_type,
            "source": self.source,
            "chapter": self.chapter,
            "content": self.content,
            "content_type": self.content_type,
            "metadata": metadata,
            "embedding": self.embedding,
        }
        if self.sparse_embedding is not None:
            record["sparse_embedding"] = self.sparse_embedding
        return record


class MetadataFilter(BaseModel):
    """Restrict candidates to rows whose metadata field matches one of the values."""

    field: str
    values: list[str]

    def matches(self, row: dict[str, Any]) -> bool:
        value = row.get(self.field)
        if value is None:
            value = (row.get("metadata") or {}).get(self.field)
        if isinstance(value, list):
            return any(v in self.values for v in value)
        return value in self.values

    def to_rpc(self) -> dict[str, Any]:
        """``metadata_filter`` argument of the search_knowledge RPC (metadata fields only)."""
        return {"field": self.field, "values": list(self.values)}


class RetrievalQuery(BaseModel):
    """One retrieval request."""

    text: str
    persona: str
    similarity_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    max_results: int | None = Field(default=None, ge=1)
    metadata_filter: MetadataFilter | None = None
    boost_themes: list[str] = Field(default_factory=list)
    hybrid: bool | None = None


class ScoredPassage(BaseModel):
    """A ranked candidate with its component scores."""

    chunk_id: int | str
    content: str
    source: str = ""
    chapter: str | None = None
    content_type: str = ContentType.GENERAL
    themes: list[str] = Field(default_factory=list)
    score: float = 0.0
    semantic_score: float = 0.0
    lexical_score: float = 0.0
    boost_score: float = 0.0
    matched_themes: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class RetrievalResult(BaseModel):
    """Ranked passages for one query. An empty list is a valid outcome."""

    passages: list[ScoredPassage] = Field(default_factory=list)
    persona: str
    query_fingerprint: str
    boost_themes: list[str] = Field(default_factory=list)
    broadened: bool = False
    degraded_signals: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.passages

    def as_context(self) -> list[dict[str, Any]]:
        """Plain structured passages for the persona prompt assembler."""
        return [
            {
                "source": p.source,
                "chapter": p.chapter,
                "content": p.content,
                "content_type": p.content_type,
                "themes": p.themes,
                "score": round(p.score, 4),
            }
            for p in self.passages
        ]
