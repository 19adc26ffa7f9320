"""Configuration management for the dream knowledge engine."""

from dataclasses import dataclass, field
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    # Environment variables should be set directly
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # OpenAI configuration (required)
    OPENAI_API_KEY: str = Field(..., description="OpenAI API key")

    # Environment
    DREAM_RAG_ENV: str = Field(default="dev", description="Environment: dev, test, staging, prod")

    # Embedding configuration
    EMBEDDING_MODEL: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )
    EMBEDDING_DIM: int = Field(default=1536, description="Embedding vector dimension")
    EMBEDDING_TIMEOUT_SECONDS: float = Field(
        default=30.0, description="Timeout for a single embedding request"
    )
    EMBEDDING_MAX_ATTEMPTS: int = Field(
        default=3, ge=1, description="Attempts per embedding call before giving up"
    )
    EMBEDDING_BACKOFF_SECONDS: float = Field(
        default=1.0, description="Initial retry delay, doubled on each attempt"
    )
    EMBEDDING_BATCH_SIZE: int = Field(default=16, ge=1, description="Texts per embedding request")

    # Ingestion
    INGEST_CONCURRENCY: int = Field(
        default=4, ge=1, le=10, description="Max in-flight classify/embed calls during ingestion"
    )
    STORE_WRITE_ATTEMPTS: int = Field(
        default=2, ge=1, description="Attempts per batch insert (initial write plus one retry)"
    )
    STORE_BACKOFF_SECONDS: float = Field(
        default=1.0, description="Initial delay before retrying a store call, doubled per attempt"
    )
    STORE_READ_ATTEMPTS: int = Field(
        default=3, ge=1, description="Attempts per store read before it counts as failed"
    )
    STORE_TIMEOUT_SECONDS: float = Field(
        default=10.0, description="PostgREST request timeout for knowledge store calls"
    )

    # Classification
    THEORETICAL_CONFIDENCE_DISCOUNT: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Multiplier applied to theme confidence for theoretical passages",
    )
    THEMES_PATH: str | None = Field(
        default=None, description="Override path to the theme vocabulary JSON asset"
    )

    # Retrieval
    HYBRID_ENABLED: bool = Field(default=True, description="Blend BM25 scores into ranking")
    SEMANTIC_WEIGHT: float = Field(default=0.6, description="Weight of dense similarity")
    LEXICAL_WEIGHT: float = Field(default=0.4, description="Weight of BM25 lexical score")
    SEARCH_CANDIDATE_MULTIPLIER: int = Field(
        default=3, ge=2, le=4, description="Candidates fetched per requested result"
    )
    MIN_RESULTS_BEFORE_BROADEN: int = Field(
        default=3, description="Broaden a narrowed filter when fewer results survive"
    )
    MIN_PASSAGE_SCORE: float = Field(
        default=0.2,
        description="Quality floor on a passage's own similarity (BM25 score when lexical-only)",
    )
    SESSION_TRACKER_MAX: int = Field(default=50, description="Tracked ids before eviction")
    SESSION_TRACKER_KEEP: int = Field(default=30, description="Tracked ids kept after eviction")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance loaded from environment
    """
    return Settings()


# =============================================================================
# Persona profiles
# =============================================================================


@dataclass(frozen=True)
class PersonaProfile:
    """Chunking and retrieval defaults for one interpreter corpus."""

    persona: str
    chunk_target: int = 1000
    chunk_overlap: int = 200
    chunk_max: int = 1500
    chunk_min: int = 300
    batch_size: int = 8
    similarity_threshold: float = 0.7
    max_results: int = 5
    # Narrowed metadata filter and the superset it broadens to
    default_filter: dict | None = None
    broadened_filter: dict | None = None
    boost_subtopics: tuple[str, ...] = field(default_factory=tuple)


DEFAULT_PROFILE = PersonaProfile(persona="default")

PERSONA_PROFILES: dict[str, PersonaProfile] = {
    "jung": PersonaProfile(
        persona="jung",
        chunk_target=1000,
        chunk_overlap=200,
        chunk_min=300,
        batch_size=10,
        similarity_threshold=0.65,
    ),
    "freud": PersonaProfile(
        persona="freud",
        chunk_target=1200,
        chunk_overlap=250,
        chunk_min=400,
        batch_size=5,
        similarity_threshold=0.65,
        default_filter={"field": "topic", "values": ["dream"]},
        broadened_filter={
            "field": "topic",
            "values": ["dream", "metapsychology", "case_study", "ancillary"],
        },
        boost_subtopics=("trauma", "anxiety", "libido", "oedipus", "wish_fulfillment"),
    ),
    "mary": PersonaProfile(
        persona="mary",
        chunk_target=1000,
        chunk_overlap=150,
        chunk_min=300,
        batch_size=8,
        similarity_threshold=0.65,
    ),
    "lakshmi": PersonaProfile(
        persona="lakshmi",
        chunk_target=900,
        chunk_overlap=200,
        chunk_min=250,
        batch_size=8,
        similarity_threshold=0.6,
    ),
}


def get_persona_profile(persona: str | None) -> PersonaProfile:
    """Return the profile for a persona, or the default profile if unknown."""
    if not persona:
        return DEFAULT_PROFILE
    return PERSONA_PROFILES.get(persona.lower(), DEFAULT_PROFILE)
