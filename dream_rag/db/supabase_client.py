"""Shared Supabase client for the knowledge base tables."""

from functools import lru_cache

from supabase import Client, ClientOptions, create_client

from dream_rag.core.config import get_settings
from dream_rag.core.exceptions import DreamRagError


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """Create the service-role client once per process.

    PostgREST calls time out after ``STORE_TIMEOUT_SECONDS``.

    Raises:
        DreamRagError: credentials are missing or the URL is malformed
    """
    settings = get_settings()
    options = ClientOptions(postgrest_client_timeout=settings.STORE_TIMEOUT_SECONDS)
    try:
        return create_client(
            settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY, options=options
        )
    except Exception as e:
        raise DreamRagError(
            "Could not create Supabase client", url=settings.SUPABASE_URL
        ) from e
