"""Pytest configuration and fixtures."""

import os

import pytest


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["SUPABASE_URL"] = "https://test.supabase.co"
    os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-key"
    os.environ["OPENAI_API_KEY"] = "test-openai-key"
    os.environ["DREAM_RAG_ENV"] = "test"


@pytest.fixture
def settings():
    """Settings with test defaults and no retry delays."""
    from dream_rag.core.config import Settings

    return Settings(EMBEDDING_BACKOFF_SECONDS=0.0, STORE_BACKOFF_SECONDS=0.0)
