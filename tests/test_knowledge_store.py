"""Tests for the Supabase knowledge store with a mocked client."""

from unittest.mock import MagicMock, patch

import pytest

from dream_rag.core.exceptions import StoreReadFailure, StoreWriteFailure
from dream_rag.core.schemas_knowledge import (
    ChunkClassification,
    ClassificationConfidence,
    MetadataFilter,
    Theme,
)
from dream_rag.db.knowledge_store import (
    KNOWLEDGE_TABLE,
    SupabaseKnowledgeStore,
    _parse_vector,
    apply_classification,
)


def _response(data):
    response = MagicMock()
    response.data = data
    return response


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def store(client, settings):
    return SupabaseKnowledgeStore(client=client, settings=settings)


# =============================================================================
# Writes
# =============================================================================


def test_insert_chunks_single_statement(store, client):
    records = [{"source": "dreams.txt", "content": "a"}, {"source": "dreams.txt", "content": "b"}]
    client.table.return_value.insert.return_value.execute.return_value = _response(
        [{"id": 1}, {"id": 2}]
    )

    inserted = store.insert_chunks(records)

    assert inserted == [{"id": 1}, {"id": 2}]
    client.table.assert_called_with(KNOWLEDGE_TABLE)
    client.table.return_value.insert.assert_called_once_with(records)


def test_insert_chunks_empty_batch(store, client):
    assert store.insert_chunks([]) == []
    client.table.assert_not_called()


def test_insert_chunks_rejected(store, client):
    client.table.return_value.insert.return_value.execute.side_effect = Exception("timeout")

    with pytest.raises(StoreWriteFailure, match="Batch insert rejected") as exc_info:
        store.insert_chunks([{"source": "dreams.txt", "content": "a"}])

    assert exc_info.value.context == {"source": "dreams.txt", "count": 1}


def test_insert_chunks_no_data(store, client):
    client.table.return_value.insert.return_value.execute.return_value = _response([])

    with pytest.raises(StoreWriteFailure, match="No data returned"):
        store.insert_chunks([{"source": "dreams.txt", "content": "a"}])


def test_upsert_themes(store, client):
    client.table.return_value.upsert.return_value.execute.return_value = _response([{}, {}])

    count = store.upsert_themes(
        [Theme(code="water", label="Water"), Theme(code="ocean", label="Ocean")]
    )

    assert count == 2
    client.table.return_value.upsert.assert_called_once()
    assert client.table.return_value.upsert.call_args.kwargs["on_conflict"] == "code"


def test_update_classification_appends_history(store, client):
    chain = client.table.return_value
    chain.select.return_value.eq.return_value.single.return_value.execute.return_value = (
        _response(
            {
                "id": 7,
                "content_type": "general",
                "metadata": {"themes": ["water"], "content_hash": "abc"},
            }
        )
    )
    chain.update.return_value.eq.return_value.execute.return_value = _response([{"id": 7}])
    classification = ChunkClassification(primary_type="symbol", applicable_themes=["ocean"])

    store.update_classification(7, classification)

    payload = chain.update.call_args.args[0]
    assert payload["content_type"] == "symbol"
    assert payload["metadata"]["themes"] == ["ocean"]
    assert payload["metadata"]["content_hash"] == "abc"
    history = payload["metadata"]["classification_history"]
    assert history[0]["content_type"] == "general"
    assert history[0]["themes"] == ["water"]


def test_update_classification_missing_row(store, client):
    chain = client.table.return_value
    chain.select.return_value.eq.return_value.single.return_value.execute.return_value = (
        _response(None)
    )

    with pytest.raises(StoreReadFailure, match="Chunk not found"):
        store.update_classification(99, ChunkClassification())


def test_delete_source(store, client):
    chain = client.table.return_value.delete.return_value.eq.return_value.eq.return_value
    chain.execute.return_value = _response([{"id": 1}, {"id": 2}, {"id": 3}])

    assert store.delete_source("jung", "dreams.txt") == 3


# =============================================================================
# Reads
# =============================================================================


def test_similarity_search_calls_rpc(store, client):
    client.rpc.return_value.execute.return_value = _response(
        [{"id": 1, "similarity": 0.9}, {"id": 2, "similarity": 0.8}]
    )

    rows = store.similarity_search([0.1] * 4, "jung", 0.65, 5)

    assert [row["id"] for row in rows] == [1, 2]
    name, params = client.rpc.call_args.args
    assert name == "search_knowledge"
    assert params == {
        "query_embedding": [0.1] * 4,
        "target_interpreter": "jung",
        "similarity_threshold": 0.65,
        "max_results": 5,
        "metadata_filter": None,
    }


def test_similarity_search_sends_filter_to_rpc(store, client):
    client.rpc.return_value.execute.return_value = _response(
        [{"id": 1, "metadata": {"topic": "dream"}}, {"id": 3, "metadata": {"topic": "dream"}}]
    )
    metadata_filter = MetadataFilter(field="topic", values=["dream"])

    rows = store.similarity_search([0.1], "freud", 0.5, 2, metadata_filter)

    assert [row["id"] for row in rows] == [1, 3]
    params = client.rpc.call_args.args[1]
    assert params["max_results"] == 2
    assert params["metadata_filter"] == {"field": "topic", "values": ["dream"]}


def test_similarity_search_retries_transient_failure(store, client):
    client.rpc.return_value.execute.side_effect = [
        Exception("connection reset"),
        _response([{"id": 1, "similarity": 0.9}]),
    ]

    rows = store.similarity_search([0.1], "jung", 0.5, 5)

    assert [row["id"] for row in rows] == [1]
    assert client.rpc.return_value.execute.call_count == 2


def test_similarity_search_failure(store, client, settings):
    client.rpc.return_value.execute.side_effect = Exception("connection reset")

    with pytest.raises(StoreReadFailure, match="search_knowledge failed"):
        store.similarity_search([0.1], "jung", 0.5, 5)

    assert client.rpc.return_value.execute.call_count == settings.STORE_READ_ATTEMPTS


def test_read_retry_backs_off_exponentially(client, settings):
    store = SupabaseKnowledgeStore(
        client=client, settings=settings.model_copy(update={"STORE_BACKOFF_SECONDS": 0.5})
    )
    client.rpc.return_value.execute.side_effect = Exception("timeout")

    with patch("dream_rag.db.knowledge_store.time.sleep") as mock_sleep:
        with pytest.raises(StoreReadFailure):
            store.search_themes([0.1], 0.5, 3)

    assert [c.args[0] for c in mock_sleep.call_args_list] == [0.5, 1.0]


def test_get_theme_embedding_retries_then_succeeds(store, client):
    chain = client.table.return_value.select.return_value.eq.return_value.limit.return_value
    chain.execute.side_effect = [Exception("timeout"), _response([{"embedding": [0.5]}])]

    assert store.get_theme_embedding("water") == [0.5]


def test_get_theme_embedding_parses_pgvector_string(store, client):
    chain = client.table.return_value.select.return_value.eq.return_value.limit.return_value
    chain.execute.return_value = _response([{"embedding": "[0.5,0.25]"}])

    assert store.get_theme_embedding("water") == [0.5, 0.25]


def test_get_theme_embedding_missing(store, client):
    chain = client.table.return_value.select.return_value.eq.return_value.limit.return_value
    chain.execute.return_value = _response([])

    assert store.get_theme_embedding("water") is None


def test_existing_hashes(store, client):
    chain = client.table.return_value.select.return_value.eq.return_value.eq.return_value
    chain.execute.return_value = _response(
        [{"content_hash": "a"}, {"content_hash": None}, {"content_hash": "b"}]
    )

    assert store.existing_hashes("jung", "dreams.txt") == {"a", "b"}
    client.table.return_value.select.assert_called_with("metadata->>content_hash")


def test_text_search_uses_websearch(store, client):
    chain = client.table.return_value.select.return_value.eq.return_value
    chain.text_search.return_value.limit.return_value.execute.return_value = _response(
        [{"id": 1, "content": "flying"}]
    )

    rows = store.text_search("jung", "flying dream", 9)

    assert rows == [{"id": 1, "content": "flying"}]
    chain.text_search.assert_called_once_with(
        "content", "flying dream", options={"type": "websearch", "config": "english"}
    )
    chain.text_search.return_value.limit.assert_called_once_with(9)


def test_stats(store, client):
    chain = client.table.return_value.select.return_value.eq.return_value
    chain.execute.return_value = _response(
        [
            {"source": "a.txt", "content_type": "theory"},
            {"source": "a.txt", "content_type": "symbol"},
            {"source": "b.txt", "content_type": "theory"},
        ]
    )

    assert store.stats("jung") == {
        "persona": "jung",
        "total_chunks": 3,
        "sources": 2,
        "content_types": {"theory": 2, "symbol": 1},
    }


def test_client_created_lazily():
    with patch("dream_rag.db.knowledge_store.get_supabase") as mock_get_supabase:
        store = SupabaseKnowledgeStore()
        mock_get_supabase.assert_not_called()

        assert store.client is mock_get_supabase.return_value
        mock_get_supabase.assert_called_once()


# =============================================================================
# Helpers
# =============================================================================


def test_parse_vector():
    assert _parse_vector(None) is None
    assert _parse_vector("[1, 2]") == [1.0, 2.0]
    assert _parse_vector([3, 4]) == [3.0, 4.0]


def test_apply_classification_does_not_mutate_row():
    row = {"content_type": "general", "metadata": {"themes": []}}
    update = apply_classification(
        row,
        ChunkClassification(
            primary_type="theory",
            confidence=ClassificationConfidence(content_type=0.8, themes=0.2, overall=0.5),
        ),
    )

    assert row["metadata"] == {"themes": []}
    assert update["metadata"]["confidence"]["overall"] == 0.5
    assert len(update["metadata"]["classification_history"]) == 1


def test_supabase_client_sets_request_timeout():
    from dream_rag.db import supabase_client

    supabase_client.get_supabase.cache_clear()
    try:
        with patch("dream_rag.db.supabase_client.create_client") as mock_create:
            supabase_client.get_supabase()
    finally:
        supabase_client.get_supabase.cache_clear()

    options = mock_create.call_args.kwargs["options"]
    assert options.postgrest_client_timeout == 10.0
