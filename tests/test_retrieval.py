"""Tests for hybrid retrieval, ranking and anti-repetition."""

import pytest

from dream_rag.core.retrieval import (
    THEME_BOOST_CAP,
    THEME_BOOST_STEP,
    RetrievalEngine,
    candidate_themes,
    ranking_key,
    theme_boost,
)
from dream_rag.core.schemas_knowledge import MetadataFilter, RetrievalQuery, ScoredPassage
from dream_rag.core.session import RepetitionTracker
from dream_rag.core.vocabulary import ThemeVocabulary, load_themes
from tests.fakes.fake_store import FakeKnowledgeStore, HashingEmbedder

FLIGHT = "I was flying high above the clouds like a bird, soaring across the city"
GROCERY = "Buy milk, eggs, bread and butter from the grocery store"


@pytest.fixture
def store():
    return FakeKnowledgeStore()


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def engine(store, embedder, settings):
    return RetrievalEngine(
        store, embedder, settings=settings, vocabulary=ThemeVocabulary(load_themes())
    )


def _add(store, embedder, content, **kwargs):
    return store.add(content, embedder.embed(content), **kwargs)


def _query(text, persona="jung", **kwargs):
    kwargs.setdefault("similarity_threshold", 0.0)
    return RetrievalQuery(text=text, persona=persona, **kwargs)


# =============================================================================
# Ranking
# =============================================================================


@pytest.mark.asyncio
async def test_relevant_passage_ranks_first(engine, store, embedder, settings):
    settings.MIN_PASSAGE_SCORE = 0.0
    grocery_id = _add(store, embedder, GROCERY)
    flight_id = _add(
        store, embedder, "Flying over the mountains I felt free, a transcendence beyond the body"
    )

    result = await engine.retrieve(_query("flying over mountains feeling free"))

    ids = [p.chunk_id for p in result.passages]
    assert ids == [flight_id, grocery_id]
    flight, grocery = result.passages
    assert flight.score > grocery.score
    assert flight.lexical_score == 1.0
    assert grocery.lexical_score == 0.0
    assert result.degraded_signals == []


@pytest.mark.asyncio
async def test_quality_floor_drops_weak_candidates(engine, store, embedder, settings):
    settings.MIN_PASSAGE_SCORE = 0.3
    _add(store, embedder, GROCERY)
    flight_id = _add(store, embedder, FLIGHT)

    result = await engine.retrieve(_query("flying above the clouds"))

    assert [p.chunk_id for p in result.passages] == [flight_id]


@pytest.mark.asyncio
async def test_blended_score_components(engine, store, embedder, settings):
    settings.MIN_PASSAGE_SCORE = 0.0
    _add(store, embedder, FLIGHT)

    result = await engine.retrieve(_query("flying above the clouds"))
    passage = result.passages[0]

    assert passage.score == pytest.approx(
        0.6 * passage.semantic_score + 0.4 * passage.lexical_score, abs=1e-5
    )


@pytest.mark.asyncio
async def test_hybrid_disabled_uses_similarity_only(engine, store, embedder, settings):
    settings.MIN_PASSAGE_SCORE = 0.0
    _add(store, embedder, FLIGHT)

    result = await engine.retrieve(_query("flying above the clouds", hybrid=False))
    passage = result.passages[0]

    assert passage.lexical_score == 0.0
    assert passage.score == pytest.approx(passage.semantic_score, abs=1e-6)


@pytest.mark.asyncio
async def test_content_type_multiplier(engine, store, embedder, settings):
    settings.MIN_PASSAGE_SCORE = 0.0
    general_id = _add(store, embedder, FLIGHT, content_type="general")
    dream_id = _add(store, embedder, FLIGHT, content_type="dream_example")

    result = await engine.retrieve(_query("flying above the clouds"))
    scores = {p.chunk_id: p.score for p in result.passages}

    assert result.passages[0].chunk_id == dream_id
    assert scores[dream_id] == pytest.approx(scores[general_id] * 1.1, rel=1e-4)


@pytest.mark.asyncio
async def test_theme_boost_reorders_equal_candidates(engine, store, embedder, settings):
    settings.MIN_PASSAGE_SCORE = 0.0
    text = "A dark figure followed me down the corridor"
    plain_id = _add(store, embedder, text)
    tagged_id = _add(store, embedder, text, metadata={"themes": ["shadow"]})

    result = await engine.retrieve(_query("A dark figure chased me"))

    assert "shadow" in result.boost_themes
    first, second = result.passages
    assert first.chunk_id == tagged_id
    assert second.chunk_id == plain_id
    assert first.matched_themes == ["shadow"]
    assert first.boost_score == pytest.approx(THEME_BOOST_STEP)
    assert first.score - second.score == pytest.approx(THEME_BOOST_STEP, abs=1e-5)


@pytest.mark.asyncio
async def test_equal_scores_break_ties_by_lower_id(engine, store, embedder, settings):
    settings.MIN_PASSAGE_SCORE = 0.0
    ids = [_add(store, embedder, FLIGHT) for _ in range(3)]

    result = await engine.retrieve(_query("flying above the clouds"))

    assert [p.chunk_id for p in result.passages] == ids


@pytest.mark.asyncio
async def test_other_personas_excluded(engine, store, embedder, settings):
    settings.MIN_PASSAGE_SCORE = 0.0
    _add(store, embedder, FLIGHT, persona="freud")
    jung_id = _add(store, embedder, FLIGHT, persona="jung")

    result = await engine.retrieve(_query("flying above the clouds"))

    assert [p.chunk_id for p in result.passages] == [jung_id]


@pytest.mark.asyncio
async def test_raising_threshold_never_adds_passages(engine, store, embedder):
    for content in (
        "serpent river moon",
        "serpent river stone",
        "serpent glass stone",
        "paper glass stone",
    ):
        _add(store, embedder, content)

    previous = None
    for threshold in (0.0, 0.3, 0.5, 0.7, 0.95):
        result = await engine.retrieve(
            _query("serpent river moon", similarity_threshold=threshold, max_results=10)
        )
        ids = {p.chunk_id for p in result.passages}
        if previous is not None:
            assert ids <= previous
        previous = ids

    assert previous == {1}


@pytest.mark.asyncio
async def test_quality_floor_ignores_candidate_set(engine, store, embedder, settings):
    # Row 1 is the best lexical match and the weakest semantic one
    settings.MIN_PASSAGE_SCORE = 0.2
    store.add("serpent river moon tower", embedder.embed("x"), similarity=0.24)
    for _ in range(3):
        store.add("serpent glass stone", embedder.embed("y"), similarity=0.25)

    results = {}
    for threshold in (0.0, 0.2, 0.245, 0.26):
        result = await engine.retrieve(
            _query("serpent river moon tower", similarity_threshold=threshold, max_results=10)
        )
        results[threshold] = {p.chunk_id for p in result.passages}

    assert results[0.2] == {1, 2, 3, 4}
    assert results[0.245] == {2, 3, 4}
    assert results[0.26] == set()
    sizes = [len(results[t]) for t in (0.0, 0.2, 0.245, 0.26)]
    assert sizes == sorted(sizes, reverse=True)


@pytest.mark.asyncio
async def test_max_results_truncates(engine, store, embedder, settings):
    settings.MIN_PASSAGE_SCORE = 0.0
    for _ in range(6):
        _add(store, embedder, FLIGHT)

    result = await engine.retrieve(_query("flying above the clouds", max_results=2))

    assert len(result.passages) == 2


# =============================================================================
# Anti-repetition
# =============================================================================


@pytest.mark.asyncio
async def test_consecutive_queries_return_disjoint_passages(engine, store, embedder, settings):
    settings.MIN_PASSAGE_SCORE = 0.0
    for i in range(10):
        _add(store, embedder, f"Flying dream above the clouds, part {i}.")
    tracker = RepetitionTracker(max_size=50, keep=30)
    query = _query("flying above the clouds", max_results=3)

    first = await engine.retrieve(query, tracker)
    second = await engine.retrieve(query, tracker)

    first_ids = {p.chunk_id for p in first.passages}
    second_ids = {p.chunk_id for p in second.passages}
    assert len(first_ids) == 3
    assert len(second_ids) == 3
    assert first_ids.isdisjoint(second_ids)
    assert len(tracker) == 6


@pytest.mark.asyncio
async def test_without_tracker_results_repeat(engine, store, embedder, settings):
    settings.MIN_PASSAGE_SCORE = 0.0
    for _ in range(4):
        _add(store, embedder, FLIGHT)
    query = _query("flying above the clouds", max_results=2)

    first = await engine.retrieve(query)
    second = await engine.retrieve(query)

    assert [p.chunk_id for p in first.passages] == [p.chunk_id for p in second.passages]


# =============================================================================
# Filters and broadening
# =============================================================================


@pytest.mark.asyncio
async def test_narrowed_filter_broadens_once(engine, store, embedder, settings):
    settings.MIN_PASSAGE_SCORE = 0.0
    text = "A recurring nightmare of the war returns every night"
    dream_id = _add(store, embedder, text, persona="freud", metadata={"topic": "dream"})
    case_ids = [
        _add(store, embedder, text, persona="freud", metadata={"topic": "case_study"})
        for _ in range(2)
    ]
    _add(store, embedder, text, persona="freud", metadata={"topic": "culture"})

    result = await engine.retrieve(_query("A recurring nightmare", persona="freud"))

    assert result.broadened is True
    assert {p.chunk_id for p in result.passages} == {dream_id, *case_ids}


@pytest.mark.asyncio
async def test_no_broadening_when_enough_results(engine, store, embedder, settings):
    settings.MIN_PASSAGE_SCORE = 0.0
    text = "A recurring nightmare of the war returns every night"
    dream_ids = [
        _add(store, embedder, text, persona="freud", metadata={"topic": "dream"})
        for _ in range(3)
    ]
    _add(store, embedder, text, persona="freud", metadata={"topic": "case_study"})

    result = await engine.retrieve(_query("A recurring nightmare", persona="freud"))

    assert result.broadened is False
    assert [p.chunk_id for p in result.passages] == dream_ids


@pytest.mark.asyncio
async def test_explicit_filter_without_superset_drops_filter(engine, store, embedder, settings):
    settings.MIN_PASSAGE_SCORE = 0.0
    matching = _add(store, embedder, FLIGHT, metadata={"topic": "flight"})
    others = [_add(store, embedder, FLIGHT, metadata={"topic": "other"}) for _ in range(2)]

    result = await engine.retrieve(
        _query(
            "flying above the clouds",
            metadata_filter=MetadataFilter(field="topic", values=["flight"]),
        )
    )

    assert result.broadened is True
    assert {p.chunk_id for p in result.passages} == {matching, *others}


# =============================================================================
# Degradation
# =============================================================================


@pytest.mark.asyncio
async def test_embedding_failure_without_lexical_match_is_empty(store, settings):
    failing = HashingEmbedder(fail=True)
    store.add("Buy milk and eggs", HashingEmbedder().embed("Buy milk and eggs"))
    engine = RetrievalEngine(store, failing, settings=settings)

    result = await engine.retrieve(_query("flying above the clouds"))

    assert result.is_empty
    assert "embedding" in result.degraded_signals


@pytest.mark.asyncio
async def test_embedding_failure_falls_back_to_lexical(store, settings):
    content = "Flying above the clouds at dawn"
    chunk_id = store.add(content, HashingEmbedder().embed(content))
    engine = RetrievalEngine(store, HashingEmbedder(fail=True), settings=settings)

    result = await engine.retrieve(_query("flying above the clouds"))

    assert [p.chunk_id for p in result.passages] == [chunk_id]
    assert result.passages[0].semantic_score == 0.0
    assert result.passages[0].lexical_score == 1.0
    assert result.degraded_signals == ["embedding"]


@pytest.mark.asyncio
async def test_store_failure_yields_empty_result(engine, store, embedder):
    _add(store, embedder, FLIGHT)
    store.fail_reads = True

    result = await engine.retrieve(_query("flying above the clouds"))

    assert result.is_empty
    assert result.degraded_signals == ["store"]


@pytest.mark.asyncio
async def test_embedding_and_store_failure_is_empty(store, settings):
    store.fail_reads = True
    engine = RetrievalEngine(store, HashingEmbedder(fail=True), settings=settings)

    result = await engine.retrieve(_query("flying above the clouds"))

    assert result.is_empty
    assert result.degraded_signals == ["embedding", "store"]


@pytest.mark.asyncio
async def test_blank_query_skips_embedding(engine, embedder):
    result = await engine.retrieve(_query("   "))

    assert result.is_empty
    assert embedder.calls == 0


# =============================================================================
# Theme search
# =============================================================================


@pytest.mark.asyncio
async def test_retrieve_themes_drops_unknown_codes(engine, store, embedder):
    store.themes = {
        "shadow": embedder.embed("shadow figure dark"),
        "invented_code": embedder.embed("shadow"),
    }

    themes = await engine.retrieve_themes("a dark shadow figure", threshold=0.3)

    assert [t["code"] for t in themes] == ["shadow"]
    assert themes[0]["similarity"] == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_retrieve_themes_failure_returns_empty(engine, store):
    store.fail_reads = True
    assert await engine.retrieve_themes("anything") == []


# =============================================================================
# Helpers
# =============================================================================


def test_theme_boost_is_capped():
    row = {"metadata": {"themes": ["shadow", "being_chased", "stranger", "betrayal"]}}
    boost, matched = theme_boost(row, ["shadow", "being_chased", "stranger", "betrayal"])

    assert boost == THEME_BOOST_CAP
    assert len(matched) == 4
    assert theme_boost(row, []) == (0.0, [])


def test_candidate_themes_include_subtopic():
    row = {"metadata": {"themes": ["water"], "subtopic": "trauma"}}
    assert candidate_themes(row) == {"water", "trauma"}
    assert candidate_themes({"themes": ["ocean"]}) == {"ocean"}
    assert candidate_themes({}) == set()


def test_ranking_key_orders_numeric_ids_numerically():
    passages = [
        ScoredPassage(chunk_id=10, content="a", score=0.5, semantic_score=0.4),
        ScoredPassage(chunk_id=9, content="b", score=0.5, semantic_score=0.4),
        ScoredPassage(chunk_id=11, content="c", score=0.5, semantic_score=0.45),
        ScoredPassage(chunk_id=12, content="d", score=0.6, semantic_score=0.1),
    ]
    ordered = sorted(passages, key=ranking_key)
    assert [p.chunk_id for p in ordered] == [12, 11, 9, 10]


@pytest.mark.asyncio
async def test_as_context_shape(engine, store, embedder, settings):
    settings.MIN_PASSAGE_SCORE = 0.0
    _add(
        store,
        embedder,
        FLIGHT,
        source="dreams.txt",
        content_type="dream_example",
        metadata={"themes": ["flying"]},
    )

    result = await engine.retrieve(_query("flying above the clouds"))
    context = result.as_context()

    assert context == [
        {
            "source": "dreams.txt",
            "chapter": None,
            "content": FLIGHT,
            "content_type": "dream_example",
            "themes": ["flying"],
            "score": round(result.passages[0].score, 4),
        }
    ]
