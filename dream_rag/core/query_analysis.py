"""Lightweight query theme pre-analysis.

Regex rules per persona guess the topical focus of a dream narrative and turn
it into a boost list, an adjusted result count and (for freud) a narrowed
metadata filter. Rules are evaluated in order and the first match wins. No
match means the persona default, never an error.
"""

import re
from dataclasses import dataclass, field

from dream_rag.core.config import get_persona_profile
from dream_rag.core.logging import get_logger
from dream_rag.core.schemas_knowledge import MetadataFilter
from dream_rag.core.theme_concepts import (
    ANIMA_ANIMUS,
    COLLECTIVE_UNCONSCIOUS,
    SELF,
    SHADOW,
    themes_for_concept,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class QueryRule:
    """One ordered pre-analysis rule."""

    name: str
    pattern: re.Pattern
    boost_themes: tuple[str, ...]
    max_results: int
    topics: tuple[str, ...] = ()  # narrowed topic filter, empty for none


@dataclass
class QueryAnalysis:
    """Outcome of pre-analysing one query."""

    boost_themes: list[str] = field(default_factory=list)
    max_results: int = 5
    matched_rules: list[str] = field(default_factory=list)
    metadata_filter: MetadataFilter | None = None


def _rule(name, pattern, boost, max_results, topics=()) -> QueryRule:
    return QueryRule(name, re.compile(pattern, re.I), tuple(boost), max_results, tuple(topics))


QUERY_RULES: dict[str, list[QueryRule]] = {
    "mary": [
        _rule(
            "memory",
            r"memory|remember|forget|learning|study|exam|school",
            ["memory", "consolidation", "hippocampus", "learning"],
            10,
        ),
        _rule(
            "fear",
            r"fear|anxiety|stress|trauma|nightmare|threat",
            ["emotion", "amygdala", "threat", "stress", "cortisol"],
            10,
        ),
        _rule(
            "sleep",
            r"insomnia|tired|exhausted|can't sleep|wake up",
            ["sleep_disorders", "circadian", "sleep_quality", "insomnia"],
            10,
        ),
        _rule(
            "lucid",
            r"lucid|vivid|aware|control|flying|realized.*dreaming",
            ["lucid", "consciousness", "awareness", "control"],
            8,
        ),
        _rule(
            "creative",
            r"creative|solve|solution|idea|invention|discovery",
            ["creativity", "problem_solving", "insight", "innovation"],
            8,
        ),
    ],
    "freud": [
        _rule(
            "trauma",
            r"trauma|nightmare|repetition|recurring|again and again|death|dying|war|accident",
            ["trauma", "repetition", "death_drive", "anxiety"],
            10,
            ["dream", "metapsychology"],
        ),
        _rule(
            "anxiety",
            r"anxiety|fear|panic|worried|nervous|defense|protect|hide",
            ["anxiety", "defence", "repression"],
            8,
            ["dream", "metapsychology"],
        ),
        _rule(
            "libido",
            r"sexual|erotic|naked|desire|attraction|intimate|bed|touch",
            ["libido", "psychosexual", "wish"],
            8,
            ["dream", "metapsychology"],
        ),
        _rule(
            "family",
            r"mother|father|parent|family|child|brother|sister",
            ["oedipus", "family", "child"],
            10,
            ["dream", "case_study"],
        ),
        _rule(
            "parapraxis",
            r"forget|forgot|slip|mistake|wrong|meant to",
            ["slip", "forgetting"],
            8,
            ["dream", "ancillary"],
        ),
        _rule(
            "symbolism",
            r"symbol|meaning|represent|stands for|disguise",
            ["symbol", "condensation", "displacement"],
            8,
            ["dream"],
        ),
        _rule(
            "authority",
            r"authority|leader|god|religion|culture|society|rules",
            ["authority", "religion", "father"],
            8,
            ["dream", "culture"],
        ),
    ],
    "jung": [
        _rule(
            "shadow",
            r"shadow|chased|chasing|dark figure|intruder|monster|enemy",
            ["shadow", *themes_for_concept(SHADOW)],
            7,
        ),
        _rule(
            "anima",
            r"unknown (?:woman|man)|mysterious (?:woman|man)|lover|bride|goddess",
            ["stranger", *themes_for_concept(ANIMA_ANIMUS)],
            7,
        ),
        _rule(
            "depths",
            r"ocean|sea|water|drown|flood|underwater|beach",
            ["water", *themes_for_concept(COLLECTIVE_UNCONSCIOUS)],
            7,
        ),
        _rule(
            "self",
            r"mandala|circle|center|centre|house|maze|labyrinth|mountain",
            themes_for_concept(SELF),
            7,
        ),
    ],
}

DEFAULT_BOOSTS: dict[str, tuple[str, ...]] = {
    "mary": ("rem", "neural_activity", "brain_networks", "dream_generation"),
}
DEFAULT_MAX_RESULTS: dict[str, int] = {"mary": 6}

CONTEXT_TERMS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"memory|remember|forget", re.I), "memory consolidation"),
    (re.compile(r"fear|anxiety|threat", re.I), "emotional processing"),
    (re.compile(r"creative|solve|idea", re.I), "creative problem solving"),
    (re.compile(r"lucid|aware|control", re.I), "conscious awareness"),
]


def _dedupe(items) -> list[str]:
    return list(dict.fromkeys(items))


def analyze_query(text: str, persona: str) -> QueryAnalysis:
    """
    Guess topical focus for a query.

    Args:
        text: Dream narrative or free-text query
        persona: Persona/corpus identifier

    Returns:
        QueryAnalysis with boost themes, result count and optional narrowed filter
    """
    profile = get_persona_profile(persona)

    for rule in QUERY_RULES.get(persona, []):
        if rule.pattern.search(text):
            metadata_filter = (
                MetadataFilter(field="topic", values=list(rule.topics)) if rule.topics else None
            )
            logger.debug(f"Query rule matched: {persona}/{rule.name}")
            return QueryAnalysis(
                boost_themes=_dedupe(rule.boost_themes),
                max_results=rule.max_results,
                matched_rules=[rule.name],
                metadata_filter=metadata_filter,
            )

    default_filter = (
        MetadataFilter(**profile.default_filter) if profile.default_filter else None
    )
    return QueryAnalysis(
        boost_themes=list(DEFAULT_BOOSTS.get(persona, ())),
        max_results=DEFAULT_MAX_RESULTS.get(persona, profile.max_results),
        matched_rules=[],
        metadata_filter=default_filter,
    )


def build_search_query(
    text: str, emotions: list[str] | None = None, extra_terms: list[str] | None = None
) -> str:
    """Append context terms that help embedding-based matching."""
    elements = [text.strip()]
    if emotions:
        elements.append(f"emotional state: {', '.join(emotions)}")

    themes = [term for pattern, term in CONTEXT_TERMS if pattern.search(text)]
    if extra_terms:
        themes.extend(extra_terms)
    if themes:
        elements.append(f"themes: {', '.join(_dedupe(themes))}")

    return " ".join(elements)
