"""Baseline content-type classifier.

Scores a passage against fixed regex pattern lists for each kind of writing
(theory, case study, dream narrative, ...), applies a few contextual boosts,
and derives a confidence from how dominant the winning type is. Also tags
broad topics and special-content flags. The knowledge classifier refines the
content type produced here.
"""

import re
from dataclasses import dataclass, field

from dream_rag.core.schemas_knowledge import ContentType

CONTENT_PATTERNS: dict[str, list[str]] = {
    ContentType.THEORY: [
        r"theoretical framework", r"hypothesis", r"principle of", r"concept of",
        r"theory suggests", r"according to (?:the )?theory", r"fundamental principle",
        r"theoretical basis", r"conceptual framework", r"psychodynamic",
        r"cognitive model", r"neurobiological", r"phenomenological",
    ],
    ContentType.SYMBOL: [
        r"symbol(?:izes?|ic|ism|ically)", r"\brepresents?\b", r"archetype", r"meaning of",
        r"signifies?", r"stands for", r"symbolic meaning", r"interpretation of",
        r"metaphor", r"allegory", r"embodies", r"personifies", r"manifestation of",
    ],
    ContentType.CASE_STUDY: [
        r"patient", r"case study", r"clinical", r"session", r"therapy", r"treatment",
        r"analy[sz]ed", r"diagnosis", r"case of", r"presented with", r"\bclient",
        r"analysand", r"therapeutic", r"intervention",
    ],
    ContentType.DREAM_EXAMPLE: [
        r"\bdreamt?\b", r"in (?:the|my|her|his) dream", r"dream(?:ed|ing) (?:of|about)",
        r"nightmare", r"had a dream", r"dream content", r"dream report", r"rem sleep",
        r"lucid dream", r"recurring dream", r"vivid dream", r"dream sequence",
        r"dream narrative", r"in this dream",
    ],
    ContentType.TECHNIQUE: [
        r"technique", r"\bmethod\b", r"approach", r"practice", r"exercise", r"procedure",
        r"how to", r"steps to", r"guide to", r"instruction",
    ],
    ContentType.DEFINITION: [
        r"defined? as", r"\bmeaning\b", r"refers? to", r"is called", r"known as",
        r"definition of", r"can be described as", r"is a term", r"denotes",
    ],
    ContentType.BIOGRAPHY: [
        r"was born", r"\blife\b", r"childhood", r"personal", r"biography", r"early years",
        r"grew up", r"background", r"history",
    ],
    ContentType.METHODOLOGY: [
        r"research", r"\bstudy\b", r"experiment", r"\bdata\b", r"findings?", r"\bresults?\b",
        r"analysis", r"methodology", r"scientific", r"empirical",
    ],
    ContentType.PRACTICE: [
        r"meditation", r"visualization", r"breathing", r"ritual", r"ceremony",
        r"spiritual practice", r"yoga", r"mindfulness", r"contemplation", r"prayer",
    ],
}  # fmt: skip

TOPIC_KEYWORDS: dict[str, list[str]] = {
    "archetypes": [
        "archetype", "shadow", "anima", "animus", "self", "persona", "hero", "mother",
        "father", "child", "wise old", "trickster", "maiden", "crone", "warrior", "lover",
        "magician", "king", "queen", "fool", "orphan", "caregiver", "sage", "mentor",
    ],
    "individuation": [
        "individuation", "self-realization", "wholeness", "integration", "transformation",
        "becoming", "personal growth", "inner journey", "self-discovery", "inner work",
    ],
    "unconscious": [
        "unconscious", "subconscious", "repression", "collective unconscious",
        "preconscious", "hidden", "suppressed", "buried", "latent", "depths", "psyche",
    ],
    "psychoanalysis": [
        "psychoanalysis", "freudian", "oedipal", "oedipus", "libido", "ego", "id",
        "superego", "defense mechanism", "repression", "denial", "projection",
        "displacement", "sublimation", "regression", "fixation", "transference",
        "resistance", "catharsis", "pleasure principle", "death drive", "eros",
    ],
    "sexuality": [
        "sexual", "sexuality", "erotic", "libido", "desire", "attraction", "intimate",
        "lust", "seduction", "taboo", "forbidden", "incest", "castration",
    ],
    "dreams": [
        "dream", "nightmare", "rem", "sleep", "lucid", "manifest", "latent", "dream work",
        "condensation", "displacement", "day residue", "wish fulfillment", "hypnagogic",
        "dream recall", "dream journal", "recurring", "prophetic",
    ],
    "common_dream_themes": [
        "falling", "flying", "chase", "chased", "naked", "exposed", "teeth falling",
        "death", "dying", "birth", "pregnancy", "baby", "exam", "unprepared", "late",
        "lost", "trapped", "escape", "drowning", "paralyzed", "running", "hiding",
        "fighting", "war", "accident", "disaster", "apocalypse", "transformation",
    ],
    "symbols": [
        "symbol", "symbolism", "meaning", "interpretation", "image", "metaphor",
        "representation", "sign", "emblem", "allegory", "analogy", "significance",
    ],
    "nature_symbols": [
        "water", "ocean", "sea", "lake", "river", "rain", "flood", "wave", "fire", "flame",
        "sun", "earth", "mountain", "valley", "cave", "forest", "wind", "sky", "storm",
        "tree", "flower", "garden", "desert", "beach", "shore",
    ],
    "animal_symbols": [
        "animal", "creature", "beast", "snake", "serpent", "dragon", "bird", "eagle",
        "owl", "raven", "dove", "butterfly", "wolf", "dog", "cat", "lion", "tiger",
        "bear", "horse", "spider", "fish", "whale",
    ],
    "object_symbols": [
        "house", "home", "room", "door", "window", "wall", "stairs", "bridge", "road",
        "path", "journey", "car", "train", "mirror", "key", "lock", "box", "vessel",
        "sword", "clock", "money", "treasure", "book", "letter", "map", "lamp", "candle",
    ],
    "therapy": [
        "therapy", "analysis", "treatment", "session", "patient", "client", "therapeutic",
        "healing", "cure", "intervention", "breakthrough", "insight", "working through",
    ],
    "neuroscience": [
        "brain", "neural", "cortex", "neuron", "cognitive", "neurological", "synaptic",
        "neurotransmitter", "hippocampus", "amygdala", "thalamus", "prefrontal", "limbic",
        "dopamine", "serotonin", "rem sleep", "sleep cycle", "circadian", "melatonin",
        "eeg", "fmri", "neuroplasticity", "connectivity", "activation", "memory",
    ],
    "spirituality": [
        "spiritual", "meditation", "consciousness", "enlightenment", "awakening",
        "transcendent", "transcendence", "divine", "sacred", "holy", "mystical",
        "numinous", "soul", "spirit", "higher self", "cosmic", "oneness", "bliss",
        "revelation", "kundalini", "chakra", "freedom", "liberation",
    ],
    "spiritual_practices": [
        "yoga", "meditation", "prayer", "mantra", "chanting", "ritual", "ceremony",
        "pilgrimage", "retreat", "contemplation", "mindfulness", "breathing",
        "visualization", "intention",
    ],
    "emotions": [
        "fear", "anxiety", "terror", "panic", "dread", "worry", "stress", "anger", "rage",
        "sadness", "grief", "sorrow", "despair", "joy", "happiness", "love", "shame",
        "guilt", "regret", "jealousy", "longing", "hope", "free", "freedom",
    ],
    "mythology": [
        "myth", "mythology", "legend", "folklore", "fairy tale", "gods", "goddess",
        "heroes", "deity", "underworld", "afterlife", "heaven", "hell", "quest", "grail",
    ],
    "cultural_symbols": [
        "cross", "star", "crescent", "mandala", "lotus", "rose", "crown", "throne",
        "temple", "altar", "labyrinth", "maze", "spiral", "circle", "pyramid", "totem",
    ],
    "relationships": [
        "mother", "father", "parent", "sibling", "family", "lover", "partner", "spouse",
        "marriage", "divorce", "friend", "enemy", "stranger", "ancestor", "teacher",
    ],
    "life_stages": [
        "birth", "infancy", "childhood", "adolescence", "youth", "adulthood", "midlife",
        "old age", "death", "rebirth", "initiation", "rite of passage", "transition",
    ],
}  # fmt: skip

INTERPRETER_TOPICS: dict[str, list[str]] = {
    "jung": [
        "archetypes", "individuation", "unconscious", "symbols",
        "mythology", "dreams", "spirituality", "life_stages",
    ],
    "freud": [
        "psychoanalysis", "sexuality", "unconscious", "dreams",
        "therapy", "emotions", "relationships", "common_dream_themes",
    ],
    "mary": [
        "neuroscience", "dreams", "emotions", "common_dream_themes", "therapy",
    ],
    "lakshmi": [
        "spirituality", "spiritual_practices", "dreams", "symbols",
        "mythology", "cultural_symbols", "life_stages", "emotions",
    ],
}  # fmt: skip

CONTENT_TYPE_DESCRIPTIONS = {
    ContentType.THEORY: "Theoretical concepts and frameworks",
    ContentType.SYMBOL: "Symbolic meanings and interpretations",
    ContentType.CASE_STUDY: "Clinical cases and patient analyses",
    ContentType.DREAM_EXAMPLE: "Dream narratives and examples",
    ContentType.TECHNIQUE: "Methods and therapeutic techniques",
    ContentType.DEFINITION: "Definitions and explanations of terms",
    ContentType.BIOGRAPHY: "Biographical and personal information",
    ContentType.METHODOLOGY: "Research methods and scientific approaches",
    ContentType.PRACTICE: "Spiritual or therapeutic practices",
    ContentType.GENERAL: "General content",
}

_COMPILED_PATTERNS = {
    content_type: [re.compile(p, re.IGNORECASE) for p in patterns]
    for content_type, patterns in CONTENT_PATTERNS.items()
}
_COMPILED_TOPICS = {
    topic: [re.compile(rf"\b{re.escape(k)}\b", re.IGNORECASE) for k in keywords]
    for topic, keywords in TOPIC_KEYWORDS.items()
}

_CASE_MARKERS = re.compile(r"\b(?:patient [a-z]|case \d+|mr\.|mrs\.|miss|ms\.|dr\.)", re.I)
_ACADEMIC_MARKERS = re.compile(
    r"\b(?:furthermore|moreover|consequently|thus|therefore|hypothesis|postulate|paradigm|framework)\b",
    re.I,
)
_INSTRUCTION_MARKERS = re.compile(
    r"\b(?:first|second|then|next|finally|begin by|start with|continue|repeat)\b", re.I
)
_NARRATIVE_MARKERS = re.compile(
    r"\b(?:i was|i found myself|suddenly|then i|in the dream|i dreamed|i saw myself)\b", re.I
)
_INTERPRETIVE_MARKERS = re.compile(
    r"\b(?:represents|symbolizes|signifies|embodies|manifests|expresses)\b", re.I
)

_HAS_SYMBOLS = re.compile(
    r"\b(?:symbol|archetype|represents?|signifies?|meaning of|interpretation|metaphor|embodies)\b",
    re.I,
)
_HAS_EXAMPLES = re.compile(
    r"(?:\b(?:for example|for instance|such as|consider|let us|imagine|suppose)\b|e\.g\.|i\.e\.)",
    re.I,
)
_HAS_CASE_STUDY = re.compile(
    r"\b(?:patient|case|clinical|therapy session|analysis of|treatment|client|analysand)\b", re.I
)
_HAS_EXERCISE = re.compile(
    r"\b(?:exercise|practice|try this|meditation|technique|visualization|breathing|"
    r"imagine yourself|close your eyes)\b",
    re.I,
)


@dataclass
class BaselineClassification:
    """Content type, confidence and topics from pattern scoring."""

    primary_type: str
    confidence: float
    secondary_types: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)
    scores: dict[str, int] = field(default_factory=dict)
    has_symbols: bool = False
    has_examples: bool = False
    has_case_study: bool = False
    has_exercise: bool = False


def score_content_types(text: str) -> dict[str, int]:
    """Count pattern hits per content type, then apply contextual boosts."""
    scores = {
        content_type: sum(len(p.findall(text)) for p in patterns)
        for content_type, patterns in _COMPILED_PATTERNS.items()
    }

    if _CASE_MARKERS.search(text):
        scores[ContentType.CASE_STUDY] += 2
    if _ACADEMIC_MARKERS.search(text):
        scores[ContentType.THEORY] += 1
    if _INSTRUCTION_MARKERS.search(text):
        scores[ContentType.PRACTICE] += 1
        scores[ContentType.TECHNIQUE] += 1
    if _NARRATIVE_MARKERS.search(text):
        scores[ContentType.DREAM_EXAMPLE] += 2
    if _INTERPRETIVE_MARKERS.search(text):
        scores[ContentType.SYMBOL] += 1

    return scores


def _variance(values: list[float]) -> float:
    mean = sum(values) / len(values)
    return sum((v - mean) ** 2 for v in values) / len(values)


def calculate_confidence(ranked: list[tuple[str, int]]) -> float:
    """
    Confidence from the score distribution.

    0.3 when nothing matched. Otherwise the primary share of the total (floored
    at 0.4), raised when the winner clearly leads, lowered slightly when the
    top three are nearly tied.
    """
    total = sum(score for _, score in ranked)
    if total == 0:
        return 0.3

    primary = ranked[0][1]
    confidence = max(0.4, primary / total)

    if len(ranked) > 1 and primary > ranked[1][1] * 1.5:
        confidence = min(confidence + 0.15, 1.0)

    if len(ranked) > 2 and _variance([score for _, score in ranked[:3]]) < 0.5:
        confidence *= 0.9

    if primary > 2:
        confidence = min(confidence + 0.1, 1.0)

    return round(confidence, 2)


def extract_topics(text: str, limit: int = 8) -> list[str]:
    """Broad topics whose keywords appear often enough in the text."""
    found = []
    for topic, patterns in _COMPILED_TOPICS.items():
        score = sum(len(p.findall(text)) for p in patterns)
        threshold = 1 if len(patterns) > 20 else 2
        if score >= threshold:
            found.append((topic, score))
    found.sort(key=lambda item: item[1], reverse=True)
    return [topic for topic, _ in found[:limit]]


def classify_content(text: str) -> BaselineClassification:
    """
    Classify the kind of writing in a passage.

    Args:
        text: Passage text

    Returns:
        BaselineClassification; ``general`` with confidence 0.3 if no pattern matched
    """
    scores = score_content_types(text)
    # Stable sort keeps declaration order among ties
    ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    primary_type, primary_score = ranked[0]
    if primary_score == 0:
        primary_type = ContentType.GENERAL

    secondary = [
        content_type
        for content_type, score in ranked[1:]
        if score > 0 and score >= primary_score * 0.3
    ]

    return BaselineClassification(
        primary_type=primary_type,
        confidence=calculate_confidence(ranked),
        secondary_types=secondary,
        topics=extract_topics(text),
        scores=scores,
        has_symbols=bool(_HAS_SYMBOLS.search(text)),
        has_examples=bool(_HAS_EXAMPLES.search(text)),
        has_case_study=bool(_HAS_CASE_STUDY.search(text)),
        has_exercise=bool(_HAS_EXERCISE.search(text)),
    )


def get_interpreter_topics(persona: str) -> list[str]:
    """Topics most relevant to a persona; all topics for unknown personas."""
    return INTERPRETER_TOPICS.get(persona, list(TOPIC_KEYWORDS))
