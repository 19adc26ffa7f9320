"""Static mapping from dream themes to higher-level psychological concepts.

Each mapped theme carries the concepts it evokes and a short interpretive hint
that downstream prompt assembly can surface alongside retrieved passages.
"""

from dataclasses import dataclass, field

SHADOW = "Shadow"
ANIMA_ANIMUS = "Anima/Animus"
SELF = "Self"
PERSONA = "Persona"
COLLECTIVE_UNCONSCIOUS = "Collective Unconscious"
PROJECTION = "Projection"


@dataclass(frozen=True)
class ThemeConcepts:
    """Concepts and interpretive hint for one theme."""

    concepts: tuple[str, ...]
    hint: str


THEME_CONCEPTS: dict[str, ThemeConcepts] = {
    # Technology
    "ai": ThemeConcepts(
        (SHADOW, COLLECTIVE_UNCONSCIOUS),
        "Fear of machines replacing human consciousness voices a collective anxiety "
        "about losing our humanity to our own creations.",
    ),
    "vr": ThemeConcepts(
        (PERSONA, "Reality vs Illusion"),
        "Virtual worlds restate the old question of illusion and reality, and of the "
        "persona we build versus authentic being.",
    ),
    "social_media": ThemeConcepts(
        (PERSONA, PROJECTION),
        "Online life in dreams points to an inflated persona and unconscious contents "
        "projected onto a collective screen.",
    ),
    # Archetypal images
    "snake": ThemeConcepts(
        ("Transformation Symbol", SHADOW),
        "The serpent is an ancient symbol of renewal, carrying both the dangerous and "
        "the healing side of the unconscious.",
    ),
    "death": ThemeConcepts(
        ("Psychic Death and Rebirth", SELF),
        "Death in dreams seldom means physical death; an old attitude ends so that a "
        "new one can grow.",
    ),
    "shadow": ThemeConcepts(
        (SHADOW,),
        "A direct meeting with the shadow, the dark double holding what we refuse to "
        "acknowledge in ourselves.",
    ),
    "water": ThemeConcepts(
        (COLLECTIVE_UNCONSCIOUS, "Emotional Depths"),
        "Water commonly images the unconscious itself; its state mirrors the dreamer's "
        "emotional condition.",
    ),
    "ocean": ThemeConcepts(
        (COLLECTIVE_UNCONSCIOUS,),
        "The open sea is the vast, impersonal unconscious that both threatens and renews.",
    ),
    "beach": ThemeConcepts(
        ("Threshold", COLLECTIVE_UNCONSCIOUS),
        "The shoreline is a threshold where conscious ground meets the sea of the "
        "unconscious.",
    ),
    "maze": ThemeConcepts(
        ("Individuation", SELF),
        "The labyrinth is the winding path of individuation toward a hidden center.",
    ),
    "mountain": ThemeConcepts(
        (SELF, "Spiritual Ascent"),
        "Climbing a mountain images effortful ascent toward a higher point of view.",
    ),
    # Relationships
    "betrayal": ThemeConcepts(
        (SHADOW, PROJECTION),
        "Betrayal dreams often show where we betray ourselves or project our own shadow "
        "onto others.",
    ),
    "ex_partner": ThemeConcepts(
        (ANIMA_ANIMUS, "Unlived Life"),
        "Former partners often stand for unlived parts of our own personality once "
        "projected onto them.",
    ),
    "stranger": ThemeConcepts(
        (SHADOW, ANIMA_ANIMUS),
        "The unknown figure frequently personifies an unrecognized side of the dreamer.",
    ),
    # Collective anxieties
    "climate_change": ThemeConcepts(
        (COLLECTIVE_UNCONSCIOUS, "World Soul (Anima Mundi)"),
        "Images of a damaged planet express a collective grief for the soul of the world.",
    ),
    "apocalypse": ThemeConcepts(
        (COLLECTIVE_UNCONSCIOUS, "Psychic Death and Rebirth"),
        "World-ending dreams announce the collapse of an old order of consciousness.",
    ),
    # Movement
    "flying": ThemeConcepts(
        ("Spiritual Liberation", "Inflation"),
        "Flight can mean freedom from earthly limits, or an inflation that has lost "
        "touch with the ground.",
    ),
    "falling": ThemeConcepts(
        ("Loss of Ego Control", SHADOW),
        "Falling signals the ego losing its footing and being pulled toward what it "
        "has neglected.",
    ),
    "being_chased": ThemeConcepts(
        (SHADOW, "Repressed Content"),
        "What chases us is often what we refuse to face in ourselves, the shadow "
        "demanding integration.",
    ),
    "mirror": ThemeConcepts(
        (PERSONA, SELF),
        "The mirror confronts the dreamer with the difference between image and self.",
    ),
    "house": ThemeConcepts(
        (SELF,),
        "The house is a classic image of the psyche, its floors and rooms the layers "
        "of the personality.",
    ),
}


@dataclass
class ConceptMapping:
    """Concepts reachable from a set of themes, with their hints."""

    concepts: list[str] = field(default_factory=list)
    interpretive_hints: list[str] = field(default_factory=list)


def map_themes_to_concepts(theme_codes: list[str]) -> ConceptMapping:
    """
    Collect every concept reachable from at least one theme.

    Order follows the input themes; duplicates are removed.

    Example:
        >>> map_themes_to_concepts(["shadow", "being_chased"]).concepts
        ['Shadow', 'Repressed Content']
    """
    concepts: dict[str, None] = {}
    hints: list[str] = []
    for code in theme_codes:
        mapping = THEME_CONCEPTS.get(code)
        if mapping is None:
            continue
        for concept in mapping.concepts:
            concepts.setdefault(concept, None)
        if mapping.hint not in hints:
            hints.append(mapping.hint)
    return ConceptMapping(concepts=list(concepts), interpretive_hints=hints)


def themes_for_concept(concept: str) -> list[str]:
    """All theme codes that map to the given concept."""
    return [code for code, mapping in THEME_CONCEPTS.items() if concept in mapping.concepts]
