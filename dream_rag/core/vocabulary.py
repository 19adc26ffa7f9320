"""Theme vocabulary: the controlled list of dream themes chunks may be tagged with.

The vocabulary is loaded once per process from ``data/themes.json`` (or the
path in ``THEMES_PATH``) and treated as read-only afterwards. Theme embeddings
are attached lazily by the classifier; re-embedding is an administrative task,
not something done concurrently with classification.
"""

import json
import re
from functools import lru_cache
from pathlib import Path

from dream_rag.core.config import get_settings
from dream_rag.core.logging import get_logger
from dream_rag.core.schemas_knowledge import Theme

logger = get_logger(__name__)

DEFAULT_THEMES_PATH = Path(__file__).parent / "data" / "themes.json"

COMMON_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
        "has", "he", "in", "is", "it", "its", "of", "on", "that", "the",
        "to", "was", "will", "with", "about", "or", "but", "not", "have",
        "this", "these", "those", "they", "them", "their", "there", "then",
        "when", "where", "who", "what", "how", "why", "can", "could", "would",
        "should", "may", "might", "must", "shall", "being", "having", "doing",
    }
)  # fmt: skip

# Words that appear in nearly every theme description and carry no signal
GENERIC_DREAM_WORDS = frozenset(
    {
        "dreams", "dream", "dreaming", "dreamed", "dreamt", "about", "featuring",
        "involving", "related", "associated", "connected", "symbolic", "represents",
    }
)  # fmt: skip

_NON_WORD = re.compile(r"[^\w\s]")


def _words(text: str) -> list[str]:
    return _NON_WORD.sub(" ", text.lower()).split()


def build_theme_keywords(theme: Theme) -> list[str]:
    """
    Build the lexical keyword set for one theme.

    The code (with underscores read as spaces) comes first and is the only
    keyword scored as an exact theme match. Label words longer than two
    characters follow, then the first three meaningful description words.
    """
    keywords = [theme.code.lower().replace("_", " ")]
    keywords.extend(w for w in _words(theme.label) if len(w) > 2 and w not in COMMON_WORDS)
    description_words = [
        w
        for w in _words(theme.description)
        if len(w) > 3 and w not in COMMON_WORDS and w not in GENERIC_DREAM_WORDS
    ]
    keywords.extend(description_words[:3])
    # Preserve order, drop duplicates
    return list(dict.fromkeys(keywords))


class ThemeVocabulary:
    """Read-only registry of themes and their keyword sets."""

    def __init__(self, themes: list[Theme]):
        self._themes: dict[str, Theme] = {}
        for theme in themes:
            if theme.code in self._themes:
                logger.warning(f"Duplicate theme code in vocabulary: {theme.code}")
                continue
            self._themes[theme.code] = theme
        self._keywords = {code: build_theme_keywords(t) for code, t in self._themes.items()}

    def __len__(self) -> int:
        return len(self._themes)

    def __contains__(self, code: str) -> bool:
        return code in self._themes

    @property
    def codes(self) -> list[str]:
        return list(self._themes)

    def get(self, code: str) -> Theme | None:
        return self._themes.get(code)

    def themes(self) -> list[Theme]:
        return list(self._themes.values())

    def keywords_for(self, code: str) -> list[str]:
        return self._keywords.get(code, [])

    def keyword_map(self) -> dict[str, list[str]]:
        return dict(self._keywords)

    def embedding_text(self, code: str) -> str:
        """Text embedded to represent a theme."""
        theme = self._themes[code]
        return f"{theme.label}. {theme.description}"

    def embeddings(self) -> dict[str, list[float]]:
        return {code: t.embedding for code, t in self._themes.items() if t.embedding}

    def attach_embeddings(self, embeddings: dict[str, list[float]]) -> int:
        """Attach embeddings to known themes. Returns how many were attached."""
        attached = 0
        for code, vector in embeddings.items():
            theme = self._themes.get(code)
            if theme is None:
                logger.warning(f"Ignoring embedding for unknown theme code: {code}")
                continue
            theme.embedding = list(vector)
            attached += 1
        return attached

    def validate_codes(self, codes: list[str]) -> list[str]:
        """Drop codes missing from the vocabulary so they are never written."""
        valid = [c for c in codes if c in self._themes]
        unknown = [c for c in codes if c not in self._themes]
        if unknown:
            logger.warning(
                f"Dropped {len(unknown)} unknown theme codes",
                extra={"extra_data": {"unknown": unknown}},
            )
        return valid


def load_themes(path: str | Path | None = None) -> list[Theme]:
    """
    Load theme entries from a JSON asset.

    Accepts either a list of theme objects or ``{"themes": [...]}``.

    Raises:
        FileNotFoundError: If the asset does not exist
        ValueError: If the asset is not valid theme data
    """
    path = Path(path) if path else DEFAULT_THEMES_PATH
    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("themes", [])
    if not isinstance(data, list):
        raise ValueError(f"Theme asset {path} must contain a list of themes")

    return [Theme(**item) for item in data]


@lru_cache(maxsize=1)
def load_vocabulary() -> ThemeVocabulary:
    """Get the process-wide theme vocabulary (loaded on first use)."""
    settings = get_settings()
    themes = load_themes(settings.THEMES_PATH)
    logger.info(f"Loaded theme vocabulary with {len(themes)} themes")
    return ThemeVocabulary(themes)
