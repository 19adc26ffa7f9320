"""BM25-style lexical scoring over a candidate set."""

import math
import re
from collections import Counter

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
        "has", "he", "in", "is", "it", "its", "of", "on", "that", "the",
        "to", "was", "will", "with", "we", "i", "you", "me", "my", "our",
        "this", "they", "their", "them", "have", "had", "can", "could",
        "would", "should", "may", "might", "must", "shall", "do", "does",
        "did", "get", "got", "make", "made", "go", "went", "come", "came",
        "into", "over", "when", "then", "than", "but", "not", "all", "she", "her",
        "his", "him", "were", "been", "being", "there", "what", "which", "who",
    }
)  # fmt: skip

_PUNCTUATION = re.compile(r"[^\w\s]")

BM25_K1 = 1.2
BM25_B = 0.75


def tokenize(text: str) -> list[str]:
    """Lower-case, strip punctuation, drop short tokens and stop words."""
    return [
        token
        for token in _PUNCTUATION.sub(" ", text.lower()).split()
        if len(token) > 2 and token not in STOP_WORDS
    ]


def sparse_term_weights(text: str) -> dict[str, float]:
    """Term-frequency map scaled so the most frequent term weighs 1.0."""
    counts = Counter(tokenize(text))
    if not counts:
        return {}
    top = max(counts.values())
    return {term: round(count / top, 4) for term, count in counts.items()}


class BM25Scorer:
    """
    Scores documents against a query with BM25, using the documents themselves
    as the corpus for document frequencies and average length.

    Example:
        >>> scorer = BM25Scorer(["the red bird flies", "a grocery list"])
        >>> scores = scorer.normalized_scores("bird flying")
        >>> scores[0] > scores[1]
        True
    """

    def __init__(self, documents: list[str], k1: float = BM25_K1, b: float = BM25_B):
        self.k1 = k1
        self.b = b
        self._docs = [Counter(tokenize(doc)) for doc in documents]
        self._lengths = [sum(doc.values()) for doc in self._docs]
        self._avg_length = max(1.0, sum(self._lengths) / len(self._lengths)) if self._docs else 1.0
        self._df: Counter = Counter()
        for doc in self._docs:
            self._df.update(doc.keys())

    def _idf(self, term: str) -> float:
        n = len(self._docs)
        df = self._df.get(term, 0)
        return math.log((n - df + 0.5) / (df + 0.5) + 1)

    def scores(self, query: str) -> list[float]:
        """Raw BM25 score per document, in input order."""
        terms = set(tokenize(query))
        results = []
        for doc, length in zip(self._docs, self._lengths):
            score = 0.0
            for term in terms:
                tf = doc.get(term, 0)
                if not tf:
                    continue
                norm = 1 - self.b + self.b * (length / self._avg_length)
                score += self._idf(term) * (tf * (self.k1 + 1)) / (tf + self.k1 * norm)
            results.append(score)
        return results

    def normalized_scores(self, query: str) -> list[float]:
        """BM25 scores scaled into [0, 1] by the best score in the set."""
        raw = self.scores(query)
        top = max(raw, default=0.0)
        if top <= 0:
            return [0.0 for _ in raw]
        return [score / top for score in raw]

