"""Bounded retry-with-mutation for generated prompt signatures.

A prompt builder picks opening lines, vocabulary anchors and the like from a
seed. When the resulting signature was used recently, generation is retried
with a perturbed seed, up to a fixed cap.
"""

from collections import OrderedDict
from collections.abc import Callable, Hashable
from typing import TypeVar

from dream_rag.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
SEED_STEP = 7919


class SignatureHistory:
    """FIFO set of recently accepted signatures."""

    def __init__(self, max_size: int = 20):
        self.max_size = max_size
        self._items: OrderedDict[Hashable, None] = OrderedDict()

    def __contains__(self, signature: Hashable) -> bool:
        return signature in self._items

    def __len__(self) -> int:
        return len(self._items)

    def add(self, signature: Hashable) -> None:
        self._items.pop(signature, None)
        self._items[signature] = None
        while len(self._items) > self.max_size:
            self._items.popitem(last=False)


def generate_unique(
    generate: Callable[[int], tuple[T, Hashable]],
    history: SignatureHistory,
    seed: int = 0,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> T:
    """
    Call ``generate(seed)`` until its signature is not in ``history``.

    Args:
        generate: Returns (value, signature) for a seed
        history: Recently accepted signatures; updated with the accepted one
        seed: Initial seed, perturbed by a fixed step on each retry
        max_attempts: Cap on calls to ``generate``

    Returns:
        The first value with a fresh signature, or the last attempt when the
        cap is reached
    """
    value, signature = generate(seed)
    for attempt in range(1, max_attempts):
        if signature not in history:
            break
        logger.debug(f"Signature collision on attempt {attempt}, regenerating")
        value, signature = generate(seed + attempt * SEED_STEP)
    else:
        if signature in history:
            logger.info(f"No fresh signature after {max_attempts} attempts, reusing last")

    history.add(signature)
    return value
