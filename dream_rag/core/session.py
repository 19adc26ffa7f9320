"""Session-scoped anti-repetition tracking."""

from collections import OrderedDict
from collections.abc import Iterable

from dream_rag.core.config import get_settings


class RepetitionTracker:
    """
    Bounded FIFO record of chunk ids already shown in one session.

    Owned by a single session; not shared and not locked. When the tracked
    size exceeds ``max_size`` the oldest ids are evicted until ``keep`` remain.
    """

    def __init__(self, max_size: int | None = None, keep: int | None = None):
        settings = get_settings()
        self.max_size = max_size or settings.SESSION_TRACKER_MAX
        self.keep = min(keep or settings.SESSION_TRACKER_KEEP, self.max_size)
        self._ids: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, chunk_id) -> bool:
        return str(chunk_id) in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add_many(self, chunk_ids: Iterable) -> None:
        for chunk_id in chunk_ids:
            key = str(chunk_id)
            self._ids.pop(key, None)
            self._ids[key] = None

        if len(self._ids) > self.max_size:
            while len(self._ids) > self.keep:
                self._ids.popitem(last=False)

    def snapshot(self) -> frozenset[str]:
        return frozenset(self._ids)

    def clear(self) -> None:
        self._ids.clear()
