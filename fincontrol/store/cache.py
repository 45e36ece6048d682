"""
Snapshot-Scoped Memoization

Read queries are pure functions of (snapshot, parameters), so their results
can be reused until the snapshot changes. The cache holds results for one
snapshot version only: seeing a new version clears everything.
"""

from collections import OrderedDict
from collections.abc import Callable, Hashable
from typing import Any, Optional


class SnapshotCache:
    """LRU memo keyed on (snapshot version, operation, params)."""

    def __init__(self, max_entries: int = 512):
        self._max_entries = max_entries
        self._version: Optional[int] = None
        self._entries: OrderedDict[tuple, Any] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def version(self) -> Optional[int]:
        return self._version

    def clear(self) -> None:
        self._entries.clear()

    def get_or_compute(
        self,
        version: int,
        operation: str,
        params: tuple[Hashable, ...],
        compute: Callable[[], Any],
    ) -> Any:
        if version != self._version:
            self._entries.clear()
            self._version = version

        key = (version, operation, params)
        if key in self._entries:
            self.hits += 1
            self._entries.move_to_end(key)
            return self._entries[key]

        self.misses += 1
        value = compute()
        self._entries[key] = value
        if len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
        return value
