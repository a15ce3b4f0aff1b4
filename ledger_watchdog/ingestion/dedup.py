"""
In-process dedup of emitted record keys.

Best-effort only: the sink upserts by signature, so a key forgotten after a
reset just costs one redundant write.
"""

from __future__ import annotations

DEFAULT_MAX_SIZE = 50_000


class DedupGuard:
    """Size-bounded set of seen keys; cleared entirely when an insert exceeds max_size."""

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self._keys: set[str] = set()
        self.resets = 0

    def __len__(self) -> int:
        return len(self._keys)

    def seen(self, key: str) -> bool:
        return key in self._keys

    def mark(self, key: str) -> None:
        self._keys.add(key)
        if len(self._keys) > self.max_size:
            self._keys.clear()
            self.resets += 1

    def check_and_mark(self, key: str) -> bool:
        """True if key was new (and is now marked); False if already seen."""
        if key in self._keys:
            return False
        self.mark(key)
        return True
