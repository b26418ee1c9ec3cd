"""Per-asset mutual exclusion for pipeline runs (single process)."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class AssetLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._held: set[str] = set()

    @contextmanager
    def hold(self, asset_id: str) -> Iterator[bool]:
        """Yield True if the lock was taken, False if another run holds it. Never blocks."""
        with self._guard:
            acquired = asset_id not in self._held
            if acquired:
                self._held.add(asset_id)
        try:
            yield acquired
        finally:
            if acquired:
                with self._guard:
                    self._held.discard(asset_id)

    def is_held(self, asset_id: str) -> bool:
        with self._guard:
            return asset_id in self._held
