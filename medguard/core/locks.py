from __future__ import annotations

import contextlib
import threading
from typing import Dict, Iterator


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


class KeyedLocks:
    """
    Lock table with one re-entrant lock per key.

    Callers working on different keys never contend beyond the short table
    lookup. A key's lock lives only while somebody holds or waits on it, so
    the table is bounded by the number of keys in flight, not by every key
    ever seen.
    """

    def __init__(self) -> None:
        self._table_lock = threading.Lock()
        self._slots: Dict[str, _Slot] = {}

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._table_lock:
            slot = self._slots.get(key)
            if slot is None:
                slot = _Slot()
                self._slots[key] = slot
            slot.users += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._table_lock:
                slot.users -= 1
                if slot.users == 0:
                    del self._slots[key]

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._slots)
