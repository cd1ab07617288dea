"""Durable store interface and the in-process implementation.

Records live in named tables, addressed by key, optionally placed in a
partition with a sort value so that range queries (events of one source
address inside a time window, tasks of one session) are cheap. Records may
carry an expiry; expired records are invisible to reads.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from thrag.utils.time import ensure_utc, now_utc

SortRange = Tuple[str, str]


class DurableStore(Protocol):
    def put(
        self,
        table: str,
        key: str,
        record: Dict[str, Any],
        partition: Optional[str] = None,
        sort: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> None:
        ...

    def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    def query(self, table: str, partition: str, sort_range: Optional[SortRange] = None) -> List[Dict[str, Any]]:
        ...

    def purge_expired(self) -> int:
        ...


@dataclass
class _Entry:
    record: Dict[str, Any]
    partition: Optional[str] = None
    sort: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class InMemoryStore:
    clock: Callable[[], datetime] = now_utc
    _tables: Dict[str, Dict[str, _Entry]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def _live(self, e: _Entry) -> bool:
        return e.expires_at is None or e.expires_at > self.clock()

    def put(
        self,
        table: str,
        key: str,
        record: Dict[str, Any],
        partition: Optional[str] = None,
        sort: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> None:
        entry = _Entry(
            record=copy.deepcopy(record),
            partition=partition,
            sort=sort,
            expires_at=ensure_utc(expires_at) if expires_at is not None else None,
        )
        with self._lock:
            self._tables.setdefault(table, {})[key] = entry

    def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            e = self._tables.get(table, {}).get(key)
            if e is None or not self._live(e):
                return None
            return copy.deepcopy(e.record)

    def query(self, table: str, partition: str, sort_range: Optional[SortRange] = None) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [
                (e.sort or "", k, e)
                for k, e in self._tables.get(table, {}).items()
                if e.partition == partition and self._live(e)
            ]
        if sort_range is not None:
            lo, hi = sort_range
            rows = [r for r in rows if lo <= r[0] <= hi]
        rows.sort(key=lambda r: (r[0], r[1]))
        return [copy.deepcopy(r[2].record) for r in rows]

    def purge_expired(self) -> int:
        with self._lock:
            removed = 0
            for rows in self._tables.values():
                dead = [k for k, e in rows.items() if not self._live(e)]
                for k in dead:
                    del rows[k]
                removed += len(dead)
            return removed
