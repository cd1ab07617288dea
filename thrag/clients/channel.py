"""Append-only event channel for processed results."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Protocol, Tuple

from thrag.io.ndjson import append_ndjson
from thrag.utils.time import now_utc, to_iso_utc

logger = logging.getLogger(__name__)


class EventChannel(Protocol):
    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        ...


class InMemoryChannel:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.records: List[Tuple[str, Dict[str, Any]]] = []

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.records.append((topic, payload))

    def topic(self, name: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [p for t, p in self.records if t == name]


class NdjsonChannel:
    """One JSON line per published record."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        append_ndjson(self.path, {"topic": topic, "published_at": to_iso_utc(now_utc()), "payload": payload})


class LoggingChannel:
    """Fallback when no channel is configured."""

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        logger.info("publish topic=%s keys=%s", topic, sorted(payload))
