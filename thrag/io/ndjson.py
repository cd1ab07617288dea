from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Dict, Iterable, Iterator, List

_append_lock = threading.Lock()


def read_ndjson(path: str | Path) -> Iterator[Dict]:
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            yield json.loads(line)


def append_ndjson(path: str | Path, item: Dict) -> None:
    """Append one record; the file is only ever appended to."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(item, sort_keys=True, default=str)
    with _append_lock:
        with p.open("a", encoding="utf-8") as f:
            f.write(line)
            f.write("\n")


def batched(items: Iterable[Dict], size: int) -> Iterator[List[Dict]]:
    buf: List[Dict] = []
    for it in items:
        buf.append(it)
        if len(buf) >= size:
            yield buf
            buf = []
    if buf:
        yield buf
