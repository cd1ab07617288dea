from __future__ import annotations

import argparse
from pathlib import Path
from typing import Dict, List

import requests

from thrag.io.ndjson import batched, read_ndjson


def post_batch(base_url: str, events: List[Dict]) -> Dict:
    r = requests.post(f"{base_url}/events/batch", json={"events": events}, timeout=60)
    r.raise_for_status()
    return r.json()


def _files(path: Path) -> List[Path]:
    if path.is_dir():
        return sorted(path.glob("*.ndjson"))
    return [path]


def main(argv: List[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Post NDJSON security events to the API in batches.")
    p.add_argument("--api", default="http://127.0.0.1:8000", help="API base URL")
    p.add_argument("--events", required=True, help="NDJSON file, or a directory of *.ndjson files")
    p.add_argument("--batch", type=int, default=200, help="Batch size")
    args = p.parse_args(argv)

    path = Path(args.events)
    if not path.exists():
        print(f"Missing: {path}")
        return 1

    for f in _files(path):
        processed = failed = alerts = 0
        for chunk in batched(read_ndjson(f), args.batch):
            res = post_batch(args.api, chunk)
            processed += res.get("processed", 0)
            failed += res.get("failed", 0)
            alerts += sum(len(r.get("alerts", [])) for r in res.get("results", []))
            print(f"{f.name}: processed={processed} failed={failed} alerts={alerts}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
