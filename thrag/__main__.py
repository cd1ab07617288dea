from __future__ import annotations


def main() -> int:
    print(
        "thrag package. Common commands:\n"
        "  uvicorn thrag.api.main:app --host 127.0.0.1 --port 8000\n"
        "  python -m thrag.ingest_file --api http://127.0.0.1:8000 --events data/events.ndjson\n"
        "  python -m thrag.train --history data/behavior.ndjson --out artifacts/behavior_iforest.joblib\n"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
