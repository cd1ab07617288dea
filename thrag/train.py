"""Train the local behavioral anomaly model.

Input is NDJSON, one user observation per line::

    {"user_id": "u1", "normal": {...behavior profile...}, "current": {...}}

Only normal-looking history should go in; the forest learns what ordinary
drift between a user's baseline and a day's activity looks like.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Dict, Iterable, List

import numpy as np

from thrag.io.ndjson import read_ndjson
from thrag.scoring.behavior import BehaviorProfile, UserContext, behavioral_features
from thrag.scoring.isoforest import save_isoforest, train_isoforest


def feature_matrix(rows: Iterable[Dict]) -> np.ndarray:
    vecs: List[np.ndarray] = []
    for row in rows:
        ctx = UserContext(
            user_id=str(row.get("user_id", "unknown")),
            normal=BehaviorProfile.from_dict(row.get("normal")),
            current=BehaviorProfile.from_dict(row.get("current")),
        )
        vecs.append(behavioral_features(ctx))
    if not vecs:
        raise ValueError("no training rows")
    return np.vstack(vecs)


def main(argv: List[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Train the IsolationForest behavioral anomaly scorer.")
    p.add_argument("--history", required=True, help="NDJSON of user behavior observations")
    p.add_argument("--out", default="artifacts/behavior_iforest.joblib", help="Output model path")
    p.add_argument("--seed", type=int, default=7)
    args = p.parse_args(argv)

    X = feature_matrix(read_ndjson(args.history))
    art = train_isoforest(X, random_state=args.seed)
    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    save_isoforest(str(out), art)
    print(f"Trained on rows={X.shape[0]}")
    print(f"Model written to {out}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
