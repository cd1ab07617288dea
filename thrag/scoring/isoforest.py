from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

import joblib
import numpy as np
from sklearn.ensemble import IsolationForest

from thrag.errors import AnomalyScoringError
from thrag.scoring.behavior import FEATURE_NAMES


@dataclass(frozen=True)
class IsoForestArtifact:
    model: IsolationForest
    feature_names: List[str]


def train_isoforest(X: np.ndarray, feature_names: Sequence[str] = FEATURE_NAMES, random_state: int = 7) -> IsoForestArtifact:
    """Fit on historical behavioral feature vectors (one row per user-day)."""
    X = np.asarray(X, dtype=np.float64)
    if X.ndim != 2 or X.shape[1] != len(feature_names):
        raise ValueError(f"expected (n, {len(feature_names)}) features, got {X.shape}")
    model = IsolationForest(
        n_estimators=200,
        max_samples="auto",
        contamination="auto",
        random_state=random_state,
    )
    model.fit(X)
    return IsoForestArtifact(model=model, feature_names=list(feature_names))


def save_isoforest(path: str, art: IsoForestArtifact) -> None:
    joblib.dump({"model": art.model, "feature_names": art.feature_names}, path)


def load_isoforest(path: str) -> IsoForestArtifact:
    obj = joblib.load(path)
    return IsoForestArtifact(model=obj["model"], feature_names=list(obj["feature_names"]))


class IsolationForestScorer:
    """Local anomaly scorer.

    sklearn's ``score_samples`` is higher for normal points and sits near
    -0.5 for typical data; the negated value is clipped to [0, 1] so a
    clearly isolated vector lands well above the median.
    """

    def __init__(self, artifact: IsoForestArtifact) -> None:
        self.artifact = artifact

    @classmethod
    def load(cls, path: str) -> "IsolationForestScorer":
        return cls(load_isoforest(path))

    def score(self, features: Sequence[float]) -> float:
        x = np.asarray(features, dtype=np.float64).reshape(1, -1)
        if x.shape[1] != len(self.artifact.feature_names):
            raise AnomalyScoringError(
                f"expected {len(self.artifact.feature_names)} features, got {x.shape[1]}"
            )
        raw = -self.artifact.model.score_samples(x)
        return float(np.clip(raw[0], 0.0, 1.0))
