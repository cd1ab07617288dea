"""Behavioral features and the anomaly-scoring capability interface."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple

import numpy as np
import requests

from thrag.errors import AnomalyScoringError

logger = logging.getLogger(__name__)

FEATURE_NAMES: Tuple[str, ...] = (
    "login_hour_deviation",
    "access_pattern_distance",
    "location_pattern_distance",
    "device_pattern_distance",
    "risk_score_delta",
)


@dataclass(frozen=True)
class BehaviorProfile:
    login_hours: Tuple[int, ...] = ()
    access_patterns: Tuple[str, ...] = ()
    location_patterns: Tuple[str, ...] = ()
    device_patterns: Tuple[str, ...] = ()
    risk_score: float = 0.0

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "BehaviorProfile":
        d = d or {}
        return cls(
            login_hours=tuple(int(h) for h in d.get("login_hours", d.get("loginTimes", [])) or []),
            access_patterns=tuple(str(x) for x in d.get("access_patterns", d.get("accessPatterns", [])) or []),
            location_patterns=tuple(str(x) for x in d.get("location_patterns", d.get("locationPatterns", [])) or []),
            device_patterns=tuple(str(x) for x in d.get("device_patterns", d.get("devicePatterns", [])) or []),
            risk_score=float(d.get("risk_score", d.get("riskScore", 0.0)) or 0.0),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "login_hours": list(self.login_hours),
            "access_patterns": list(self.access_patterns),
            "location_patterns": list(self.location_patterns),
            "device_patterns": list(self.device_patterns),
            "risk_score": self.risk_score,
        }


@dataclass(frozen=True)
class UserContext:
    user_id: str
    normal: BehaviorProfile
    current: BehaviorProfile


def login_hour_deviation(normal: Sequence[int], current: Sequence[int]) -> float:
    if not normal or not current:
        return 0.0
    return float(abs(np.mean(normal) - np.mean(current)) / 24.0)


def jaccard_distance(normal: Sequence[str], current: Sequence[str]) -> float:
    a, b = set(normal), set(current)
    if not a:
        return 1.0 if b else 0.0
    return 1.0 - len(a & b) / len(a | b)


def behavioral_features(ctx: UserContext) -> np.ndarray:
    """Feature vector in :data:`FEATURE_NAMES` order."""
    return np.array(
        [
            login_hour_deviation(ctx.normal.login_hours, ctx.current.login_hours),
            jaccard_distance(ctx.normal.access_patterns, ctx.current.access_patterns),
            jaccard_distance(ctx.normal.location_patterns, ctx.current.location_patterns),
            jaccard_distance(ctx.normal.device_patterns, ctx.current.device_patterns),
            abs(ctx.current.risk_score - ctx.normal.risk_score),
        ],
        dtype=np.float64,
    )


class AnomalyScorer(Protocol):
    def score(self, features: Sequence[float]) -> float:
        ...


class HttpAnomalyScorer:
    """Model endpoint taking ``{"instances": [features]}``.

    Accepts ``{"predictions": [{"anomaly_score": x}]}``, ``{"anomaly_score": x}``
    or camelCase ``anomalyScore`` in either place.
    """

    def __init__(self, url: str, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self._http = session or requests.Session()

    def score(self, features: Sequence[float]) -> float:
        try:
            r = self._http.post(self.url, json={"instances": [list(map(float, features))]}, timeout=self.timeout)
            r.raise_for_status()
            body = r.json()
        except (requests.RequestException, ValueError) as e:
            raise AnomalyScoringError(f"anomaly endpoint failed: {e}") from e

        pred = body
        try:
            if isinstance(body, dict) and body.get("predictions"):
                pred = body["predictions"][0]
            if isinstance(pred, (int, float)):
                return float(pred)
            if isinstance(pred, dict):
                for key in ("anomaly_score", "anomalyScore"):
                    if key in pred:
                        return float(pred[key])
        except (TypeError, ValueError, LookupError) as e:
            raise AnomalyScoringError(f"unexpected anomaly response: {body!r}") from e
        raise AnomalyScoringError(f"unexpected anomaly response: {body!r}")
