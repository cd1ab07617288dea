from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    v = os.environ.get(name)
    if v is None or v.strip() == "":
        return default
    return v.strip()


@dataclass(frozen=True)
class Settings:
    """Central configuration.

    Every field can be overridden with a ``THRAG_*`` environment variable.
    """

    # Orchestration
    max_parallel: int = 3
    capability_timeout_seconds: float = 30.0
    health_timeout_seconds: float = 30.0
    max_scheduler_rounds: int = 100

    # Correlation / retention
    correlation_window_minutes: int = 60
    correlation_min_events: int = 2
    event_retention_days: int = 7

    # Business calendar used by temporal scoring (UTC hours, [start, end))
    business_hour_start: int = 9
    business_hour_end: int = 17

    # Wiring
    database_url: str = "sqlite:///./thrag.db"
    channel_path: str = ""
    channel_topic: str = "security-event-processed"
    executor_url: str = ""
    knowledge_url: str = ""
    knowledge_path: str = ""
    reputation_url: str = ""
    anomaly_url: str = ""
    anomaly_model_path: str = ""
    log_level: str = "INFO"


@dataclass(frozen=True)
class Thresholds:
    """Thresholds and cutoffs used when scoring and alerting."""

    high_threat_score: float = 0.8
    campaign_confidence: float = 0.7
    intel_min_confidence: float = 0.7
    campaign_min_confidence: float = 0.6
    analyst_min_confidence: float = 0.6
    trusted_user_risk: float = 0.3


SETTINGS = Settings(
    max_parallel=_env_int("THRAG_MAX_PARALLEL", 3),
    capability_timeout_seconds=_env_float("THRAG_CAPABILITY_TIMEOUT_SECONDS", 30.0),
    health_timeout_seconds=_env_float("THRAG_HEALTH_TIMEOUT_SECONDS", 30.0),
    max_scheduler_rounds=_env_int("THRAG_MAX_SCHEDULER_ROUNDS", 100),
    correlation_window_minutes=_env_int("THRAG_CORRELATION_WINDOW_MINUTES", 60),
    correlation_min_events=_env_int("THRAG_CORRELATION_MIN_EVENTS", 2),
    event_retention_days=_env_int("THRAG_EVENT_RETENTION_DAYS", 7),
    business_hour_start=_env_int("THRAG_BUSINESS_HOUR_START", 9),
    business_hour_end=_env_int("THRAG_BUSINESS_HOUR_END", 17),
    database_url=_env_str("THRAG_DATABASE_URL", "sqlite:///./thrag.db"),
    channel_path=_env_str("THRAG_CHANNEL_PATH", ""),
    channel_topic=_env_str("THRAG_CHANNEL_TOPIC", "security-event-processed"),
    executor_url=_env_str("THRAG_EXECUTOR_URL", ""),
    knowledge_url=_env_str("THRAG_KNOWLEDGE_URL", ""),
    knowledge_path=_env_str("THRAG_KNOWLEDGE_PATH", ""),
    reputation_url=_env_str("THRAG_REPUTATION_URL", ""),
    anomaly_url=_env_str("THRAG_ANOMALY_URL", ""),
    anomaly_model_path=_env_str("THRAG_ANOMALY_MODEL_PATH", ""),
    log_level=_env_str("THRAG_LOG_LEVEL", "INFO"),
)


THRESHOLDS = Thresholds(
    high_threat_score=_env_float("THRAG_HIGH_THREAT_SCORE", 0.8),
    campaign_confidence=_env_float("THRAG_CAMPAIGN_CONFIDENCE", 0.7),
    intel_min_confidence=_env_float("THRAG_INTEL_MIN_CONFIDENCE", 0.7),
    campaign_min_confidence=_env_float("THRAG_CAMPAIGN_MIN_CONFIDENCE", 0.6),
    analyst_min_confidence=_env_float("THRAG_ANALYST_MIN_CONFIDENCE", 0.6),
    trusted_user_risk=_env_float("THRAG_TRUSTED_USER_RISK", 0.3),
)
