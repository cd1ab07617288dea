"""Security event pipeline: normalize, enrich, score, persist, correlate, alert, publish."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional, Tuple

from thrag.clients.channel import EventChannel
from thrag.clients.reputation import ReputationService, UserDirectory
from thrag.config import SETTINGS, THRESHOLDS, Settings, Thresholds
from thrag.correlation.correlate import ThreatCorrelation, correlate, source_ip_key
from thrag.correlation.mitre import critical_in
from thrag.errors import PersistenceError, ThragError
from thrag.events.enrich import enrich_event
from thrag.events.normalize import SecurityEvent, parse_event
from thrag.runtime.state import DurableStore
from thrag.scoring.threat import ThreatScore, ThreatScoringEngine
from thrag.utils.lookup import attempt
from thrag.utils.time import coerce_ts, now_utc, sort_key, to_iso_utc

logger = logging.getLogger(__name__)

EVENTS_TABLE = "events"
CORRELATIONS_TABLE = "correlations"
ALERTS_TABLE = "alerts"
_NO_SOURCE = "ip:-"

AlertSeverity = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]


@dataclass(frozen=True)
class Alert:
    id: str
    severity: AlertSeverity
    title: str
    description: str
    techniques: Tuple[str, ...]
    indicators: Tuple[str, ...]
    recommendations: Tuple[str, ...]
    confidence: float
    created: datetime
    event_id: Optional[str] = None
    correlation_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity,
            "title": self.title,
            "description": self.description,
            "techniques": list(self.techniques),
            "indicators": list(self.indicators),
            "recommendations": list(self.recommendations),
            "confidence": self.confidence,
            "created": to_iso_utc(self.created),
            "event_id": self.event_id,
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Alert":
        return cls(
            id=d["id"],
            severity=d["severity"],
            title=d["title"],
            description=d.get("description", ""),
            techniques=tuple(d.get("techniques") or ()),
            indicators=tuple(d.get("indicators") or ()),
            recommendations=tuple(d.get("recommendations") or ()),
            confidence=float(d.get("confidence", 0.0)),
            created=coerce_ts(d.get("created")) or now_utc(),
            event_id=d.get("event_id"),
            correlation_id=d.get("correlation_id"),
        )


@dataclass(frozen=True)
class ProcessingResult:
    event: SecurityEvent
    threat_score: ThreatScore
    correlations: Tuple[ThreatCorrelation, ...] = ()
    alerts: Tuple[Alert, ...] = ()
    errors: Tuple[str, ...] = ()

    @property
    def event_id(self) -> str:
        return self.event.id

    @property
    def correlation_ids(self) -> List[str]:
        return [c.id for c in self.correlations]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event.id,
            "processed": True,
            "threat_score": self.threat_score.as_dict(),
            "correlations": [c.as_dict() for c in self.correlations],
            "enrichments": self.event.enrichment,
            "indicators": list(self.event.indicators),
            "techniques": list(self.event.techniques),
            "alerts": [a.as_dict() for a in self.alerts],
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class BatchResult:
    results: List[ProcessingResult] = field(default_factory=list)
    failures: List[Dict[str, str]] = field(default_factory=list)


def _raw_id(raw: Any) -> str:
    if isinstance(raw, dict):
        return str(raw.get("id") or raw.get("eventId") or raw.get("event_id") or "unknown")
    return "unknown"


def event_alerts(event: SecurityEvent, now: datetime, thresholds: Thresholds = THRESHOLDS) -> List[Alert]:
    alerts: List[Alert] = []
    score = float(event.threat_score or 0.0)
    if score > thresholds.high_threat_score:
        alerts.append(
            Alert(
                id=f"alert-{event.id}-high-threat",
                severity="HIGH",
                title="High Threat Score Detected",
                description=f"Security event {event.id} has a high threat score of {score:.3f}",
                techniques=tuple(event.techniques),
                indicators=tuple(event.indicators),
                recommendations=(
                    "Investigate the source of this activity",
                    "Check for related events in the same time window",
                    "Consider blocking suspicious IP addresses",
                ),
                confidence=score,
                created=now,
                event_id=event.id,
            )
        )
    critical = critical_in(event.techniques)
    if critical:
        alerts.append(
            Alert(
                id=f"alert-{event.id}-mitre-critical",
                severity="CRITICAL",
                title="Critical MITRE Technique Detected",
                description=f"Critical attack techniques detected: {', '.join(critical)}",
                techniques=tuple(critical),
                indicators=tuple(event.indicators),
                recommendations=(
                    "Immediate investigation required",
                    "Isolate affected systems",
                    "Check for lateral movement",
                    "Review authentication logs",
                ),
                confidence=0.9,
                created=now,
                event_id=event.id,
            )
        )
    return alerts


def campaign_alert(corr: ThreatCorrelation, now: datetime, thresholds: Thresholds = THRESHOLDS) -> Optional[Alert]:
    """Alert for a correlation whose confidence strictly exceeds the campaign threshold."""
    if not corr.confidence > thresholds.campaign_confidence:
        return None
    return Alert(
        id=f"alert-{corr.id}-campaign",
        severity="CRITICAL" if corr.threat_score > thresholds.high_threat_score else "HIGH",
        title="Potential Attack Campaign Detected",
        description=f"Correlated events suggest ongoing attack campaign involving {len(corr.events)} events",
        techniques=corr.techniques,
        indicators=tuple(corr.indicators()),
        recommendations=(
            "Investigate all correlated events",
            "Check for additional indicators across the environment",
            "Consider threat hunting based on identified TTPs",
            "Review security controls for identified attack vectors",
        ),
        confidence=corr.confidence,
        created=now,
        correlation_id=corr.id,
    )


class SecurityEventProcessor:
    """Runs one raw event through the pipeline.

    Lookup and correlation-query failures degrade (recorded in
    ``ProcessingResult.errors``); persistence failures propagate; publish
    failures are logged.
    """

    def __init__(
        self,
        store: DurableStore,
        engine: ThreatScoringEngine,
        reputation: Optional[ReputationService] = None,
        users: Optional[UserDirectory] = None,
        channel: Optional[EventChannel] = None,
        settings: Settings = SETTINGS,
        thresholds: Thresholds = THRESHOLDS,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.store = store
        self.engine = engine
        self.reputation = reputation
        self.users = users
        self.channel = channel
        self.settings = settings
        self.thresholds = thresholds
        self.clock = clock

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.settings.correlation_window_minutes)

    def process(self, raw: Any) -> ProcessingResult:
        event = parse_event(raw, clock=self.clock)
        enrichment = enrich_event(event, self.reputation, self.users)
        errors: List[str] = list(enrichment.errors)

        score = self.engine.score_event(enrichment.event, enrichment.user_profile, enrichment.source_reputation)
        event = replace(enrichment.event, threat_score=score.overall)

        self.persist_event(event)

        related = attempt(self.related_events, event, expected=(PersistenceError,), label="correlation query")
        if not related.ok:
            errors.append(f"correlation: {related.error}")
        correlations = correlate(
            event,
            related.unwrap_or([]),
            key_fn=source_ip_key,
            min_events=self.settings.correlation_min_events,
        )
        for corr in correlations:
            self.store.put(
                CORRELATIONS_TABLE,
                corr.id,
                corr.as_dict(),
                partition=corr.key,
                sort=sort_key(corr.start),
            )

        now = self.clock()
        alerts = event_alerts(event, now, self.thresholds)
        for corr in correlations:
            a = campaign_alert(corr, now, self.thresholds)
            if a is not None:
                alerts.append(a)
        for a in alerts:
            self.store.put(ALERTS_TABLE, a.id, a.as_dict(), partition="alerts", sort=sort_key(a.created))

        result = ProcessingResult(
            event=event,
            threat_score=score,
            correlations=tuple(correlations),
            alerts=tuple(alerts),
            errors=tuple(errors),
        )
        publish_error = self.publish(result)
        if publish_error:
            result = replace(result, errors=result.errors + (publish_error,))

        logger.info(
            "processed event %s score=%.3f correlations=%d alerts=%d",
            event.id,
            score.overall,
            len(correlations),
            len(alerts),
        )
        return result

    def process_batch(self, raws: Iterable[Any]) -> BatchResult:
        batch = BatchResult()
        for raw in raws:
            try:
                batch.results.append(self.process(raw))
            except ThragError as e:
                logger.warning("event %s failed: %s", _raw_id(raw), e)
                batch.failures.append({"event_id": _raw_id(raw), "error": f"{type(e).__name__}: {e}"})
        return batch

    def persist_event(self, event: SecurityEvent) -> None:
        expires = self.clock() + timedelta(days=self.settings.event_retention_days)
        self.store.put(
            EVENTS_TABLE,
            event.id,
            event.as_dict(),
            partition=source_ip_key(event) or _NO_SOURCE,
            sort=sort_key(event.timestamp),
            expires_at=expires,
        )

    def related_events(self, event: SecurityEvent) -> List[SecurityEvent]:
        """Stored events sharing the source address within the correlation window."""
        partition = source_ip_key(event)
        if partition is None:
            return []
        lo = sort_key(event.timestamp - self.window)
        hi = sort_key(event.timestamp + self.window)
        rows = self.store.query(EVENTS_TABLE, partition, (lo, hi))
        return [SecurityEvent.from_dict(r) for r in rows]

    def publish(self, result: ProcessingResult) -> Optional[str]:
        if self.channel is None:
            return None
        payload = {
            "event_type": self.settings.channel_topic,
            "timestamp": to_iso_utc(self.clock()),
            "data": {
                "event": result.event.as_dict(),
                "correlations": [c.as_dict() for c in result.correlations],
                "alerts": [a.as_dict() for a in result.alerts],
                "processing_metadata": {
                    "threat_score": result.threat_score.overall,
                    "correlation_count": len(result.correlations),
                    "alert_count": len(result.alerts),
                },
            },
        }
        try:
            self.channel.publish(self.settings.channel_topic, payload)
        except Exception as e:  # fire-and-forget channel
            logger.exception("publish failed for event %s", result.event.id)
            return f"publish: {type(e).__name__}: {e}"
        return None

    def get_event(self, event_id: str) -> Optional[SecurityEvent]:
        rec = self.store.get(EVENTS_TABLE, event_id)
        return SecurityEvent.from_dict(rec) if rec is not None else None

    def get_correlation(self, correlation_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get(CORRELATIONS_TABLE, correlation_id)

    def recent_alerts(self, limit: int = 100) -> List[Alert]:
        rows = self.store.query(ALERTS_TABLE, "alerts")
        return [Alert.from_dict(r) for r in rows[-limit:]][::-1]
