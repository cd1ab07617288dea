from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from thrag.correlation.mitre import kill_chain_for
from thrag.events.normalize import SecurityEvent
from thrag.utils.time import to_iso_utc


@dataclass(frozen=True)
class ThreatCorrelation:
    id: str
    key: str
    events: Tuple[SecurityEvent, ...]
    threat_score: float
    techniques: Tuple[str, ...]
    confidence: float
    start: datetime
    end: datetime
    kill_chain: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()
    threat_actors: Tuple[str, ...] = ()

    @property
    def event_ids(self) -> List[str]:
        return [e.id for e in self.events]

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()

    def indicators(self) -> List[str]:
        out: List[str] = []
        for e in self.events:
            out.extend(e.indicators)
        return list(dict.fromkeys(out))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "event_ids": self.event_ids,
            "threat_score": self.threat_score,
            "techniques": list(self.techniques),
            "threat_actors": list(self.threat_actors),
            "confidence": self.confidence,
            "timeline": {
                "start": to_iso_utc(self.start),
                "end": to_iso_utc(self.end),
                "duration_seconds": self.duration_seconds,
            },
            "kill_chain": list(self.kill_chain),
            "recommendations": list(self.recommendations),
        }


def source_ip_key(event: SecurityEvent) -> Optional[str]:
    return f"ip:{event.normalized.source_ip}" if event.normalized.source_ip else None


def group_events(
    events: Sequence[SecurityEvent],
    key_fn: Callable[[SecurityEvent], Optional[str]] = source_ip_key,
    min_events: int = 2,
) -> Dict[str, List[SecurityEvent]]:
    """Group events sharing a key; groups smaller than ``min_events`` are dropped.

    Duplicate ids collapse to the last occurrence. Members are time ordered.
    """
    unique: Dict[str, SecurityEvent] = {}
    for e in events:
        unique[e.id] = e
    groups: Dict[str, List[SecurityEvent]] = {}
    for e in unique.values():
        k = key_fn(e)
        if k is None:
            continue
        groups.setdefault(k, []).append(e)
    return {
        k: sorted(members, key=lambda e: (e.timestamp, e.id))
        for k, members in groups.items()
        if len(members) >= min_events
    }


def correlation_recommendations(techniques: Sequence[str], threat_score: float) -> List[str]:
    recs = [
        "Investigate all related events in the correlation",
        "Check for additional indicators across the environment",
    ]
    if threat_score > 0.8:
        recs.append("Consider immediate containment actions")
        recs.append("Escalate to incident response team")
    if "T1003" in techniques:
        recs.append("Force password resets for potentially compromised accounts")
        recs.append("Review privileged account access")
    if "T1071" in techniques:
        recs.append("Monitor network traffic for C2 communications")
        recs.append("Consider blocking suspicious domains/IPs")
    return recs


def build_correlation(key: str, events: Sequence[SecurityEvent], correlation_id: Optional[str] = None) -> ThreatCorrelation:
    if not events:
        raise ValueError("correlation needs at least one event")
    members = sorted(events, key=lambda e: (e.timestamp, e.id))
    score = sum(float(e.threat_score or 0.0) for e in members) / len(members)
    techniques: List[str] = []
    for e in members:
        for t in e.techniques:
            if t not in techniques:
                techniques.append(t)
    # Rounded so that e.g. 0.6 + 0.1 compares equal to the 0.7 alert threshold.
    confidence = round(min(score + len(techniques) * 0.1, 1.0), 6)
    return ThreatCorrelation(
        id=correlation_id or f"corr-{uuid.uuid4().hex[:12]}",
        key=key,
        events=tuple(members),
        threat_score=score,
        techniques=tuple(techniques),
        confidence=confidence,
        start=members[0].timestamp,
        end=members[-1].timestamp,
        kill_chain=tuple(kill_chain_for(techniques)),
        recommendations=tuple(correlation_recommendations(techniques, score)),
    )


def correlate(
    event: SecurityEvent,
    related: Sequence[SecurityEvent],
    key_fn: Callable[[SecurityEvent], Optional[str]] = source_ip_key,
    min_events: int = 2,
) -> List[ThreatCorrelation]:
    """Correlations for the groups that contain ``event``."""
    groups = group_events(list(related) + [event], key_fn=key_fn, min_events=min_events)
    out: List[ThreatCorrelation] = []
    for k, members in groups.items():
        if any(m.id == event.id for m in members):
            out.append(build_correlation(k, members))
    return out
