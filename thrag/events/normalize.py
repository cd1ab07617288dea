"""Normalized security events.

Raw payloads arrive either in snake_case or in the camelCase shape emitted by
the upstream collectors (``eventId``, ``normalizedData.sourceIp`` ...). Both
are folded into :class:`SecurityEvent`.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Literal, Mapping, Optional, Tuple

from thrag.errors import InvalidEvent
from thrag.utils.time import coerce_ts, now_utc, to_iso_utc

logger = logging.getLogger(__name__)

Severity = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]
SEVERITIES: Tuple[str, ...] = ("LOW", "MEDIUM", "HIGH", "CRITICAL")


def _first(d: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        v = d.get(k)
        if v is not None and v != "":
            return v
    return None


@dataclass(frozen=True)
class NormalizedFields:
    source_ip: Optional[str] = None
    destination_ip: Optional[str] = None
    user_id: Optional[str] = None
    action: str = ""
    resource: str = ""
    user_agent: Optional[str] = None
    protocol: Optional[str] = None
    port: Optional[int] = None
    geolocation: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "NormalizedFields":
        nested = raw.get("normalizedData") or raw.get("normalized") or {}
        if not isinstance(nested, Mapping):
            nested = {}

        def pick(*keys: str) -> Any:
            v = _first(nested, *keys)
            return v if v is not None else _first(raw, *keys)

        port = pick("port", "destination_port", "dst_port")
        try:
            port = int(port) if port is not None else None
        except (TypeError, ValueError):
            port = None
        return cls(
            source_ip=pick("source_ip", "sourceIp", "src_ip"),
            destination_ip=pick("destination_ip", "destinationIp", "dst_ip"),
            user_id=pick("user_id", "userId", "user"),
            action=str(pick("action") or ""),
            resource=str(pick("resource") or ""),
            user_agent=pick("user_agent", "userAgent"),
            protocol=pick("protocol"),
            port=port,
            geolocation=pick("geolocation", "country"),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "source_ip": self.source_ip,
            "destination_ip": self.destination_ip,
            "user_id": self.user_id,
            "action": self.action,
            "resource": self.resource,
            "user_agent": self.user_agent,
            "protocol": self.protocol,
            "port": self.port,
            "geolocation": self.geolocation,
        }


@dataclass(frozen=True)
class SecurityEvent:
    id: str
    timestamp: datetime
    source: str
    event_type: str
    severity: Severity
    raw: Dict[str, Any]
    normalized: NormalizedFields
    correlation_id: Optional[str] = None
    threat_score: Optional[float] = None
    indicators: Tuple[str, ...] = ()
    techniques: Tuple[str, ...] = ()
    enrichment: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": to_iso_utc(self.timestamp),
            "source": self.source,
            "event_type": self.event_type,
            "severity": self.severity,
            "raw": self.raw,
            "normalized": self.normalized.as_dict(),
            "correlation_id": self.correlation_id,
            "threat_score": self.threat_score,
            "indicators": list(self.indicators),
            "techniques": list(self.techniques),
            "enrichment": self.enrichment,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "SecurityEvent":
        """Inverse of :meth:`as_dict` (stored records)."""
        return cls(
            id=str(d["id"]),
            timestamp=coerce_ts(d["timestamp"]) or now_utc(),
            source=str(d.get("source", "unknown")),
            event_type=str(d.get("event_type", "unknown")),
            severity=d.get("severity", "LOW"),
            raw=dict(d.get("raw") or {}),
            normalized=NormalizedFields(**(d.get("normalized") or {})),
            correlation_id=d.get("correlation_id"),
            threat_score=d.get("threat_score"),
            indicators=tuple(d.get("indicators") or ()),
            techniques=tuple(d.get("techniques") or ()),
            enrichment=dict(d.get("enrichment") or {}),
        )


def _severity(value: Any) -> Severity:
    s = str(value or "").strip().upper()
    return s if s in SEVERITIES else "LOW"  # type: ignore[return-value]


def _string_list(raw: Mapping[str, Any], *keys: str) -> Tuple[str, ...]:
    value = _first(raw, *keys)
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise InvalidEvent(f"{keys[0]} must be a list, got {type(value).__name__}")
    return tuple(dict.fromkeys(str(v) for v in value))


def _timestamp(raw: Mapping[str, Any], clock: Callable[[], datetime]) -> datetime:
    value = _first(raw, "timestamp", "ts", "time")
    try:
        ts = coerce_ts(value)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning("unparseable timestamp %r, using receive time", value)
        ts = None
    return ts or clock()


def parse_event(raw: Any, clock: Callable[[], datetime] = now_utc) -> SecurityEvent:
    """Normalize one raw payload.

    Missing ids and timestamps are filled in (generated id, receive time);
    a payload that is not a mapping, or whose technique or indicator field
    is neither a string nor a list, is rejected.
    """
    if not isinstance(raw, Mapping):
        raise InvalidEvent(f"security event must be an object, got {type(raw).__name__}")

    techniques = _string_list(raw, "techniques", "mitreTechniques", "mitre_techniques")
    indicators = _string_list(raw, "indicators")
    raw_data = raw.get("rawData") or raw.get("raw") or raw
    if not isinstance(raw_data, Mapping):
        raw_data = {"value": raw_data}
    return SecurityEvent(
        id=str(_first(raw, "id", "eventId", "event_id") or f"evt-{uuid.uuid4().hex[:12]}"),
        timestamp=_timestamp(raw, clock),
        source=str(_first(raw, "source") or "unknown"),
        event_type=str(_first(raw, "event_type", "eventType", "type") or "unknown"),
        severity=_severity(raw.get("severity")),
        raw=dict(raw_data),
        normalized=NormalizedFields.from_raw(raw),
        correlation_id=_first(raw, "correlation_id", "correlationId"),
        techniques=techniques,
        indicators=indicators,
    )
