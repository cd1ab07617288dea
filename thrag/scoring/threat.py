"""Multi-factor threat scoring.

Five components, each in [0, 1], combine into the overall score:

- baseline: severity, event type and mapped techniques
- behavioral: anomaly model over the user's normal vs current behaviour
- threat_intel: indicator and campaign matches in the knowledge base
- temporal: off-hours, weekend and small-hours activity
- network: IP reputation, ports, protocols and geography

External lookups never raise out of :meth:`ThreatScoringEngine.score`; a
failed lookup contributes zero to its component.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence, Tuple

from thrag.clients.knowledge import KnowledgeRetriever, RetrievalFilters
from thrag.clients.reputation import IpReputation, ReputationService, UserProfile
from thrag.config import SETTINGS, THRESHOLDS, Thresholds
from thrag.correlation.mitre import CRITICAL_TECHNIQUES
from thrag.events.normalize import SecurityEvent
from thrag.scoring.behavior import AnomalyScorer, BehaviorProfile, UserContext, behavioral_features
from thrag.utils.lookup import attempt
from thrag.utils.time import ensure_utc, now_utc

logger = logging.getLogger(__name__)

SEVERITY_SCORES: Dict[str, float] = {"CRITICAL": 0.9, "HIGH": 0.7, "MEDIUM": 0.4, "LOW": 0.2}
HIGH_RISK_EVENT_TYPES: Tuple[str, ...] = (
    "process_creation",
    "network_connection",
    "file_modification",
    "registry_modification",
    "authentication_failure",
)
UNUSUAL_PORTS = frozenset({4444, 5555, 6666, 7777, 8888, 9999})
SUSPICIOUS_PROTOCOLS = frozenset({"irc", "p2p", "tor"})
HIGH_RISK_GEOGRAPHIES = frozenset({"CN", "RU", "KP", "IR"})
TRUSTED_SOURCES = frozenset({"internal_system", "trusted_application"})

WEIGHTS: Dict[str, float] = {
    "baseline": 0.30,
    "behavioral": 0.25,
    "threat_intel": 0.25,
    "temporal": 0.10,
    "network": 0.10,
}

CAMPAIGN_LOOKBACK = timedelta(days=30)

RiskFactorType = Literal["BEHAVIORAL", "TEMPORAL", "NETWORK", "THREAT_INTEL", "TECHNICAL"]

_FACTOR_RECOMMENDATIONS: Dict[str, str] = {
    "BEHAVIORAL": "Review user access patterns and permissions",
    "THREAT_INTEL": "Cross-reference with additional threat intelligence sources",
    "NETWORK": "Analyze network traffic for additional indicators",
    "TECHNICAL": "Execute targeted threat hunting queries",
}


def _clamp(x: float) -> float:
    if math.isnan(x):
        return 0.0
    return float(max(0.0, min(1.0, x)))


@dataclass(frozen=True)
class NetworkContext:
    source_ip: Optional[str] = None
    destination_ip: Optional[str] = None
    protocol: Optional[str] = None
    port: Optional[int] = None
    geolocation: Optional[str] = None
    # Pre-resolved reputation category; looked up when absent.
    reputation: Optional[str] = None


@dataclass(frozen=True)
class TemporalContext:
    timestamp: datetime
    hour: int
    weekday: int
    is_business_hours: bool
    is_weekend: bool

    @classmethod
    def from_timestamp(
        cls,
        ts: datetime,
        business_start: int = SETTINGS.business_hour_start,
        business_end: int = SETTINGS.business_hour_end,
    ) -> "TemporalContext":
        ts = ensure_utc(ts)
        weekend = ts.weekday() >= 5
        return cls(
            timestamp=ts,
            hour=ts.hour,
            weekday=ts.weekday(),
            is_business_hours=(not weekend) and business_start <= ts.hour < business_end,
            is_weekend=weekend,
        )


@dataclass(frozen=True)
class ScoringInput:
    event_id: str
    event_type: str
    source: str
    severity: str
    indicators: Tuple[str, ...] = ()
    techniques: Tuple[str, ...] = ()
    user_context: Optional[UserContext] = None
    network_context: Optional[NetworkContext] = None
    temporal_context: Optional[TemporalContext] = None

    @classmethod
    def from_event(
        cls,
        event: SecurityEvent,
        profile: Optional[UserProfile] = None,
        source_reputation: Optional[IpReputation] = None,
    ) -> "ScoringInput":
        """Build the scoring input for an enriched event.

        Behavioral context needs a user profile; the event's hour, resource,
        location and user agent form the current behaviour.
        """
        n = event.normalized
        user_ctx = None
        if profile is not None:
            current = BehaviorProfile(
                login_hours=(event.timestamp.hour,),
                access_patterns=(n.resource,) if n.resource else (),
                location_patterns=(n.geolocation,) if n.geolocation else (),
                device_patterns=(n.user_agent,) if n.user_agent else (),
                risk_score=profile.risk_score,
            )
            user_ctx = UserContext(user_id=profile.user_id, normal=profile.normal, current=current)

        net_ctx = None
        if n.source_ip or n.destination_ip or n.protocol or n.port is not None:
            net_ctx = NetworkContext(
                source_ip=n.source_ip,
                destination_ip=n.destination_ip,
                protocol=n.protocol,
                port=n.port,
                geolocation=n.geolocation or (source_reputation.country if source_reputation else None),
                reputation=source_reputation.category if source_reputation else None,
            )

        return cls(
            event_id=event.id,
            event_type=event.event_type,
            source=event.source,
            severity=event.severity,
            indicators=tuple(event.indicators),
            techniques=tuple(event.techniques),
            user_context=user_ctx,
            network_context=net_ctx,
            temporal_context=TemporalContext.from_timestamp(event.timestamp),
        )


@dataclass(frozen=True)
class RiskFactor:
    type: RiskFactorType
    description: str
    impact: float
    confidence: float
    evidence: Tuple[str, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "impact": self.impact,
            "confidence": self.confidence,
            "evidence": list(self.evidence),
        }


@dataclass(frozen=True)
class ScoreComponents:
    baseline: float = 0.0
    behavioral: float = 0.0
    threat_intel: float = 0.0
    temporal: float = 0.0
    network: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return {
            "baseline": self.baseline,
            "behavioral": self.behavioral,
            "threat_intel": self.threat_intel,
            "temporal": self.temporal,
            "network": self.network,
        }

    def combined(self) -> float:
        return _clamp(sum(getattr(self, name) * w for name, w in WEIGHTS.items()))


@dataclass(frozen=True)
class ThreatScore:
    event_id: str
    overall: float
    confidence: float
    components: ScoreComponents
    risk_factors: Tuple[RiskFactor, ...] = ()
    mitigating_factors: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()
    explanation: str = ""

    @property
    def risk_level(self) -> str:
        return risk_level(self.overall)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "overall": self.overall,
            "confidence": self.confidence,
            "risk_level": self.risk_level,
            "components": self.components.as_dict(),
            "risk_factors": [f.as_dict() for f in self.risk_factors],
            "mitigating_factors": list(self.mitigating_factors),
            "recommendations": list(self.recommendations),
            "explanation": self.explanation,
        }


def risk_level(score: float) -> str:
    if score >= 0.8:
        return "CRITICAL"
    if score >= 0.6:
        return "HIGH"
    if score >= 0.4:
        return "MEDIUM"
    return "LOW"


def baseline_score(inp: ScoringInput) -> float:
    score = SEVERITY_SCORES.get(inp.severity.upper(), 0.2)
    et = inp.event_type.lower()
    if any(t in et for t in HIGH_RISK_EVENT_TYPES):
        score += 0.2
    if inp.techniques:
        if any(t in CRITICAL_TECHNIQUES for t in inp.techniques):
            score += 0.3
        else:
            score += min(len(inp.techniques) * 0.1, 0.2)
    return _clamp(score)


def temporal_score(ctx: Optional[TemporalContext]) -> float:
    if ctx is None:
        return 0.0
    score = 0.0
    if not ctx.is_business_hours:
        score += 0.3
    if ctx.is_weekend:
        score += 0.2
    if 2 <= ctx.hour <= 5:
        score += 0.4
    return _clamp(score)


def confidence_for(inp: ScoringInput) -> float:
    """0.5 base, raised by each kind of optional context present."""
    c = 0.5
    if inp.user_context is not None:
        c += 0.2
    if inp.network_context is not None:
        c += 0.15
    if inp.temporal_context is not None:
        c += 0.10
    if inp.indicators:
        c += 0.10
    if inp.techniques:
        c += 0.05
    return _clamp(c)


def mitigating_factors(inp: ScoringInput, thresholds: Thresholds = THRESHOLDS) -> List[str]:
    out: List[str] = []
    if inp.temporal_context is not None and inp.temporal_context.is_business_hours:
        out.append("Activity occurred during normal business hours")
    if inp.source in TRUSTED_SOURCES:
        out.append("Event originated from trusted internal source")
    if inp.severity.upper() == "LOW":
        out.append("Event classified as low severity")
    if inp.user_context is not None and inp.user_context.normal.risk_score < thresholds.trusted_user_risk:
        out.append("User has established low-risk behavior pattern")
    return out


def risk_factors(inp: ScoringInput, c: ScoreComponents) -> List[RiskFactor]:
    out: List[RiskFactor] = []
    if c.behavioral > 0.5:
        out.append(
            RiskFactor(
                type="BEHAVIORAL",
                description="User behavior deviates significantly from established patterns",
                impact=c.behavioral,
                confidence=0.8,
                evidence=(
                    "Unusual login times",
                    "Atypical resource access patterns",
                    "Abnormal location or device usage",
                ),
            )
        )
    if c.threat_intel > 0.6:
        out.append(
            RiskFactor(
                type="THREAT_INTEL",
                description="Event correlates with known threat intelligence",
                impact=c.threat_intel,
                confidence=0.9,
                evidence=(
                    "Indicators match known malicious signatures",
                    "Techniques associated with recent campaigns",
                    "High-confidence threat intelligence correlation",
                ),
            )
        )
    if c.temporal > 0.3:
        t = inp.temporal_context
        evidence = []
        if t is not None and t.is_weekend:
            evidence.append("Weekend activity")
        if t is not None and not t.is_business_hours:
            evidence.append("Off-hours activity")
        evidence.append("Unusual time-of-day pattern")
        out.append(
            RiskFactor(
                type="TEMPORAL",
                description="Activity occurred during unusual time periods",
                impact=c.temporal,
                confidence=0.7,
                evidence=tuple(evidence),
            )
        )
    if c.network > 0.4:
        out.append(
            RiskFactor(
                type="NETWORK",
                description="Network activity shows suspicious characteristics",
                impact=c.network,
                confidence=0.8,
                evidence=(
                    "Suspicious IP addresses involved",
                    "Unusual ports or protocols",
                    "Geographic anomalies detected",
                ),
            )
        )
    if len(inp.techniques) > 2:
        out.append(
            RiskFactor(
                type="TECHNICAL",
                description="Multiple attack techniques detected",
                impact=min(len(inp.techniques) * 0.2, 1.0),
                confidence=0.9,
                evidence=tuple(f"MITRE ATT&CK technique: {t}" for t in inp.techniques),
            )
        )
    return out


def recommendations(score: float, factors: Sequence[RiskFactor]) -> List[str]:
    if score >= 0.8:
        recs = [
            "Immediate investigation required - high threat score detected",
            "Consider isolating affected systems",
            "Escalate to incident response team",
        ]
    elif score >= 0.6:
        recs = [
            "Prioritize investigation of this event",
            "Monitor for related activities",
            "Review security controls for affected assets",
        ]
    elif score >= 0.4:
        recs = ["Include in routine security monitoring", "Correlate with other security events"]
    else:
        recs = ["Log for historical analysis", "Monitor for pattern development"]
    for f in factors:
        r = _FACTOR_RECOMMENDATIONS.get(f.type)
        if r:
            recs.append(r)
    return list(dict.fromkeys(recs))


def explain(event_id: str, score: float, factors: Sequence[RiskFactor]) -> str:
    parts = [f"Event {event_id} received a threat score of {score:.3f} based on multiple risk factors."]
    if factors:
        parts.append("Key contributing factors include:")
        for i, f in enumerate(factors, start=1):
            parts.append(f"{i}. {f.description} (impact: {f.impact:.2f})")
    parts.append(f"Overall risk level: {risk_level(score)}")
    return " ".join(parts)


class ThreatScoringEngine:
    """Scores events; holds only injected collaborators, no per-call state."""

    def __init__(
        self,
        knowledge: Optional[KnowledgeRetriever] = None,
        reputation: Optional[ReputationService] = None,
        anomaly: Optional[AnomalyScorer] = None,
        thresholds: Thresholds = THRESHOLDS,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.knowledge = knowledge
        self.reputation = reputation
        self.anomaly = anomaly
        self.thresholds = thresholds
        self.clock = clock

    def behavioral_score(self, inp: ScoringInput) -> float:
        if inp.user_context is None or self.anomaly is None:
            return 0.0
        features = behavioral_features(inp.user_context)
        res = attempt(self.anomaly.score, features, label="behavioral anomaly")
        return _clamp(res.unwrap_or(0.0))

    def threat_intel_score(self, inp: ScoringInput) -> float:
        if self.knowledge is None:
            return 0.0
        score = 0.0
        ioc_filters = RetrievalFilters(
            min_confidence=self.thresholds.intel_min_confidence,
            tags=("ioc", "indicator", "malicious"),
        )
        for indicator in inp.indicators:
            docs = attempt(self.knowledge.retrieve, indicator, ioc_filters, 3, label=f"intel for {indicator}").unwrap_or([])
            if docs:
                avg = sum(d.confidence for d in docs) / len(docs)
                score = max(score, avg)

        if inp.techniques:
            anchor = inp.temporal_context.timestamp if inp.temporal_context is not None else self.clock()
            campaign_filters = RetrievalFilters(
                min_confidence=self.thresholds.campaign_min_confidence,
                date_range=(anchor - CAMPAIGN_LOOKBACK, anchor),
            )
            query = f"{' '.join(inp.techniques)} campaign attack recent"
            docs = attempt(self.knowledge.retrieve, query, campaign_filters, 5, label="campaign intel").unwrap_or([])
            if docs:
                score = max(score, 0.7)
        return _clamp(score)

    def network_score(self, inp: ScoringInput) -> float:
        net = inp.network_context
        if net is None:
            return 0.0
        score = 0.0
        category = net.reputation
        if category is None and net.source_ip and self.reputation is not None:
            rep = attempt(self.reputation.lookup_ip_reputation, net.source_ip, label="ip reputation").value
            category = rep.category if rep is not None else None
        if category == "malicious":
            score += 0.8
        elif category == "suspicious":
            score += 0.4
        if net.port is not None and net.port in UNUSUAL_PORTS:
            score += 0.3
        if net.protocol and net.protocol.lower() in SUSPICIOUS_PROTOCOLS:
            score += 0.5
        if net.geolocation and net.geolocation.upper() in HIGH_RISK_GEOGRAPHIES:
            score += 0.3
        return _clamp(score)

    def score(self, inp: ScoringInput) -> ThreatScore:
        components = ScoreComponents(
            baseline=baseline_score(inp),
            behavioral=self.behavioral_score(inp),
            threat_intel=self.threat_intel_score(inp),
            temporal=temporal_score(inp.temporal_context),
            network=self.network_score(inp),
        )
        overall = components.combined()
        factors = risk_factors(inp, components)
        result = ThreatScore(
            event_id=inp.event_id,
            overall=overall,
            confidence=confidence_for(inp),
            components=components,
            risk_factors=tuple(factors),
            mitigating_factors=tuple(mitigating_factors(inp, self.thresholds)),
            recommendations=tuple(recommendations(overall, factors)),
            explanation=explain(inp.event_id, overall, factors),
        )
        logger.debug("scored %s overall=%.3f confidence=%.3f", inp.event_id, overall, result.confidence)
        return result

    def score_event(
        self,
        event: SecurityEvent,
        profile: Optional[UserProfile] = None,
        source_reputation: Optional[IpReputation] = None,
    ) -> ThreatScore:
        return self.score(ScoringInput.from_event(event, profile, source_reputation))
