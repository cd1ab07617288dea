"""Event enrichment: reputation, user profile, indicators and technique mapping.

Every lookup is best-effort. A failed sub-step is recorded in
``Enrichment.errors`` and processing carries on with what succeeded.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from thrag.clients.reputation import IpReputation, ReputationService, UserDirectory, UserProfile
from thrag.correlation.mitre import techniques_for
from thrag.events.normalize import SecurityEvent
from thrag.utils.lookup import Lookup, attempt

logger = logging.getLogger(__name__)

_URL_HOST_RE = re.compile(r"https?://([^/\s\"']+)")
_HASH_RE = re.compile(r"\b[a-fA-F0-9]{32,64}\b")


@dataclass(frozen=True)
class Enrichment:
    event: SecurityEvent
    source_reputation: Optional[IpReputation] = None
    destination_reputation: Optional[IpReputation] = None
    user_profile: Optional[UserProfile] = None
    errors: List[str] = field(default_factory=list)


def extract_indicators(event: SecurityEvent) -> List[str]:
    """``ip:``, ``domain:`` and ``hash:`` indicators, de-duplicated in order."""
    out: List[str] = list(event.indicators)
    n = event.normalized
    if n.source_ip:
        out.append(f"ip:{n.source_ip}")
    if n.destination_ip:
        out.append(f"ip:{n.destination_ip}")
    content = json.dumps(event.raw, sort_keys=True, default=str)
    out.extend(f"domain:{host}" for host in _URL_HOST_RE.findall(content))
    out.extend(f"hash:{h}" for h in _HASH_RE.findall(content))
    return list(dict.fromkeys(out))


def map_techniques(event: SecurityEvent) -> List[str]:
    """Techniques supplied on the event plus those implied by type and action."""
    derived = techniques_for(event.event_type, event.normalized.action)
    return list(dict.fromkeys(list(event.techniques) + derived))


def enrich_event(
    event: SecurityEvent,
    reputation: Optional[ReputationService] = None,
    users: Optional[UserDirectory] = None,
) -> Enrichment:
    errors: List[str] = []
    data: Dict[str, Any] = dict(event.enrichment)

    def _record(name: str, res: Lookup) -> Any:
        if not res.ok:
            errors.append(f"{name}: {res.error}")
        return res.value

    src_rep = dst_rep = None
    if reputation is not None:
        if event.normalized.source_ip:
            src_rep = _record(
                "source_ip_intel",
                attempt(reputation.lookup_ip_reputation, event.normalized.source_ip, label="source ip reputation"),
            )
        if event.normalized.destination_ip:
            dst_rep = _record(
                "destination_ip_intel",
                attempt(reputation.lookup_ip_reputation, event.normalized.destination_ip, label="destination ip reputation"),
            )

    profile = None
    if users is not None and event.normalized.user_id:
        profile = _record(
            "user_profile",
            attempt(users.lookup_user_profile, event.normalized.user_id, label="user profile"),
        )

    if src_rep is not None:
        data["source_ip_intel"] = src_rep.as_dict()
    if dst_rep is not None:
        data["destination_ip_intel"] = dst_rep.as_dict()
    if profile is not None:
        data["user_profile"] = profile.as_dict()

    enriched = replace(
        event,
        indicators=tuple(extract_indicators(event)),
        techniques=tuple(map_techniques(event)),
        enrichment=data,
    )
    if errors:
        logger.info("event %s enriched with %d failed lookups", event.id, len(errors))
    return Enrichment(
        event=enriched,
        source_reputation=src_rep,
        destination_reputation=dst_rep,
        user_profile=profile,
        errors=errors,
    )
