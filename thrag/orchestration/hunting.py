from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from thrag.clients.knowledge import Document

logger = logging.getLogger(__name__)

_JSON_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)


@dataclass(frozen=True)
class Hypothesis:
    id: str
    title: str
    description: str
    techniques: List[str] = field(default_factory=list)
    threat_actors: List[str] = field(default_factory=list)
    indicators: List[str] = field(default_factory=list)
    confidence: float = 0.5
    based_on: List[str] = field(default_factory=list)
    status: str = "ACTIVE"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "techniques": list(self.techniques),
            "threat_actors": list(self.threat_actors),
            "indicators": list(self.indicators),
            "confidence": self.confidence,
            "based_on": list(self.based_on),
            "status": self.status,
        }


def wants_hypotheses(input_text: str) -> bool:
    text = input_text.lower()
    return "hypothes" in text or "hunt" in text


def build_hypothesis_prompt(intel: Sequence[Document], context: Optional[str] = None) -> str:
    lines = [f"- {d.source}: {d.title} (Confidence: {d.confidence})" for d in intel]
    parts = [
        "Based on the following recent threat intelligence, generate 3-5 threat hunting hypotheses:",
        "",
        "\n".join(lines) if lines else "- (no recent intelligence available)",
        "",
    ]
    if context:
        parts.extend([f"Additional context: {context}", ""])
    parts.extend(
        [
            "Respond with a JSON array of objects with the keys:",
            '"title", "description", "mitreTechniques", "threatActors", "indicators", "confidence" (0-1).',
        ]
    )
    return "\n".join(parts)


def generic_hypothesis(based_on: List[str], hid: str = "hypothesis-0") -> Hypothesis:
    return Hypothesis(
        id=hid,
        title="Generic Threat Hunt",
        description="Hunt for suspicious activities based on recent threat intelligence",
        techniques=["T1059", "T1071"],
        confidence=0.5,
        based_on=based_on,
    )


def _str_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v) for v in value]
    return []


def parse_hypotheses(response: str, intel: Sequence[Document], id_prefix: str = "hypothesis") -> List[Hypothesis]:
    """Extract the JSON array from a capability response.

    Unparsable output degrades to a single generic hypothesis.
    """
    based_on = [d.id for d in intel]
    m = _JSON_ARRAY_RE.search(response or "")
    try:
        if m is None:
            raise ValueError("no JSON array in response")
        rows = json.loads(m.group(0))
        if not isinstance(rows, list):
            raise ValueError("hypotheses are not a list")
    except ValueError as e:
        logger.warning("could not parse hypotheses: %s", e)
        return [generic_hypothesis(based_on, f"{id_prefix}-0")]

    out: List[Hypothesis] = []
    for i, row in enumerate(rows):
        if not isinstance(row, dict):
            continue
        try:
            confidence = float(row.get("confidence") or 0.5)
        except (TypeError, ValueError):
            confidence = 0.5
        out.append(
            Hypothesis(
                id=f"{id_prefix}-{i}",
                title=str(row.get("title") or "Untitled Hypothesis"),
                description=str(row.get("description") or ""),
                techniques=_str_list(row.get("mitreTechniques", row.get("techniques"))),
                threat_actors=_str_list(row.get("threatActors", row.get("threat_actors"))),
                indicators=_str_list(row.get("indicators")),
                confidence=max(0.0, min(1.0, confidence)),
                based_on=based_on,
            )
        )
    return out or [generic_hypothesis(based_on, f"{id_prefix}-0")]


# Techniques every hunt programme is expected to look for.
HUNTED_TECHNIQUES: List[str] = [
    "T1055", "T1059", "T1003", "T1071", "T1078", "T1105", "T1112",
    "T1027", "T1036", "T1053", "T1082", "T1083", "T1087", "T1135",
]


def priority_hunts(hypotheses: Sequence[Hypothesis], limit: int = 5) -> List[Hypothesis]:
    """Most confident first; ties keep generation order."""
    return sorted(hypotheses, key=lambda h: -h.confidence)[:limit]


def emerging_threats(intel: Sequence[Document], limit: int = 10) -> List[str]:
    found: List[str] = []
    for d in intel:
        if "apt" in d.title.lower():
            found.append(d.title)
        found.extend(t for t in d.tags if any(w in t for w in ("apt", "campaign", "group")))
    return list(dict.fromkeys(found))[:limit]


def coverage_gaps(hypotheses: Sequence[Hypothesis]) -> List[str]:
    covered = {t for h in hypotheses for t in h.techniques}
    return [f"MITRE ATT&CK {t} not covered by current hunt hypotheses" for t in HUNTED_TECHNIQUES if t not in covered]
