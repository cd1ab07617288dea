"""Scenario decomposition: which capabilities to involve and how their tasks depend."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from thrag.errors import InvalidScenario
from thrag.orchestration.tasks import Capability, Priority, Session, SharedContext, Task, new_task
from thrag.utils.time import now_utc

logger = logging.getLogger(__name__)

# Keyword triggers per capability, checked as lower-case substrings.
CAPABILITY_KEYWORDS: Dict[Capability, Tuple[str, ...]] = {
    Capability.INTELLIGENCE_ANALYST: ("threat", "attack", "malware"),
    Capability.INCIDENT_COMMANDER: ("incident", "breach", "compromise"),
    Capability.FORENSICS_INVESTIGATOR: ("investigate", "forensic", "evidence"),
    Capability.COMPLIANCE_ADVISOR: ("compliance", "audit", "regulation"),
    Capability.RISK_ANALYST: ("score", "risk", "triage", "alert"),
    Capability.COMMUNICATION_SPECIALIST: ("report", "communication", "stakeholder"),
}

# Planning order; also the FIFO order of the generated tasks.
PLAN_ORDER: Tuple[Capability, ...] = (
    Capability.THREAT_HUNTER,
    Capability.INTELLIGENCE_ANALYST,
    Capability.INCIDENT_COMMANDER,
    Capability.FORENSICS_INVESTIGATOR,
    Capability.COMPLIANCE_ADVISOR,
    Capability.RISK_ANALYST,
    Capability.COMMUNICATION_SPECIALIST,
)

PRIORITIES: Dict[Capability, Priority] = {
    Capability.THREAT_HUNTER: Priority.HIGH,
    Capability.INTELLIGENCE_ANALYST: Priority.HIGH,
    Capability.INCIDENT_COMMANDER: Priority.CRITICAL,
    Capability.FORENSICS_INVESTIGATOR: Priority.MEDIUM,
    Capability.COMPLIANCE_ADVISOR: Priority.MEDIUM,
    Capability.RISK_ANALYST: Priority.HIGH,
    Capability.COMMUNICATION_SPECIALIST: Priority.LOW,
}

SKILLS: Dict[Capability, List[str]] = {
    Capability.THREAT_HUNTER: ["threat_analysis", "hunt_generation"],
    Capability.INTELLIGENCE_ANALYST: ["threat_intelligence", "correlation"],
    Capability.INCIDENT_COMMANDER: ["incident_response", "coordination"],
    Capability.FORENSICS_INVESTIGATOR: ["forensics", "evidence_collection"],
    Capability.COMPLIANCE_ADVISOR: ["compliance", "regulatory_analysis"],
    Capability.RISK_ANALYST: ["event_scoring", "correlation"],
    Capability.COMMUNICATION_SPECIALIST: ["communication", "reporting"],
}

INSTRUCTIONS: Dict[Capability, str] = {
    Capability.THREAT_HUNTER: "Analyze the following security scenario and generate threat hunting hypotheses: {scenario}",
    Capability.INTELLIGENCE_ANALYST: "Provide threat intelligence analysis for: {scenario}",
    Capability.INCIDENT_COMMANDER: "Create incident response plan for: {scenario}",
    Capability.FORENSICS_INVESTIGATOR: "Provide forensic investigation guidance for: {scenario}",
    Capability.COMPLIANCE_ADVISOR: "Assess compliance implications of: {scenario}",
    Capability.RISK_ANALYST: "Score and correlate the security events attached to: {scenario}",
    Capability.COMMUNICATION_SPECIALIST: "Prepare communication materials for: {scenario}",
}


CAPABILITY_NAMES = frozenset(c.value for c in Capability)


def required_capabilities(scenario: str, context: Optional[Dict[str, Any]] = None) -> List[Capability]:
    """The threat hunter always takes part; the rest are keyword driven."""
    text = scenario.lower()
    chosen = {Capability.THREAT_HUNTER}
    for cap, words in CAPABILITY_KEYWORDS.items():
        if any(w in text for w in words):
            chosen.add(cap)
    if context and context.get("events"):
        chosen.add(Capability.RISK_ANALYST)
    return [c for c in PLAN_ORDER if c in chosen]


def task_for(capability: Capability, scenario: str, created: Optional[datetime] = None, **kwargs: Any) -> Task:
    return new_task(
        capability,
        PRIORITIES[capability],
        INSTRUCTIONS[capability].format(scenario=scenario),
        required_skills=SKILLS[capability],
        created=created,
        **kwargs,
    )


def plan_tasks(scenario: str, capabilities: List[Capability], clock: Callable[[], datetime] = now_utc) -> List[Task]:
    created = clock()
    tasks = [task_for(c, scenario, created=created) for c in capabilities]
    by_cap = {t.capability: t for t in tasks}

    analyst = by_cap.get(Capability.INTELLIGENCE_ANALYST)
    hunter = by_cap.get(Capability.THREAT_HUNTER)
    if analyst is not None and hunter is not None:
        analyst.dependencies = [hunter.id]

    comms = by_cap.get(Capability.COMMUNICATION_SPECIALIST)
    if comms is not None:
        comms.dependencies = [t.id for t in tasks if t is not comms]
    return tasks


def plan_session(
    scenario_text: str,
    initial_context: Optional[Dict[str, Any]] = None,
    clock: Callable[[], datetime] = now_utc,
) -> Session:
    if scenario_text is None or not str(scenario_text).strip():
        raise InvalidScenario("scenario text is empty")
    scenario = str(scenario_text).strip()
    reserved = [k for k in (initial_context or {}) if str(k).split(".", 1)[0] in CAPABILITY_NAMES]
    if reserved:
        raise InvalidScenario(f"initial context keys are reserved for task results: {sorted(reserved)}")
    capabilities = required_capabilities(scenario, initial_context)
    tasks = plan_tasks(scenario, capabilities, clock)
    session = Session(
        id=f"sess_{uuid.uuid4().hex[:12]}",
        scenario=scenario,
        participants=capabilities,
        tasks=tasks,
        context=SharedContext(initial_context),
        created=clock(),
    )
    logger.info(
        "planned session %s: %s",
        session.id,
        ", ".join(f"{t.capability.value}({t.priority.name})" for t in tasks),
    )
    return session
