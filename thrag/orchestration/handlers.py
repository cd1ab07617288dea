"""Per-capability task handlers.

Every :class:`Capability` has exactly one handler in :data:`HANDLERS`. Most
capabilities are a plain executor call; the threat hunter, intelligence
analyst and risk analyst add retrieval or event scoring around it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from thrag.clients.capability import CapabilityExecutor
from thrag.clients.knowledge import (
    KnowledgeRetriever,
    RetrievalFilters,
    all_citations,
    overall_confidence,
)
from thrag.config import THRESHOLDS, Thresholds
from thrag.errors import CapabilityUnavailable
from thrag.orchestration.hunting import (
    build_hypothesis_prompt,
    coverage_gaps,
    emerging_threats,
    parse_hypotheses,
    priority_hunts,
    wants_hypotheses,
)
from thrag.orchestration.planner import task_for
from thrag.orchestration.tasks import Capability, Priority, Task, TaskResult, new_task
from thrag.runtime.processor import SecurityEventProcessor
from thrag.utils.lookup import attempt
from thrag.utils.time import now_utc

logger = logging.getLogger(__name__)

HUNT_LOOKBACK = timedelta(days=30)


@dataclass(frozen=True)
class Invocation:
    """What a handler sees: its task plus a snapshot of the session."""

    task: Task
    session_id: str
    scenario: str
    shared: Dict[str, Any] = field(default_factory=dict)
    capabilities: Tuple[Capability, ...] = ()


@dataclass(frozen=True)
class HandlerDeps:
    executor: CapabilityExecutor
    knowledge: Optional[KnowledgeRetriever] = None
    processor: Optional[SecurityEventProcessor] = None
    thresholds: Thresholds = THRESHOLDS
    clock: Callable[[], datetime] = now_utc


Handler = Callable[[Invocation, HandlerDeps], TaskResult]


def _render(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, sort_keys=True, default=str)


def prepare_prompt(task: Task, shared: Dict[str, Any]) -> str:
    parts = [
        f"Task: {task.input_text}",
        f"Priority: {task.priority.name}",
        f"Required Capabilities: {', '.join(task.required_skills)}",
    ]
    if shared:
        parts.append("Shared Context:")
        for k, v in shared.items():
            parts.append(f"{k}: {_render(v)}")
    if task.context:
        parts.append("Task-specific Context:")
        for k, v in task.context.items():
            parts.append(f"{k}: {_render(v)}")
    return "\n".join(parts)


def _follow_ups(rows: Any, parent: Task) -> List[Task]:
    out: List[Task] = []
    if not isinstance(rows, list):
        return out
    for row in rows:
        if not isinstance(row, dict):
            continue
        try:
            cap = Capability(row.get("capability"))
            prio = Priority[str(row.get("priority", "MEDIUM")).upper()]
        except (ValueError, KeyError):
            logger.warning("ignoring follow-up with unknown capability/priority: %r", row)
            continue
        out.append(
            new_task(
                cap,
                prio,
                str(row.get("input_text") or row.get("input") or ""),
                dependencies=[parent.id],
                context=row.get("context") if isinstance(row.get("context"), dict) else None,
            )
        )
    return out


def result_from_output(output: str, task: Task, confidence: float = 0.8) -> TaskResult:
    """Plain text, or a JSON object that may carry structured fields."""
    try:
        body = json.loads(output)
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return TaskResult(output=output, confidence=confidence)
    try:
        conf = float(body.get("confidence", confidence))
    except (TypeError, ValueError):
        conf = confidence
    return TaskResult(
        output=str(body.get("output") or body.get("summary") or output),
        confidence=max(0.0, min(1.0, conf)),
        sources=[str(s) for s in body.get("sources") or []],
        recommendations=[str(r) for r in body.get("recommendations") or []],
        follow_up_tasks=_follow_ups(body.get("follow_up_tasks"), task),
    )


def invoke_basic(inv: Invocation, deps: HandlerDeps) -> TaskResult:
    output = deps.executor.invoke(inv.task.capability.value, inv.session_id, prepare_prompt(inv.task, inv.shared))
    return result_from_output(output, inv.task)


def handle_threat_hunter(inv: Invocation, deps: HandlerDeps) -> TaskResult:
    if not wants_hypotheses(inv.task.input_text):
        return invoke_basic(inv, deps)

    intel = []
    if deps.knowledge is not None:
        now = deps.clock()
        filters = RetrievalFilters(
            min_confidence=deps.thresholds.intel_min_confidence,
            date_range=(now - HUNT_LOOKBACK, now),
        )
        intel = attempt(deps.knowledge.retrieve, inv.scenario, filters, 10, label="hunt intel").unwrap_or([])

    prompt = build_hypothesis_prompt(intel, context=prepare_prompt(inv.task, inv.shared))
    response = deps.executor.invoke(inv.task.capability.value, inv.session_id, prompt)
    hypotheses = parse_hypotheses(response, intel, id_prefix=f"hypothesis-{inv.task.id}")
    sources: List[str] = []
    for h in hypotheses:
        sources.extend(h.based_on)
    return TaskResult(
        output=f"Generated {len(hypotheses)} threat hunting hypotheses based on current threat landscape",
        confidence=0.85,
        sources=list(dict.fromkeys(sources)),
        recommendations=[
            "Execute generated hunt queries to validate hypotheses",
            "Monitor for indicators identified in the hypotheses",
            "Correlate findings with existing security events",
        ],
        metadata={
            "hypotheses": [h.as_dict() for h in hypotheses],
            "priority_hunts": [h.id for h in priority_hunts(hypotheses)],
            "emerging_threats": emerging_threats(intel),
            "coverage_gaps": coverage_gaps(hypotheses),
        },
    )


def handle_intelligence_analyst(inv: Invocation, deps: HandlerDeps) -> TaskResult:
    docs = []
    if deps.knowledge is not None:
        filters = RetrievalFilters(min_confidence=deps.thresholds.analyst_min_confidence)
        docs = attempt(deps.knowledge.retrieve, inv.task.input_text, filters, 5, label="analyst retrieval").unwrap_or([])

    retrieved = "\n\n---\n\n".join(f"Source: {d.source} (Confidence: {d.confidence})\n{d.content}" for d in docs)
    prompt = prepare_prompt(inv.task, inv.shared)
    if retrieved:
        prompt = f"{prompt}\n\nRetrieved Intelligence:\n{retrieved}"
    answer = deps.executor.invoke(inv.task.capability.value, inv.session_id, prompt)
    if not answer.strip():
        raise CapabilityUnavailable("intelligence analyst returned no response")
    return TaskResult(
        output=answer,
        confidence=overall_confidence(docs),
        sources=[d.id for d in docs],
        recommendations=[
            "Cross-reference findings with additional intelligence sources",
            "Monitor for related indicators across the environment",
            "Update threat hunting queries based on new intelligence",
        ],
        metadata={
            "sources": [d.as_dict() for d in docs],
            "citations": all_citations(docs),
        },
    )


def handle_risk_analyst(inv: Invocation, deps: HandlerDeps) -> TaskResult:
    if deps.processor is None:
        raise CapabilityUnavailable("risk analyst needs an event processor")
    events = inv.task.context.get("events") or inv.shared.get("events") or []
    if not isinstance(events, list):
        raise CapabilityUnavailable("risk analyst expects a list of events")

    batch = deps.processor.process_batch(events)
    scores = [r.threat_score for r in batch.results]
    alerts = [a for r in batch.results for a in r.alerts]
    correlation_ids = [cid for r in batch.results for cid in r.correlation_ids]
    max_score = max((s.overall for s in scores), default=0.0)
    confidence = sum(s.confidence for s in scores) / len(scores) if scores else 0.0

    recs: List[str] = []
    for a in alerts:
        recs.extend(a.recommendations)
    top = max(scores, key=lambda s: s.overall, default=None)
    if top is not None:
        recs.extend(top.recommendations)

    follow_ups: List[Task] = []
    critical = [a for a in alerts if a.severity == "CRITICAL"]
    if critical and Capability.INCIDENT_COMMANDER not in inv.capabilities:
        follow_ups.append(
            task_for(
                Capability.INCIDENT_COMMANDER,
                inv.scenario,
                dependencies=[inv.task.id],
                context={"critical_alerts": [a.as_dict() for a in critical]},
            )
        )

    return TaskResult(
        output=(
            f"Scored {len(batch.results)} events (max threat score {max_score:.3f}); "
            f"{len(alerts)} alerts, {len(correlation_ids)} correlations, {len(batch.failures)} rejected"
        ),
        confidence=confidence,
        sources=[r.event_id for r in batch.results],
        recommendations=list(dict.fromkeys(recs)),
        follow_up_tasks=follow_ups,
        metadata={
            "max_score": max_score,
            "alerts": [a.as_dict() for a in alerts],
            "correlation_ids": correlation_ids,
            "failures": batch.failures,
        },
    )


HANDLERS: Dict[Capability, Handler] = {
    Capability.THREAT_HUNTER: handle_threat_hunter,
    Capability.INTELLIGENCE_ANALYST: handle_intelligence_analyst,
    Capability.INCIDENT_COMMANDER: invoke_basic,
    Capability.FORENSICS_INVESTIGATOR: invoke_basic,
    Capability.COMPLIANCE_ADVISOR: invoke_basic,
    Capability.COMMUNICATION_SPECIALIST: invoke_basic,
    Capability.RISK_ANALYST: handle_risk_analyst,
}
