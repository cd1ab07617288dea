from __future__ import annotations

import pytest

from conftest import NOW, doc
from thrag.errors import InvalidScenario
from thrag.orchestration.hunting import (
    HUNTED_TECHNIQUES,
    Hypothesis,
    coverage_gaps,
    emerging_threats,
    generic_hypothesis,
    parse_hypotheses,
    priority_hunts,
    wants_hypotheses,
)
from thrag.orchestration.planner import plan_session, required_capabilities
from thrag.orchestration.tasks import Capability, Priority, Session, SharedContext, TaskStatus


def test_threat_hunter_always_participates():
    assert required_capabilities("quarterly review") == [Capability.THREAT_HUNTER]


def test_keywords_select_capabilities_in_plan_order():
    caps = required_capabilities("Malware BREACH needs a forensic look, an audit and a stakeholder report")
    assert caps == [
        Capability.THREAT_HUNTER,
        Capability.INTELLIGENCE_ANALYST,
        Capability.INCIDENT_COMMANDER,
        Capability.FORENSICS_INVESTIGATOR,
        Capability.COMPLIANCE_ADVISOR,
        Capability.COMMUNICATION_SPECIALIST,
    ]


def test_attached_events_add_risk_analyst():
    caps = required_capabilities("look at this", {"events": [{"id": "e1"}]})
    assert caps == [Capability.THREAT_HUNTER, Capability.RISK_ANALYST]


def test_plan_dependencies_and_priorities():
    session = plan_session("ransomware attack, incident report for stakeholders", clock=lambda: NOW)
    by_cap = {t.capability: t for t in session.tasks}

    hunter = by_cap[Capability.THREAT_HUNTER]
    analyst = by_cap[Capability.INTELLIGENCE_ANALYST]
    commander = by_cap[Capability.INCIDENT_COMMANDER]
    comms = by_cap[Capability.COMMUNICATION_SPECIALIST]

    assert analyst.dependencies == [hunter.id]
    assert hunter.dependencies == []
    assert commander.dependencies == []
    assert set(comms.dependencies) == {hunter.id, analyst.id, commander.id}
    assert commander.priority == Priority.CRITICAL
    assert comms.priority == Priority.LOW
    assert all(t.status == TaskStatus.PENDING for t in session.tasks)
    assert all(t.created == NOW for t in session.tasks)
    assert len({t.id for t in session.tasks}) == len(session.tasks)
    assert session.participants == [t.capability for t in session.tasks]
    assert commander.input_text == "Create incident response plan for: ransomware attack, incident report for stakeholders"


@pytest.mark.parametrize("text", ["", "   ", None])
def test_blank_scenario_rejected(text):
    with pytest.raises(InvalidScenario):
        plan_session(text)


def test_initial_context_is_owned_by_initial():
    session = plan_session("threat review", {"asset": "db01"})
    assert session.context.get("asset") == "db01"
    assert session.context.owner("asset") == "initial"


@pytest.mark.parametrize("key", ["threat_hunter", "forensics_investigator.task_1"])
def test_initial_context_cannot_claim_result_keys(key):
    with pytest.raises(InvalidScenario):
        plan_session("compliance audit", {key: "prior notes"})


def test_shared_context_single_writer():
    ctx = SharedContext()
    ctx.put("threat_hunter", {"output": "x"}, owner="task_1")
    with pytest.raises(KeyError):
        ctx.put("threat_hunter", {"output": "y"}, owner="task_2")
    assert ctx.get("threat_hunter") == {"output": "x"}


def test_session_survives_storage_round_trip():
    session = plan_session("malware incident", {"asset": "db01"}, clock=lambda: NOW)
    again = Session.from_dict(session.as_dict())
    assert [t.id for t in again.tasks] == [t.id for t in session.tasks]
    assert [t.sequence for t in again.tasks] == [t.sequence for t in session.tasks]
    assert again.context.snapshot() == {"asset": "db01"}
    assert again.participants == session.participants


def test_hypothesis_parsing():
    assert wants_hypotheses("Generate threat hunting hypotheses")
    assert not wants_hypotheses("Summarize the incident")

    response = (
        "Here you go:\n"
        '[{"title": "C2 beacons", "description": "look for beacons", "mitreTechniques": ["T1071"], '
        '"threatActors": ["APT29"], "indicators": ["domain:evil.example.com"], "confidence": 0.8}]'
    )
    hyps = parse_hypotheses(response, [], id_prefix="h")
    assert len(hyps) == 1
    assert hyps[0].id == "h-0"
    assert hyps[0].techniques == ["T1071"]
    assert hyps[0].confidence == pytest.approx(0.8)


def test_unparsable_hypotheses_fall_back_to_generic():
    hyps = parse_hypotheses("no structured output", [], id_prefix="h")
    assert hyps == [generic_hypothesis([], "h-0")]


def test_priority_hunts_most_confident_first():
    hyps = [Hypothesis(f"h-{i}", "t", "d", confidence=c) for i, c in enumerate([0.4, 0.9, 0.6, 0.9, 0.2, 0.7])]
    assert [h.id for h in priority_hunts(hyps)] == ["h-1", "h-3", "h-5", "h-2", "h-0"]


def test_emerging_threats_from_titles_and_tags():
    intel = [
        doc("a", "x", title="APT41 returns", tags=("campaign-q1", "ransomware")),
        doc("b", "y", title="Patch notes", tags=("threat-group",)),
        doc("c", "z", title="apt41 returns", tags=("campaign-q1",)),
    ]
    assert emerging_threats(intel) == ["APT41 returns", "campaign-q1", "threat-group", "apt41 returns"]


def test_coverage_gaps_name_unhunted_techniques():
    gaps = coverage_gaps([generic_hypothesis([])])
    assert len(gaps) == len(HUNTED_TECHNIQUES) - 2
    assert "MITRE ATT&CK T1055 not covered by current hunt hypotheses" in gaps
    assert not any("T1059" in g or "T1071" in g for g in gaps)
