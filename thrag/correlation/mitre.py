from __future__ import annotations

from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple


# Techniques the event rules and alerting know about. Extend alongside
# TECHNIQUE_RULES when new event sources are onboarded.
MITRE_MAP: List[Dict[str, str]] = [
    {
        "technique_id": "T1078",
        "technique": "Valid Accounts",
        "tactic": "Initial Access",
        "kill_chain": "initial-access",
    },
    {
        "technique_id": "T1059",
        "technique": "Command and Scripting Interpreter",
        "tactic": "Execution",
        "kill_chain": "execution",
    },
    {
        "technique_id": "T1055",
        "technique": "Process Injection",
        "tactic": "Defense Evasion",
        "kill_chain": "defense-evasion",
    },
    {
        "technique_id": "T1003",
        "technique": "OS Credential Dumping",
        "tactic": "Credential Access",
        "kill_chain": "credential-access",
    },
    {
        "technique_id": "T1071",
        "technique": "Application Layer Protocol",
        "tactic": "Command and Control",
        "kill_chain": "command-and-control",
    },
    {
        "technique_id": "T1105",
        "technique": "Ingress Tool Transfer",
        "tactic": "Command and Control",
        "kill_chain": "lateral-movement",
    },
    {
        "technique_id": "T1112",
        "technique": "Modify Registry",
        "tactic": "Defense Evasion",
        "kill_chain": "",
    },
]

_BY_ID: Dict[str, Dict[str, str]] = {m["technique_id"]: m for m in MITRE_MAP}

# Process injection, command execution, credential dumping, valid accounts.
CRITICAL_TECHNIQUES: FrozenSet[str] = frozenset({"T1055", "T1059", "T1003", "T1078"})

# (event_type substring, action substring, technique). An empty substring
# matches anything; "login" events match on type alone, "authenticate" on
# action alone.
TECHNIQUE_RULES: Tuple[Tuple[str, str, str], ...] = (
    ("process", "create", "T1059"),
    ("network", "connect", "T1071"),
    ("file", "create", "T1105"),
    ("registry", "modify", "T1112"),
    ("login", "", "T1078"),
    ("", "authenticate", "T1078"),
)


def techniques_for(event_type: str, action: str) -> List[str]:
    et = (event_type or "").lower()
    ac = (action or "").lower()
    out: List[str] = []
    for type_sub, action_sub, tid in TECHNIQUE_RULES:
        if not type_sub and not action_sub:
            continue
        if type_sub and type_sub not in et:
            continue
        if action_sub and action_sub not in ac:
            continue
        if tid not in out:
            out.append(tid)
    return out


def critical_in(techniques: Sequence[str]) -> List[str]:
    return [t for t in techniques if t in CRITICAL_TECHNIQUES]


def kill_chain_for(techniques: Sequence[str]) -> List[str]:
    """Distinct kill-chain phases in first-seen order."""
    phases: List[str] = []
    for t in techniques:
        phase = _BY_ID.get(t, {}).get("kill_chain")
        if phase and phase not in phases:
            phases.append(phase)
    return phases


def describe(technique_id: str) -> Optional[Dict[str, str]]:
    m = _BY_ID.get(technique_id)
    if m is None:
        return None
    return {"technique_id": m["technique_id"], "technique": m["technique"], "tactic": m["tactic"]}
