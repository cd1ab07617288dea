"""Task and session model for capability orchestration."""

from __future__ import annotations

import itertools
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from thrag.utils.time import coerce_ts, now_utc, to_iso_utc


class Capability(str, Enum):
    THREAT_HUNTER = "threat_hunter"
    INTELLIGENCE_ANALYST = "intelligence_analyst"
    INCIDENT_COMMANDER = "incident_commander"
    FORENSICS_INVESTIGATOR = "forensics_investigator"
    COMPLIANCE_ADVISOR = "compliance_advisor"
    COMMUNICATION_SPECIALIST = "communication_specialist"
    RISK_ANALYST = "risk_analyst"


class Priority(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


_seq_lock = threading.Lock()
_seq = itertools.count(1)


def next_sequence() -> int:
    with _seq_lock:
        return next(_seq)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return to_iso_utc(dt) if dt is not None else None


@dataclass
class TaskResult:
    output: str
    confidence: float = 0.8
    sources: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    follow_up_tasks: List["Task"] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "output": self.output,
            "confidence": self.confidence,
            "sources": list(self.sources),
            "recommendations": list(self.recommendations),
            "follow_up_task_ids": [t.id for t in self.follow_up_tasks],
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TaskResult":
        # Follow-ups were already appended to the session when first recorded.
        return cls(
            output=str(d.get("output", "")),
            confidence=float(d.get("confidence", 0.8)),
            sources=list(d.get("sources") or []),
            recommendations=list(d.get("recommendations") or []),
            metadata=dict(d.get("metadata") or {}),
        )


@dataclass
class Task:
    id: str
    capability: Capability
    priority: Priority
    input_text: str
    context: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    required_skills: List[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    created: datetime = field(default_factory=now_utc)
    started: Optional[datetime] = None
    completed: Optional[datetime] = None
    result: Optional[TaskResult] = None
    error: Optional[str] = None
    sequence: int = field(default_factory=next_sequence)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "capability": self.capability.value,
            "priority": self.priority.name,
            "input_text": self.input_text,
            "context": self.context,
            "dependencies": list(self.dependencies),
            "required_skills": list(self.required_skills),
            "status": self.status.value,
            "created": _iso(self.created),
            "started": _iso(self.started),
            "completed": _iso(self.completed),
            "result": self.result.as_dict() if self.result is not None else None,
            "error": self.error,
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Task":
        return cls(
            id=d["id"],
            capability=Capability(d["capability"]),
            priority=Priority[d["priority"]],
            input_text=d.get("input_text", ""),
            context=dict(d.get("context") or {}),
            dependencies=list(d.get("dependencies") or []),
            required_skills=list(d.get("required_skills") or []),
            status=TaskStatus(d.get("status", "PENDING")),
            created=coerce_ts(d.get("created")) or now_utc(),
            started=coerce_ts(d.get("started")),
            completed=coerce_ts(d.get("completed")),
            result=TaskResult.from_dict(d["result"]) if d.get("result") else None,
            error=d.get("error"),
            sequence=int(d.get("sequence") or next_sequence()),
        )


def new_task(
    capability: Capability,
    priority: Priority,
    input_text: str,
    dependencies: Optional[List[str]] = None,
    context: Optional[Dict[str, Any]] = None,
    required_skills: Optional[List[str]] = None,
    created: Optional[datetime] = None,
) -> Task:
    return Task(
        id=f"task_{uuid.uuid4().hex[:12]}",
        capability=capability,
        priority=priority,
        input_text=input_text,
        context=dict(context or {}),
        dependencies=list(dependencies or []),
        required_skills=list(required_skills or []),
        created=created or now_utc(),
    )


class SharedContext:
    """Append-only key/value map owned by a session.

    Each key has exactly one writer; writing a key twice raises.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._values: Dict[str, Any] = {}
        self._owners: Dict[str, str] = {}
        for k, v in (initial or {}).items():
            self.put(k, v, owner="initial")

    def put(self, key: str, value: Any, owner: str) -> None:
        if key in self._values:
            raise KeyError(f"context key {key!r} already written by {self._owners[key]}")
        self._values[key] = value
        self._owners[key] = owner

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def owner(self, key: str) -> Optional[str]:
        return self._owners.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def items(self) -> List[Tuple[str, Any]]:
        return list(self._values.items())

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._values)

    def as_dict(self) -> Dict[str, Any]:
        return {"values": dict(self._values), "owners": dict(self._owners)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SharedContext":
        ctx = cls()
        owners = d.get("owners") or {}
        for k, v in (d.get("values") or {}).items():
            ctx.put(k, v, owner=owners.get(k, "initial"))
        return ctx


@dataclass
class Session:
    id: str
    scenario: str
    participants: List[Capability]
    tasks: List[Task]
    context: SharedContext = field(default_factory=SharedContext)
    status: SessionStatus = SessionStatus.ACTIVE
    created: datetime = field(default_factory=now_utc)
    completed: Optional[datetime] = None
    summary: str = ""

    def task(self, task_id: str) -> Optional[Task]:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None

    def by_status(self, status: TaskStatus) -> List[Task]:
        return [t for t in self.tasks if t.status == status]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "scenario": self.scenario,
            "participants": [c.value for c in self.participants],
            "tasks": [t.as_dict() for t in self.tasks],
            "context": self.context.as_dict(),
            "status": self.status.value,
            "created": _iso(self.created),
            "completed": _iso(self.completed),
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Session":
        return cls(
            id=d["id"],
            scenario=d.get("scenario", ""),
            participants=[Capability(c) for c in d.get("participants") or []],
            tasks=[Task.from_dict(t) for t in d.get("tasks") or []],
            context=SharedContext.from_dict(d.get("context") or {}),
            status=SessionStatus(d.get("status", "ACTIVE")),
            created=coerce_ts(d.get("created")) or now_utc(),
            completed=coerce_ts(d.get("completed")),
            summary=d.get("summary", ""),
        )
