from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class EventBatchRequest(BaseModel):
    events: List[Dict[str, Any]] = Field(min_length=1)


class ScenarioRequest(BaseModel):
    scenario: str = Field(min_length=1)
    context: Dict[str, Any] = Field(default_factory=dict)
    run: bool = True


class Alert(BaseModel):
    id: str
    severity: Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]
    title: str
    description: str
    techniques: List[str]
    indicators: List[str]
    recommendations: List[str]
    confidence: float
    created: str
    event_id: Optional[str] = None
    correlation_id: Optional[str] = None


class TaskView(BaseModel):
    id: str
    capability: str
    priority: str
    status: str
    dependencies: List[str]
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class SessionView(BaseModel):
    id: str
    scenario: str
    status: str
    participants: List[str]
    tasks: List[TaskView]
    context: Dict[str, Any]
    created: str
    completed: Optional[str] = None
    summary: str = ""
