from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from thrag.clients.channel import InMemoryChannel
from thrag.clients.knowledge import Document, LocalKnowledgeBase, extract_citations
from thrag.clients.reputation import StaticReputationService, StaticUserDirectory, UserProfile
from thrag.config import Settings, Thresholds
from thrag.runtime.processor import SecurityEventProcessor
from thrag.runtime.state import InMemoryStore
from thrag.scoring.behavior import BehaviorProfile
from thrag.scoring.threat import ThreatScoringEngine

# Monday, inside business hours.
NOW = datetime(2024, 1, 15, 14, 0, tzinfo=timezone.utc)


class Clock:
    """Settable clock shared by everything under test."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeExecutor:
    """Capability executor with canned answers, delays and failures per capability."""

    def __init__(
        self,
        responses: Optional[Dict[str, str]] = None,
        delays: Optional[Dict[str, float]] = None,
        failures: Optional[Dict[str, Exception]] = None,
    ) -> None:
        self.responses = dict(responses or {})
        self.delays = dict(delays or {})
        self.failures = dict(failures or {})
        self.calls: List[Tuple[str, str, str]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def invoke(self, capability: str, session_id: str, input_text: str) -> str:
        with self._lock:
            self.calls.append((capability, session_id, input_text))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delays.get(capability, 0.0)
            if delay:
                time.sleep(delay)
            err = self.failures.get(capability)
            if err is not None:
                raise err
            return self.responses.get(capability, f"{capability} analysis complete")
        finally:
            with self._lock:
                self.active -= 1

    def capabilities_called(self) -> List[str]:
        with self._lock:
            return [c for c, _, _ in self.calls]


class FailingKnowledge:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    def retrieve(self, query, filters, max_results=10):
        raise self.exc


def doc(
    id: str,
    content: str,
    confidence: float = 0.8,
    tags: Tuple[str, ...] = (),
    created: Optional[datetime] = None,
    title: str = "Untitled",
    source: str = "feed",
) -> Document:
    return Document(
        id=id,
        content=content,
        source=source,
        confidence=confidence,
        tags=tags,
        created=created or NOW - timedelta(days=1),
        title=title,
        citations=tuple(extract_citations(content)),
    )


def raw_event(**overrides: Any) -> Dict[str, Any]:
    base: Dict[str, Any] = {
        "id": "evt-1",
        "timestamp": "2024-01-15T14:00:00Z",
        "source": "edr",
        "event_type": "process_creation",
        "severity": "MEDIUM",
        "normalized": {
            "source_ip": "10.0.0.5",
            "action": "create",
            "resource": "/bin/sh",
        },
    }
    base.update(overrides)
    return base


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        max_parallel=3,
        capability_timeout_seconds=2.0,
        health_timeout_seconds=1.0,
        max_scheduler_rounds=50,
        database_url="sqlite://",
    )


@pytest.fixture
def thresholds() -> Thresholds:
    return Thresholds()


@pytest.fixture
def store(clock: Clock) -> InMemoryStore:
    return InMemoryStore(clock=clock)


@pytest.fixture
def channel() -> InMemoryChannel:
    return InMemoryChannel()


@pytest.fixture
def knowledge() -> LocalKnowledgeBase:
    return LocalKnowledgeBase(
        [
            doc(
                "kb-apt",
                "APT29 uses T1059 command execution and T1071 web C2. See https://attack.mitre.org/groups/G0016/",
                confidence=0.9,
                tags=("campaign", "apt"),
                title="APT29 campaign report",
            ),
            doc(
                "kb-ioc",
                "Known malicious address ip:203.0.113.66 used for phishing callbacks",
                confidence=0.85,
                tags=("ioc", "malicious"),
                title="Phishing infrastructure",
            ),
            doc(
                "kb-low",
                "Speculative ransomware chatter, CVE-2023-12345 mentioned",
                confidence=0.4,
                tags=("rumor",),
                title="Forum chatter",
            ),
        ]
    )


@pytest.fixture
def reputation() -> StaticReputationService:
    return StaticReputationService(
        {
            "203.0.113.66": {"reputation": "malicious", "country": "RU", "threat_types": ["c2"]},
            "198.51.100.0/24": "suspicious",
        }
    )


@pytest.fixture
def users() -> StaticUserDirectory:
    return StaticUserDirectory(
        [
            UserProfile(
                user_id="alice",
                risk_score=0.1,
                normal=BehaviorProfile(
                    login_hours=(9, 10, 14),
                    access_patterns=("/srv/app",),
                    location_patterns=("US",),
                    device_patterns=("chrome",),
                    risk_score=0.1,
                ),
            )
        ]
    )


@pytest.fixture
def engine(knowledge, reputation, thresholds, clock) -> ThreatScoringEngine:
    return ThreatScoringEngine(knowledge=knowledge, reputation=reputation, thresholds=thresholds, clock=clock)


@pytest.fixture
def processor(store, engine, reputation, users, channel, settings, thresholds, clock) -> SecurityEventProcessor:
    return SecurityEventProcessor(
        store=store,
        engine=engine,
        reputation=reputation,
        users=users,
        channel=channel,
        settings=settings,
        thresholds=thresholds,
        clock=clock,
    )
