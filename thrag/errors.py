"""Error taxonomy shared by the orchestrator, scoring engine and correlator."""

from __future__ import annotations

from typing import List, Optional


class ThragError(Exception):
    """Base class for all errors raised by this package."""


class InvalidScenario(ThragError):
    """Orchestration input rejected before scheduling."""


class InvalidEvent(ThragError):
    """A raw security event that cannot be normalized."""


class CapabilityUnavailable(ThragError):
    """The capability executor could not be reached or refused the call."""


class CapabilityTimeout(ThragError):
    """A capability invocation exceeded its time budget."""


class SchedulingDeadlock(ThragError):
    """No task can make progress: cyclic or unsatisfiable dependencies."""

    def __init__(self, message: str, session_id: Optional[str] = None, pending: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.pending = list(pending or [])


class SessionInProgress(ThragError):
    """``run_session`` was re-entered for a session that is already running."""


class RetrievalError(ThragError):
    """Knowledge retrieval failed; callers treat it as an empty result set."""


class ReputationLookupError(ThragError):
    """IP reputation or user profile lookup failed."""


class AnomalyScoringError(ThragError):
    """The behavioral anomaly model could not score a feature vector."""


class PersistenceError(ThragError):
    """A durable store read or write failed."""
