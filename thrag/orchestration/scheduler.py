"""Session scheduling.

One thread per ``run_session`` owns every mutation of the session. Ready
tasks are dispatched in rounds of at most ``max_parallel`` to a thread pool;
completions come back through futures and are folded in as they arrive.
Within a round, tasks are ordered by :meth:`Orchestrator.resolve_conflicts`.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from thrag.clients.capability import CapabilityExecutor
from thrag.clients.knowledge import KnowledgeRetriever
from thrag.config import SETTINGS, THRESHOLDS, Settings, Thresholds
from thrag.errors import CapabilityTimeout, SchedulingDeadlock, SessionInProgress, ThragError
from thrag.orchestration.handlers import HANDLERS, Handler, HandlerDeps, Invocation
from thrag.orchestration.planner import plan_session
from thrag.orchestration.tasks import Capability, Session, SessionStatus, Task, TaskResult, TaskStatus
from thrag.runtime.processor import SecurityEventProcessor
from thrag.runtime.state import DurableStore, InMemoryStore
from thrag.utils.time import now_utc, sort_key

logger = logging.getLogger(__name__)

SESSIONS_TABLE = "sessions"
TASKS_TABLE = "tasks"
HEALTH_PROBE = "Health check - respond with OK"
CANCELLED = "session cancelled"
# Upper bound on how long a cancel request waits to be noticed.
CANCEL_POLL_SECONDS = 0.05


@dataclass(frozen=True)
class HealthStatus:
    capability: Capability
    healthy: bool
    latency_ms: float
    issue: Optional[str] = None
    degraded: bool = False

    @property
    def status(self) -> str:
        if not self.healthy:
            return "FAILED"
        return "DEGRADED" if self.degraded else "HEALTHY"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "capability": self.capability.value,
            "status": self.status,
            "healthy": self.healthy,
            "latency_ms": self.latency_ms,
            "issue": self.issue,
        }


@dataclass(frozen=True)
class HealthReport:
    capabilities: Dict[Capability, HealthStatus] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)

    @property
    def overall(self) -> str:
        statuses = {h.status for h in self.capabilities.values()}
        if "FAILED" in statuses:
            return "FAILED"
        if "DEGRADED" in statuses:
            return "DEGRADED"
        return "HEALTHY"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "overall": self.overall,
            "capabilities": {c.value: h.as_dict() for c, h in self.capabilities.items()},
            "recommendations": list(self.recommendations),
        }


def find_graph_problems(tasks: List[Task]) -> List[str]:
    """Unknown dependency ids and dependency cycles, as readable messages."""
    ids = {t.id for t in tasks}
    problems = [
        f"task {t.id} depends on unknown task {d}"
        for t in tasks
        for d in t.dependencies
        if d not in ids
    ]
    deps = {t.id: [d for d in t.dependencies if d in ids] for t in tasks}
    state: Dict[str, int] = {}  # 1 visiting, 2 done

    def visit(node: str, path: List[str]) -> None:
        state[node] = 1
        for d in deps[node]:
            if state.get(d) == 1:
                cycle = path[path.index(d):] + [d] if d in path else [node, d]
                problems.append("dependency cycle: " + " -> ".join(cycle))
            elif state.get(d) is None:
                visit(d, path + [d])
        state[node] = 2

    for t in tasks:
        if state.get(t.id) is None:
            visit(t.id, [t.id])
    return problems


def context_key(session: Session, task: Task) -> str:
    """The capability name for its first task; later ones are suffixed with the task id."""
    first = min(
        (t for t in session.tasks if t.capability == task.capability),
        key=lambda t: t.sequence,
    )
    return task.capability.value if first.id == task.id else f"{task.capability.value}.{task.id}"


def summarize(session: Session) -> str:
    done = [t for t in session.tasks if t.status == TaskStatus.COMPLETED and t.result is not None]
    failed = session.by_status(TaskStatus.FAILED)
    parts = [
        f"Security scenario analysis completed for: {session.scenario}",
        f"Involved {len(session.participants)} specialized capabilities: "
        + ", ".join(c.value for c in session.participants),
        f"Executed {len(done)} tasks successfully",
    ]
    if failed:
        parts.append(f"Failed {len(failed)} tasks:")
        for t in failed:
            parts.append(f"- {t.id} ({t.capability.value}): {t.error}")
    parts.extend(["", "Key Findings:"])
    for i, t in enumerate(done, start=1):
        parts.append(f"{i}. {t.capability.value}: {t.result.output[:100]}...")
    recs: List[str] = []
    for t in done:
        recs.extend(t.result.recommendations)
    parts.extend(["", "Consolidated Recommendations:"])
    for i, r in enumerate(list(dict.fromkeys(recs))[:5], start=1):
        parts.append(f"{i}. {r}")
    return "\n".join(parts)


class Orchestrator:
    def __init__(
        self,
        executor: CapabilityExecutor,
        knowledge: Optional[KnowledgeRetriever] = None,
        processor: Optional[SecurityEventProcessor] = None,
        store: Optional[DurableStore] = None,
        settings: Settings = SETTINGS,
        thresholds: Thresholds = THRESHOLDS,
        clock: Callable[[], datetime] = now_utc,
        handlers: Optional[Dict[Capability, Handler]] = None,
    ) -> None:
        self.executor = executor
        self.store: DurableStore = store if store is not None else InMemoryStore()
        self.settings = settings
        self.clock = clock
        self.handlers = dict(HANDLERS if handlers is None else handlers)
        self.deps = HandlerDeps(
            executor=executor,
            knowledge=knowledge,
            processor=processor,
            thresholds=thresholds,
            clock=clock,
        )
        self._lock = threading.Lock()
        self._running: Set[str] = set()
        self._cancelled: Set[str] = set()

    # -- planning ---------------------------------------------------------

    def plan_session(self, scenario_text: str, initial_context: Optional[Dict[str, Any]] = None) -> Session:
        session = plan_session(scenario_text, initial_context, clock=self.clock)
        self._persist(session, *session.tasks)
        return session

    @staticmethod
    def resolve_conflicts(tasks: Iterable[Task]) -> List[Task]:
        """Priority descending, then creation time, then creation sequence."""
        return sorted(tasks, key=lambda t: (-int(t.priority), t.created, t.sequence))

    # -- persistence ------------------------------------------------------

    def _persist(self, session: Session, *tasks: Task) -> None:
        for t in tasks:
            self.store.put(TASKS_TABLE, t.id, t.as_dict(), partition=session.id, sort=f"{t.sequence:012d}")
        self.store.put(
            SESSIONS_TABLE,
            session.id,
            session.as_dict(),
            partition="sessions",
            sort=sort_key(session.created),
        )

    def load_session(self, session_id: str) -> Optional[Session]:
        rec = self.store.get(SESSIONS_TABLE, session_id)
        return Session.from_dict(rec) if rec is not None else None

    # -- control ----------------------------------------------------------

    def is_running(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._running

    def cancel_session(self, session_id: str) -> bool:
        """Request cancellation; a session that is not running is cancelled in place."""
        with self._lock:
            if session_id in self._running:
                self._cancelled.add(session_id)
                logger.info("cancellation requested for session %s", session_id)
                return True
        session = self.load_session(session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            return False
        self._cancel_pending(session)
        self._finish(session)
        return True

    def _is_cancelled(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._cancelled

    def _cancel_pending(self, session: Session, in_flight: Iterable[Task] = ()) -> None:
        now = self.clock()
        changed = []
        for t in list(session.by_status(TaskStatus.PENDING)) + list(in_flight):
            t.status = TaskStatus.FAILED
            t.error = CANCELLED
            t.completed = now
            changed.append(t)
        self._persist(session, *changed)

    def retry_session(self, session: Session) -> Session:
        """Reset FAILED tasks to PENDING so the session can be run again."""
        if self.is_running(session.id):
            raise SessionInProgress(f"session {session.id} is running")
        reset = []
        for t in session.by_status(TaskStatus.FAILED):
            t.status = TaskStatus.PENDING
            t.error = None
            t.result = None
            t.started = None
            t.completed = None
            reset.append(t)
        session.status = SessionStatus.ACTIVE
        session.completed = None
        session.summary = ""
        self._persist(session, *reset)
        logger.info("session %s reset %d failed tasks", session.id, len(reset))
        return session

    # -- scheduling -------------------------------------------------------

    def run_session(self, session: Session) -> Session:
        with self._lock:
            if session.id in self._running:
                raise SessionInProgress(f"session {session.id} is already running")
            self._running.add(session.id)
        try:
            problems = find_graph_problems(session.tasks)
            if problems:
                self._fail(session)
                raise SchedulingDeadlock(
                    "; ".join(problems),
                    session_id=session.id,
                    pending=[t.id for t in session.by_status(TaskStatus.PENDING)],
                )
            self._schedule(session)
            return session
        finally:
            with self._lock:
                self._running.discard(session.id)
                self._cancelled.discard(session.id)

    def _ready(self, session: Session) -> List[Task]:
        status = {t.id: t.status for t in session.tasks}
        return [
            t
            for t in session.by_status(TaskStatus.PENDING)
            if all(status.get(d) == TaskStatus.COMPLETED for d in t.dependencies)
        ]

    def _new_pool(self, session: Session) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=max(1, self.settings.max_parallel),
            thread_name_prefix=f"thrag-{session.id}",
        )

    def _schedule(self, session: Session) -> None:
        rounds = 0
        pool = self._new_pool(session)
        try:
            while True:
                if self._is_cancelled(session.id):
                    self._cancel_pending(session)
                    break
                pending = session.by_status(TaskStatus.PENDING)
                if not pending:
                    break
                ready = self._ready(session)
                if not ready:
                    if session.by_status(TaskStatus.FAILED):
                        # Remaining tasks sit behind a failure.
                        break
                    self._fail(session)
                    raise SchedulingDeadlock(
                        f"session {session.id}: {len(pending)} tasks pending, none ready",
                        session_id=session.id,
                        pending=[t.id for t in pending],
                    )
                if rounds >= self.settings.max_scheduler_rounds:
                    self._fail(session)
                    raise SchedulingDeadlock(
                        f"session {session.id}: round limit {self.settings.max_scheduler_rounds} reached",
                        session_id=session.id,
                        pending=[t.id for t in pending],
                    )
                batch = self.resolve_conflicts(ready)[: max(1, self.settings.max_parallel)]
                rounds += 1
                logger.debug("session %s round %d: %s", session.id, rounds, [t.id for t in batch])
                if self._run_round(session, batch, pool):
                    # Timed-out workers still hold their slots; later rounds get a clean pool.
                    pool.shutdown(wait=False, cancel_futures=True)
                    pool = self._new_pool(session)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        self._finish(session)

    def _invocation(self, session: Session, task: Task) -> Invocation:
        return Invocation(
            task=task,
            session_id=session.id,
            scenario=session.scenario,
            shared=session.context.snapshot(),
            capabilities=tuple(dict.fromkeys(t.capability for t in session.tasks)),
        )

    def _call(self, inv: Invocation) -> TaskResult:
        return self.handlers[inv.task.capability](inv, self.deps)

    def _run_round(self, session: Session, batch: List[Task], pool: ThreadPoolExecutor) -> bool:
        """Run one round to completion; True when a worker was abandoned on timeout."""
        timeout = self.settings.capability_timeout_seconds
        abandoned = False
        in_flight: Dict[Future, Tuple[Task, float]] = {}
        for task in batch:
            task.status = TaskStatus.IN_PROGRESS
            task.started = self.clock()
            self._persist(session, task)
            fut = pool.submit(self._call, self._invocation(session, task))
            in_flight[fut] = (task, time.monotonic() + timeout)

        while in_flight:
            nearest = min(deadline for _, deadline in in_flight.values())
            slice_ = min(CANCEL_POLL_SECONDS, max(0.0, nearest - time.monotonic()))
            done, _ = wait(list(in_flight), timeout=slice_, return_when=FIRST_COMPLETED)

            if self._is_cancelled(session.id):
                # Late results are discarded.
                self._cancel_pending(session, in_flight=[t for t, _ in in_flight.values()])
                for fut in in_flight:
                    fut.cancel()
                return True

            for fut in done:
                task, _ = in_flight.pop(fut)
                self._complete(session, task, fut)

            now = time.monotonic()
            for fut in [f for f, (_, deadline) in in_flight.items() if deadline <= now]:
                task, _ = in_flight.pop(fut)
                if not fut.cancel():
                    abandoned = True
                err = CapabilityTimeout(f"{task.capability.value} exceeded {timeout:.1f}s")
                self._mark_failed(session, task, err)
        return abandoned

    def _complete(self, session: Session, task: Task, fut: Future) -> None:
        try:
            result = fut.result(timeout=0)
        except FutureTimeout as e:
            self._mark_failed(session, task, CapabilityTimeout(str(e) or "timed out"))
            return
        except ThragError as e:
            self._mark_failed(session, task, e)
            return
        except Exception as e:  # a capability must never take the loop down
            logger.exception("task %s raised unexpectedly", task.id)
            self._mark_failed(session, task, e)
            return

        task.status = TaskStatus.COMPLETED
        task.completed = self.clock()
        task.result = result
        session.context.put(context_key(session, task), result.as_dict(), owner=task.id)
        known = {t.id for t in session.tasks}
        follow_ups = [f for f in result.follow_up_tasks if f.id not in known]
        session.tasks.extend(follow_ups)
        for f in follow_ups:
            if f.capability not in session.participants:
                session.participants.append(f.capability)
        self._persist(session, task, *follow_ups)
        logger.info(
            "task %s (%s) completed, confidence=%.2f, follow-ups=%d",
            task.id,
            task.capability.value,
            result.confidence,
            len(follow_ups),
        )

    def _mark_failed(self, session: Session, task: Task, err: BaseException) -> None:
        task.status = TaskStatus.FAILED
        task.completed = self.clock()
        task.error = f"{type(err).__name__}: {err}"
        self._persist(session, task)
        logger.warning("task %s (%s) failed: %s", task.id, task.capability.value, task.error)

    def _fail(self, session: Session) -> None:
        session.status = SessionStatus.FAILED
        session.completed = self.clock()
        session.summary = summarize(session)
        self._persist(session)

    def _finish(self, session: Session) -> None:
        all_done = bool(session.tasks) and all(t.status == TaskStatus.COMPLETED for t in session.tasks)
        session.status = SessionStatus.COMPLETED if all_done else SessionStatus.FAILED
        session.completed = self.clock()
        session.summary = summarize(session)
        self._persist(session)
        logger.info(
            "session %s %s: %d/%d tasks completed",
            session.id,
            session.status.value,
            len(session.by_status(TaskStatus.COMPLETED)),
            len(session.tasks),
        )

    # -- health -----------------------------------------------------------

    def check_health(self, capability: Capability) -> HealthStatus:
        """Probe one capability with a bounded call; never raises."""
        if capability == Capability.RISK_ANALYST:
            # Served in-process by the event processor, not the executor.
            if self.deps.processor is None:
                return HealthStatus(capability, False, -1.0, "no event processor configured")
            return HealthStatus(capability, True, 0.0)

        timeout = self.settings.health_timeout_seconds
        probe = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"thrag-health-{capability.value}")
        start = time.monotonic()
        try:
            fut = probe.submit(self.executor.invoke, capability.value, "health-check", HEALTH_PROBE)
            try:
                fut.result(timeout=timeout)
            except FutureTimeout:
                return HealthStatus(capability, False, (time.monotonic() - start) * 1000.0, "Slow response time")
            except Exception as e:  # reported in the status
                return HealthStatus(capability, False, -1.0, f"{type(e).__name__}: {e}")
            latency = (time.monotonic() - start) * 1000.0
            return HealthStatus(capability, True, latency, degraded=latency > timeout * 1000.0 / 2)
        finally:
            probe.shutdown(wait=False, cancel_futures=True)

    def monitor_health(self, capabilities: Optional[Iterable[Capability]] = None) -> HealthReport:
        caps = list(capabilities) if capabilities is not None else list(Capability)
        results = {c: self.check_health(c) for c in caps}
        recs: List[str] = []
        for c, h in results.items():
            if h.status == "FAILED":
                recs.append(f"Restore {c.value}: {h.issue or 'unreachable'}")
            elif h.status == "DEGRADED":
                recs.append(f"Investigate slow responses from {c.value} ({h.latency_ms:.0f} ms)")
        return HealthReport(capabilities=results, recommendations=recs)
