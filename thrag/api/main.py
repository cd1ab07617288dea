from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List

from fastapi import Body, Depends, FastAPI, HTTPException, Query

from thrag.errors import (
    InvalidEvent,
    InvalidScenario,
    PersistenceError,
    SchedulingDeadlock,
    SessionInProgress,
)
from thrag.orchestration.tasks import Session
from thrag.runtime.services import Services, build_services
from thrag.schemas import Alert, EventBatchRequest, ScenarioRequest, SessionView
from thrag.utils.log import configure_logging


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services()


app = FastAPI(title="thrag threat correlation and orchestration API", version="0.1.0")


@app.on_event("startup")
def _startup() -> None:
    configure_logging()


def _session_view(session: Session) -> Dict[str, Any]:
    d = session.as_dict()
    d["context"] = d["context"]["values"]
    return d


@app.get("/health")
def health(svc: Services = Depends(get_services)) -> Dict[str, Any]:
    return {"ok": True, "alerts": len(svc.processor.recent_alerts(limit=1000))}


@app.post("/events")
def process_event(event: Any = Body(...), svc: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        return svc.processor.process(event).as_dict()
    except InvalidEvent as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e


@app.post("/events/batch")
def process_events(req: EventBatchRequest, svc: Services = Depends(get_services)) -> Dict[str, Any]:
    batch = svc.processor.process_batch(req.events)
    return {
        "processed": len(batch.results),
        "failed": len(batch.failures),
        "results": [r.as_dict() for r in batch.results],
        "failures": batch.failures,
    }


@app.get("/events/{event_id}")
def get_event(event_id: str, svc: Services = Depends(get_services)) -> Dict[str, Any]:
    event = svc.processor.get_event(event_id)
    if event is None:
        raise HTTPException(status_code=404, detail=f"Unknown event: {event_id}")
    return event.as_dict()


@app.get("/correlations/{correlation_id}")
def get_correlation(correlation_id: str, svc: Services = Depends(get_services)) -> Dict[str, Any]:
    corr = svc.processor.get_correlation(correlation_id)
    if corr is None:
        raise HTTPException(status_code=404, detail=f"Unknown correlation: {correlation_id}")
    return corr


@app.get("/alerts", response_model=List[Alert])
def list_alerts(
    limit: int = Query(100, ge=1, le=1000),
    svc: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    return [a.as_dict() for a in svc.processor.recent_alerts(limit=limit)]


@app.post("/sessions", response_model=SessionView)
def create_session(req: ScenarioRequest, svc: Services = Depends(get_services)) -> Dict[str, Any]:
    orch = svc.orchestrator
    try:
        session = orch.plan_session(req.scenario, req.context)
        if req.run:
            session = orch.run_session(session)
    except InvalidScenario as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except (SchedulingDeadlock, SessionInProgress) as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return _session_view(session)


def _load(svc: Services, session_id: str) -> Session:
    session = svc.orchestrator.load_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    return session


@app.get("/sessions/{session_id}", response_model=SessionView)
def get_session(session_id: str, svc: Services = Depends(get_services)) -> Dict[str, Any]:
    return _session_view(_load(svc, session_id))


@app.post("/sessions/{session_id}/run", response_model=SessionView)
def run_session(session_id: str, retry: bool = False, svc: Services = Depends(get_services)) -> Dict[str, Any]:
    session = _load(svc, session_id)
    orch = svc.orchestrator
    try:
        if retry:
            session = orch.retry_session(session)
        session = orch.run_session(session)
    except (SchedulingDeadlock, SessionInProgress) as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return _session_view(session)


@app.post("/sessions/{session_id}/cancel")
def cancel_session(session_id: str, svc: Services = Depends(get_services)) -> Dict[str, Any]:
    if not svc.orchestrator.cancel_session(session_id):
        raise HTTPException(status_code=404, detail=f"No active session: {session_id}")
    return {"session_id": session_id, "cancelled": True}


@app.get("/capabilities/health")
def capabilities_health(svc: Services = Depends(get_services)) -> Dict[str, Any]:
    return svc.orchestrator.monitor_health().as_dict()
