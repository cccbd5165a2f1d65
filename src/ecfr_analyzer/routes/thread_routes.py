# ecfr_analyzer/routes/thread_routes.py
"""
Analysis job control routes.
GET  /threads/status                 status projection of every job kind
GET  /threads/events                 recent control-plane events
POST /threads/start-all              start every job kind
POST /threads/stop-all               stop every running worker
GET  /threads/{job_kind}/status      status projection of one job kind
POST /threads/{job_kind}/start       start (resumes unless restart=true)
POST /threads/{job_kind}/stop        cooperative stop
POST /threads/{job_kind}/restart     stop, then start from scratch
"""
import logging
from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session
from ecfr_analyzer.database import get_db
from ecfr_analyzer.models.job_record import JobKind
from ecfr_analyzer.services.audit_service import list_events

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/threads", tags=["Threads"])


class StartRequest(BaseModel):
    restart: bool = False


class ServiceNotReady(Exception):
    pass


# ── Helpers ──────────────────────────────────────────────────────────────────

def get_orchestrator(request: Request):
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise ServiceNotReady()
    return orchestrator


def _parse_kind(job_kind: str) -> JobKind | None:
    try:
        return JobKind(job_kind)
    except ValueError:
        return None


def _invalid_kind() -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": "Invalid thread type"})


async def _guarded(operation, *args, **kwargs) -> dict:
    """Orchestrator faults never cross the HTTP boundary as exceptions."""
    try:
        return await operation(*args, **kwargs)
    except Exception as e:
        logger.exception("Thread operation failed")
        return {"success": False, "message": str(e)}


# ── Routes ───────────────────────────────────────────────────────────────────

@router.get("/status")
def all_status(orchestrator=Depends(get_orchestrator)):
    return {"success": True, "threads": orchestrator.status()}


@router.get("/events")
def recent_events(jobKind: str | None = None, limit: int = 50, db: Session = Depends(get_db)):
    events = list_events(db, job_kind=jobKind, limit=min(max(limit, 1), 500))
    return {
        "success": True,
        "events": [
            {
                "id"       : e.id,
                "eventType": e.event_type,
                "jobKind"  : e.job_kind,
                "actor"    : e.actor,
                "detail"   : e.detail,
                "createdAt": e.created_at.isoformat() if e.created_at else None,
            }
            for e in events
        ],
    }


@router.post("/start-all")
async def start_all(orchestrator=Depends(get_orchestrator)):
    results = await orchestrator.start_all(actor="api")
    return {"success": all(r.get("success") for r in results.values()), "results": results}


@router.post("/stop-all")
async def stop_all(orchestrator=Depends(get_orchestrator)):
    results = await orchestrator.stop_all(actor="api")
    return {"success": True, "results": results}


@router.get("/{job_kind}/status")
def one_status(job_kind: str, orchestrator=Depends(get_orchestrator)):
    kind = _parse_kind(job_kind)
    if kind is None:
        return _invalid_kind()
    return {"success": True, "thread": orchestrator.job_status(kind)}


@router.post("/{job_kind}/start")
async def start_thread(job_kind: str, body: StartRequest | None = Body(None),
                       orchestrator=Depends(get_orchestrator)):
    kind = _parse_kind(job_kind)
    if kind is None:
        return _invalid_kind()
    restart = body.restart if body else False
    return await _guarded(orchestrator.start, kind, restart=restart)


@router.post("/{job_kind}/stop")
async def stop_thread(job_kind: str, orchestrator=Depends(get_orchestrator)):
    kind = _parse_kind(job_kind)
    if kind is None:
        return _invalid_kind()
    return await _guarded(orchestrator.stop, kind)


@router.post("/{job_kind}/restart")
async def restart_thread(job_kind: str, orchestrator=Depends(get_orchestrator)):
    kind = _parse_kind(job_kind)
    if kind is None:
        return _invalid_kind()
    return await _guarded(orchestrator.restart, kind)
