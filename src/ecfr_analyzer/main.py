import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from ecfr_analyzer.config import settings, configure_logging
from ecfr_analyzer.database import engine, SessionLocal, Base
from ecfr_analyzer.models import job_record, job_event, refresh_progress, section_analysis, metric, version_history, document  # noqa: F401  ensure tables created
from ecfr_analyzer.routes.thread_routes import router as thread_router, ServiceNotReady
from ecfr_analyzer.routes.refresh_routes import router as refresh_router
from ecfr_analyzer.routes.analysis_routes import router as analysis_router
from ecfr_analyzer.services.orchestrator import Orchestrator
from ecfr_analyzer.workers.launcher import build_launcher
import uvicorn

configure_logging()
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def _autostart_job(orchestrator: Orchestrator):
    """One-shot job: start every analysis job a few minutes after boot."""
    logger.info("[Scheduler] Auto-starting analysis jobs")
    results = await orchestrator.start_all(actor="scheduler")
    for kind, result in results.items():
        logger.info("[Scheduler] %s: %s", kind, result["message"])


def _register_jobs(orchestrator: Orchestrator):
    scheduler.add_job(
        orchestrator.log_status,
        trigger="interval",
        minutes=settings.status_log_interval_minutes,
        id="status_log",
        name="Analysis job status log",
        replace_existing=True,
    )
    if settings.analysis_autostart:
        run_at = datetime.now() + timedelta(minutes=settings.analysis_startup_delay_minutes)
        scheduler.add_job(
            _autostart_job,
            trigger="date",
            run_date=run_at,
            id="autostart",
            name="Auto-start analysis jobs",
            args=[orchestrator],
            replace_existing=True,
        )
        logger.info("[Scheduler] Analysis jobs will auto-start at %s", run_at.isoformat(timespec="seconds"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created/verified")

    orchestrator = Orchestrator(
        session_factory=SessionLocal,
        launcher=build_launcher(settings.worker_mode),
        database_url=settings.database_url,
        grace_seconds=settings.worker_stop_grace_seconds,
    )
    await orchestrator.initialize()
    app.state.orchestrator = orchestrator

    _register_jobs(orchestrator)
    scheduler.start()
    logger.info("APScheduler started: %d jobs registered", len(scheduler.get_jobs()))
    yield
    # Shutdown
    await orchestrator.stop_all(actor="shutdown")
    app.state.orchestrator = None
    scheduler.shutdown(wait=False)
    logger.info("APScheduler stopped")


app = FastAPI(
    title="eCFR Analyzer",
    description="Resumable background analysis of the electronic Code of Federal Regulations",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(thread_router)
app.include_router(refresh_router)
app.include_router(analysis_router)


@app.exception_handler(ServiceNotReady)
async def service_not_ready(request: Request, exc: ServiceNotReady):
    return JSONResponse(status_code=503, content={"success": False, "message": "Service not ready"})


@app.get("/health")
def health(request: Request):
    orchestrator = getattr(request.app.state, "orchestrator", None)
    return {
        "status"         : "ok",
        "service"        : settings.service_name,
        "orchestrator"   : orchestrator is not None,
        "running_workers": [k.value for k in orchestrator.running_kinds()] if orchestrator else [],
        "search_backend" : settings.elasticsearch_url,
        "scheduler_jobs" : len(scheduler.get_jobs()),
    }


def start():
    """Entry point for the ecfr-analyzer console script"""
    uvicorn.run(app, host=settings.app_host, port=settings.app_port, reload=settings.debug)
