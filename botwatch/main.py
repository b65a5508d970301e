"""
Botwatch FastAPI application.

Serves the health dashboard and the control endpoints (restart, auto-restart
toggle, update now), plus a small JSON API for status, logs and background
jobs. Mutating endpoints sit behind optional HTTP basic auth.
"""

import logging
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlsplit

from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from fastapi.templating import Jinja2Templates

from . import __version__
from .config import Config, config
from .jobs import JobKind, JobManager, JobStatus
from .logsink import LogSink, configure_logging
from .monitor import ResourceMonitor, ResourceSampler, sample_process
from .notify import NotificationDispatcher
from .process import ProcessSupervisor
from .updater import GitUpdateSource, UpdateChecker, UpdateStatus, UpdateTrigger

logger = logging.getLogger(__name__)

templates_dir = Path(__file__).parent / "templates"
templates = Jinja2Templates(directory=str(templates_dir))

security = HTTPBasic(auto_error=False)

TRUE_VALUES = ("on", "true", "1", "yes")


def format_duration(seconds: float) -> str:
    """Format seconds as e.g. '1d 2h 3m 4s', dropping empty leading units."""
    total = int(seconds)
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    parts = [f"{days}d" if days else "", f"{hours}h" if hours else "", f"{minutes}m" if minutes else ""]
    return " ".join([p for p in parts if p] + [f"{secs}s"])


templates.env.filters["duration"] = format_duration


@dataclass
class Components:
    """Everything the app drives, wired together from one Config."""

    settings: Config
    log_sink: LogSink
    dispatcher: NotificationDispatcher
    supervisor: ProcessSupervisor
    updater: UpdateChecker
    sampler: ResourceSampler
    resource_monitor: ResourceMonitor
    jobs: JobManager


def build_components(settings: Config) -> Components:
    log_sink = LogSink(settings.log_file, max_lines=settings.max_log_lines)
    dispatcher = NotificationDispatcher(
        settings.channels,
        throttle_minutes=settings.throttle_minutes,
        timeout=settings.notify_timeout,
    )
    supervisor = ProcessSupervisor(
        settings.worker_args,
        dispatcher,
        log_sink,
        working_dir=settings.working_dir,
        auto_restart=settings.auto_restart,
        restart_delay=settings.restart_delay,
        manual_restart_delay=settings.manual_restart_delay,
        stop_timeout=settings.stop_timeout,
        echo_output=settings.echo_output,
    )
    updater = UpdateChecker(
        supervisor,
        dispatcher,
        GitUpdateSource(
            settings.update_args,
            working_dir=settings.working_dir,
            timeout=settings.update_timeout,
        ),
        interval=settings.update_interval_seconds,
        check_on_start=settings.update_on_start,
        notify_failures=settings.notify_update_failures,
    )
    sampler = ResourceSampler(settings.disk_path)
    resource_monitor = ResourceMonitor(
        sampler,
        dispatcher,
        interval=settings.resource_check_interval,
        memory_warn_percent=settings.memory_warn_percent,
        disk_warn_percent=settings.disk_warn_percent,
    )
    return Components(
        settings=settings,
        log_sink=log_sink,
        dispatcher=dispatcher,
        supervisor=supervisor,
        updater=updater,
        sampler=sampler,
        resource_monitor=resource_monitor,
        jobs=JobManager(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    c: Components = app.state.components

    # Startup
    logger.info(f"Starting monitor on http://{c.settings.host}:{c.settings.port}")
    c.log_sink.start()
    await c.supervisor.start()
    await c.updater.start()
    await c.resource_monitor.start()

    yield

    # Shutdown
    logger.info("Shutting down monitor...")
    await c.resource_monitor.stop()
    await c.updater.stop()
    await c.jobs.wait_all(timeout=c.settings.stop_timeout)
    await c.supervisor.shutdown()
    c.log_sink.close()


def get_components(request: Request) -> Components:
    return request.app.state.components


def require_auth(
    request: Request,
    credentials: Optional[HTTPBasicCredentials] = Depends(security),
) -> Optional[str]:
    """
    Reject the request unless basic auth is disabled or the credentials match.

    Returns the authenticated user name, or None when auth is disabled.
    """
    settings: Config = request.app.state.components.settings
    if not settings.auth_enabled:
        return None

    valid = credentials is not None and (
        secrets.compare_digest(credentials.username.encode(), settings.auth_user.encode())
        & secrets.compare_digest(credentials.password.encode(), settings.auth_pass.encode())
    )
    if not valid:
        logger.warning(f"Rejected unauthenticated control request to {request.url.path}")
        raise HTTPException(
            status_code=401,
            detail="Authentication required.",
            headers={"WWW-Authenticate": 'Basic realm="Monitor"'},
        )
    return credentials.username


def _back(request: Request) -> RedirectResponse:
    """Redirect to the page the form was posted from, if it is on this site."""
    referer = urlsplit(request.headers.get("referer", ""))
    if referer.netloc == request.url.netloc and referer.path.startswith("/"):
        target = str(request.url.replace(path=referer.path, query=referer.query, fragment=""))
    else:
        target = str(request.url_for("dashboard"))
    return RedirectResponse(target, status_code=303)


def refused_restart(supervisor: ProcessSupervisor) -> Callable[[bool], bool]:
    """
    Tell a restart refused by the in-progress guard from one that ran.

    A refused restart returns False at once, while the restart that holds the
    guard is still running. A restart whose spawn failed also returns False,
    but only after releasing the guard.
    """
    return lambda restarted: restarted is False and supervisor.restarting


def _status_payload(c: Components) -> dict:
    status = c.supervisor.status()
    process = sample_process(status.pid) if status.pid else None
    return {
        "status": status.to_dict(),
        "resources": c.sampler.sample().to_dict(),
        "process": process.to_dict() if process else None,
        "update": {
            "revision": c.updater.revision,
            "busy": c.updater.busy,
            "last_result": c.updater.last_result.to_dict() if c.updater.last_result else None,
        },
    }


router = APIRouter()


# Dashboard
@router.get("/", response_class=HTMLResponse, name="dashboard")
async def dashboard(request: Request, c: Components = Depends(get_components)):
    """Render the dashboard."""
    status = c.supervisor.status()
    process = sample_process(status.pid) if status.pid else None
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "status": status,
            "process": process,
            "resources": c.sampler.sample(),
            "logs": c.log_sink.tail(),
            "log_file": c.settings.log_file,
            "updater": c.updater,
            "jobs": c.jobs.list_jobs()[:5],
            "auth_enabled": c.settings.auth_enabled,
        },
    )


# Control
@router.post("/control/restart")
async def restart_worker(
    request: Request,
    user: Optional[str] = Depends(require_auth),
    c: Components = Depends(get_components),
):
    """Restart the worker (or start it if it is down)."""
    if c.supervisor.restarting or c.jobs.active(JobKind.RESTART):
        logger.info("Restart requested while another restart is running, ignoring")
    else:
        c.jobs.submit(
            JobKind.RESTART,
            c.supervisor.restart,
            requested_by=user,
            skipped=refused_restart(c.supervisor),
        )
    return _back(request)


@router.post("/control/autorestart")
async def toggle_auto_restart(
    request: Request,
    auto_restart: Optional[str] = Form(None, alias="autoRestart"),
    user: Optional[str] = Depends(require_auth),
    c: Components = Depends(get_components),
):
    """Turn auto-restart on or off. An absent field (unchecked box) means off."""
    enabled = (auto_restart or "").lower() in TRUE_VALUES
    if user:
        logger.info(f"Auto-restart {'on' if enabled else 'off'} requested by {user}")
    c.supervisor.set_auto_restart(enabled)
    return _back(request)


@router.post("/control/update")
async def update_now(
    request: Request,
    user: Optional[str] = Depends(require_auth),
    c: Components = Depends(get_components),
):
    """Check for new code right away."""
    if c.updater.busy or c.jobs.active(JobKind.UPDATE):
        logger.info("Update requested while a check is running, ignoring")
    else:
        c.jobs.submit(
            JobKind.UPDATE,
            c.updater.check_and_apply,
            UpdateTrigger.MANUAL,
            requested_by=user,
            skipped=lambda result: result.status is UpdateStatus.BUSY,
        )
    return _back(request)


# JSON API
@router.get("/api/status")
async def get_status(c: Components = Depends(get_components)):
    """Get worker status, host resources and update info."""
    return _status_payload(c)


@router.get("/api/logs")
async def get_logs(
    lines: Optional[int] = Query(None, ge=1, le=10000),
    c: Components = Depends(get_components),
):
    """Get the last lines of the log."""
    tail = c.log_sink.tail(lines)
    return {"lines": tail, "count": len(tail)}


@router.get("/api/jobs")
async def list_jobs(status: Optional[str] = None, c: Components = Depends(get_components)):
    """List background control jobs."""
    job_status = None
    if status:
        try:
            job_status = JobStatus(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
    return [j.to_dict() for j in c.jobs.list_jobs(job_status)]


@router.get("/api/jobs/{job_id}")
async def get_job(job_id: str, c: Components = Depends(get_components)):
    """Get a background job by id."""
    job = c.jobs.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found")
    return job.to_dict()


def create_app(settings: Config = None, components: Components = None) -> FastAPI:
    """Build the app around the given settings (or prebuilt components)."""
    if components is None:
        components = build_components(settings or config)

    app = FastAPI(
        title="Botwatch",
        description="Worker supervisor with health dashboard",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.components = components
    app.include_router(router)
    return app


def create_default_app() -> FastAPI:
    """App for `uvicorn botwatch.main:app`, logging to console and the log file."""
    default = build_components(config)
    configure_logging(default.log_sink, config.log_level)
    return create_app(components=default)


app = create_default_app()
