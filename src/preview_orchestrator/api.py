"""
HTTP API for the preview orchestrator.

Session, machine, monitoring and job routes live under ``/api`` behind bearer
token authentication and answer with a uniform envelope::

    {"success": bool, "data": ..., "error": "...", "message": "..."}

``/metrics`` (Prometheus text) and ``/health`` (liveness) are unauthenticated.
Remote provider error bodies never reach the response; failures map to a fixed
human-readable message per status code.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, ConfigDict, Field, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from .auth import (
    AuthenticatedUser,
    AuthenticationError,
    Authenticator,
    AuthServiceError,
    StaticTokenAuthenticator,
    SupabaseAuthenticator,
)
from .config import Settings, get_settings
from .container_manager import (
    ContainerManager,
    ContainerManagerError,
    MachineDestroyError,
    SessionNotFoundError,
    SessionProvisioningError,
)
from .container_tiers import ContainerTier, get_container_tier, parse_tier, validate_custom_config
from .fly_machines import FlyMachineError, FlyMachinesClient
from .logging_config import configure_logging
from .monitoring import MonitoringService
from .realtime import NullRealtimeRegistry, RealtimeRegistry, SupabaseRealtimeRegistry
from .scheduler import Scheduler, UnknownJobError
from .session_store import DuplicateSessionError, PreviewSession, SessionClaim, SessionStore, SessionStoreError

logger = structlog.get_logger(__name__)


@dataclass
class Orchestrator:
    """Everything the API needs, owned by the application instance."""

    manager: ContainerManager
    monitoring: MonitoringService
    scheduler: Scheduler
    authenticator: Authenticator
    closers: list[Any] = field(default_factory=list)

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.monitoring.aclose()
        for resource in self.closers:
            result = resource.aclose() if hasattr(resource, "aclose") else resource.close()
            if result is not None:
                await result


def build_orchestrator(settings: Settings) -> Orchestrator:
    store = SessionStore(settings.session_db_path)
    monitoring = MonitoringService(
        metrics_retention=settings.metrics_retention,
        events_retention=settings.events_retention,
        alerts_retention=settings.alerts_retention,
        audit_sink=store,
        webhook_url=settings.monitoring_webhook_url,
    )
    fly = FlyMachinesClient(
        settings.fly_api_token,
        settings.fly_app_name,
        settings.fly_api_base_url,
        image=settings.preview_image,
        machine_env=settings.machine_env(),
        request_timeout=settings.request_timeout_seconds,
        ready_timeout=settings.machine_ready_timeout_seconds,
        poll_interval=settings.machine_poll_interval_seconds,
    )

    realtime: RealtimeRegistry
    authenticator: Authenticator
    if settings.supabase_url and settings.supabase_service_role_key:
        realtime = SupabaseRealtimeRegistry(settings.supabase_url, settings.supabase_service_role_key)
        authenticator = SupabaseAuthenticator(
            settings.supabase_url,
            settings.supabase_anon_key or settings.supabase_service_role_key,
        )
    else:
        logger.warning("No auth backend configured, API will reject every token")
        realtime = NullRealtimeRegistry()
        authenticator = StaticTokenAuthenticator({})

    manager = ContainerManager(
        fly,
        store,
        monitoring,
        realtime,
        orphan_threshold_minutes=settings.orphan_threshold_minutes,
        reconcile_after_seconds=settings.reconcile_after_seconds,
    )
    scheduler = Scheduler(manager, monitoring, settings.scheduler_config())
    closers: list[Any] = [fly, realtime, store]
    if isinstance(authenticator, SupabaseAuthenticator):
        closers.append(authenticator)
    return Orchestrator(manager, monitoring, scheduler, authenticator, closers)


class ApiError(Exception):
    def __init__(self, status_code: int, error: str, data: Any = None):
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.data = data


def envelope(data: Any = None, message: str | None = None, status_code: int = 200) -> JSONResponse:
    body: dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    return JSONResponse(status_code=status_code, content=body)


def error_envelope(status_code: int, error: str, data: Any = None) -> JSONResponse:
    body: dict[str, Any] = {"success": False, "error": error}
    if data is not None:
        body["data"] = data
    return JSONResponse(status_code=status_code, content=body)


# Request models

class StartSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str | None = Field(default=None, alias="projectId")
    tier: ContainerTier = ContainerTier.FREE
    custom_config: dict[str, Any] | None = Field(default=None, alias="customConfig")
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey", max_length=200)

    @field_validator("tier", mode="before")
    @classmethod
    def _parse_tier(cls, value: Any) -> ContainerTier:
        return parse_tier(value if isinstance(value, (str, ContainerTier)) else None)


class StopSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str | None = Field(default=None, alias="sessionId")


class ResolveAlertRequest(BaseModel):
    resolution: str | None = None


# Dependencies

def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


async def current_user(
    authorization: str | None = Header(default=None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> AuthenticatedUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise ApiError(401, "Missing or invalid authorization header")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise ApiError(401, "Missing or invalid authorization header")
    try:
        return await orchestrator.authenticator.authenticate(token)
    except AuthenticationError:
        raise ApiError(401, "Invalid or expired token") from None
    except AuthServiceError:
        raise ApiError(500, "Authentication service error") from None


async def owned_session(
    orchestrator: Orchestrator, session_id: str, user: AuthenticatedUser, action: str
) -> PreviewSession:
    session = await orchestrator.manager.store.get(session_id)
    if session is None:
        raise ApiError(404, "Session not found")
    if session.user_id != user.id:
        raise ApiError(403, f"Unauthorized to {action} this session")
    return session


# Routes

router = APIRouter(prefix="/api", dependencies=[Depends(current_user)])


@router.post("/sessions/start")
async def start_session(
    body: StartSessionRequest,
    user: AuthenticatedUser = Depends(current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    if not body.project_id or not body.project_id.strip():
        raise ApiError(400, "Missing required field: projectId")
    if body.custom_config:
        problems = validate_custom_config(body.custom_config, get_container_tier(body.tier))
        if problems:
            raise ApiError(400, "Invalid customConfig", {"errors": problems})

    handle = await orchestrator.manager.create_session(SessionClaim(
        user_id=user.id,
        project_id=body.project_id.strip(),
        tier=body.tier,
        idempotency_key=body.idempotency_key,
        custom_config=body.custom_config,
    ))
    return envelope({
        "sessionId": handle.session_id,
        "containerUrl": handle.url,
        "status": handle.status.value,
    })


@router.post("/sessions/stop")
async def stop_session(
    body: StopSessionRequest,
    user: AuthenticatedUser = Depends(current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    if not body.session_id:
        raise ApiError(400, "Missing required field: sessionId")
    await owned_session(orchestrator, body.session_id, user, "stop")
    await orchestrator.manager.destroy_session(body.session_id)
    return envelope(message="Session stopped successfully")


@router.get("/sessions")
async def list_sessions(
    limit: int = Query(default=50, ge=1, le=200),
    user: AuthenticatedUser = Depends(current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    sessions = await orchestrator.manager.list_user_sessions(user.id, limit)
    return envelope([session.to_dict() for session in sessions])


@router.get("/sessions/statistics")
async def session_statistics(orchestrator: Orchestrator = Depends(get_orchestrator)) -> JSONResponse:
    return envelope(await orchestrator.manager.get_session_statistics())


@router.post("/sessions/cleanup")
async def cleanup_sessions(orchestrator: Orchestrator = Depends(get_orchestrator)) -> JSONResponse:
    stats = await orchestrator.manager.cleanup_expired_sessions()
    return envelope(stats.to_dict(), message="Cleanup completed")


@router.get("/sessions/{session_id}/status")
async def session_status(
    session_id: str,
    user: AuthenticatedUser = Depends(current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    session = await owned_session(orchestrator, session_id, user, "view")
    return envelope(session.to_dict())


@router.get("/sessions/{session_id}/metrics")
async def session_metrics(
    session_id: str,
    user: AuthenticatedUser = Depends(current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    await owned_session(orchestrator, session_id, user, "view")
    return envelope(await orchestrator.manager.get_session_metrics(session_id))


@router.post("/sessions/{session_id}/enforce-limits")
async def enforce_limits(
    session_id: str,
    user: AuthenticatedUser = Depends(current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    await owned_session(orchestrator, session_id, user, "manage")
    result = await orchestrator.manager.enforce_session_limits(session_id)
    return envelope(result.to_dict())


@router.post("/sessions/{session_id}/terminate")
async def terminate_session(
    session_id: str,
    user: AuthenticatedUser = Depends(current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    await owned_session(orchestrator, session_id, user, "terminate")
    await orchestrator.manager.force_terminate_session(session_id)
    return envelope(message="Session terminated")


@router.get("/machines")
async def list_machines(orchestrator: Orchestrator = Depends(get_orchestrator)) -> JSONResponse:
    machines = await orchestrator.manager.list_machines()
    return envelope([machine.to_dict() for machine in machines])


@router.get("/machines/{machine_id}/status")
async def machine_status(
    machine_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)
) -> JSONResponse:
    status = await orchestrator.manager.get_machine_status(machine_id)
    if status is None:
        raise ApiError(404, "Machine not found")
    machine, health = status
    return envelope({"machine": machine.to_dict(), "health": health.to_dict()})


@router.get("/monitoring/health")
async def monitoring_health(orchestrator: Orchestrator = Depends(get_orchestrator)) -> JSONResponse:
    return envelope(orchestrator.monitoring.get_health_summary())


@router.get("/monitoring/metrics")
async def monitoring_metrics(
    name: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    metrics = orchestrator.monitoring.get_metrics(name, limit)
    return envelope([metric.to_dict() for metric in metrics])


@router.get("/monitoring/events")
async def monitoring_events(
    type: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    events = orchestrator.monitoring.get_events(type, limit)
    return envelope([event.to_dict() for event in events])


@router.get("/monitoring/alerts")
async def monitoring_alerts(
    include_resolved: bool = False,
    limit: int = Query(default=100, ge=1, le=500),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    monitoring = orchestrator.monitoring
    alerts = monitoring.get_all_alerts(limit) if include_resolved else monitoring.get_active_alerts()
    return envelope([alert.to_dict() for alert in alerts])


@router.post("/monitoring/alerts/{alert_id}/resolve")
async def resolve_alert(
    alert_id: str,
    body: ResolveAlertRequest | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    resolution = body.resolution if body else None
    if not orchestrator.monitoring.resolve_alert(alert_id, resolution):
        raise ApiError(404, "Alert not found")
    return envelope(orchestrator.monitoring.get_alert(alert_id).to_dict(),
                    message="Alert resolved")


@router.get("/monitoring/sessions")
async def monitoring_sessions(orchestrator: Orchestrator = Depends(get_orchestrator)) -> JSONResponse:
    results = await orchestrator.manager.monitor_all_sessions()
    return envelope([result.to_dict() for result in results])


@router.get("/monitoring/dashboard")
async def monitoring_dashboard(orchestrator: Orchestrator = Depends(get_orchestrator)) -> JSONResponse:
    monitoring = orchestrator.monitoring
    statistics = await orchestrator.manager.get_session_statistics()
    return envelope({
        "health": monitoring.get_health_summary(),
        "sessions": {
            "statistics": statistics,
            "tier_distribution": statistics["live_by_tier"],
        },
        "alerts": [alert.to_dict() for alert in monitoring.get_active_alerts()],
        "events": [event.to_dict() for event in monitoring.get_events(limit=20)],
        "jobs": [job.to_dict() for job in orchestrator.scheduler.get_job_status()],
        "metrics": {
            name: [metric.to_dict() for metric in monitoring.get_metrics(name, 10)]
            for name in ("active_sessions", "healthy_sessions", "warning_sessions",
                         "critical_sessions")
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


@router.get("/monitoring/jobs")
async def job_status(orchestrator: Orchestrator = Depends(get_orchestrator)) -> JSONResponse:
    return envelope([job.to_dict() for job in orchestrator.scheduler.get_job_status()])


@router.post("/monitoring/jobs/{job_name}/run")
async def run_job(job_name: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> JSONResponse:
    result = await orchestrator.scheduler.run_job_now(job_name)
    return envelope(result, message=f"Job {job_name} completed")


public_router = APIRouter()


@public_router.get("/metrics")
async def prometheus_metrics(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Response:
    return Response(orchestrator.monitoring.export_prometheus_metrics(), media_type=CONTENT_TYPE_LATEST)


@public_router.get("/health")
async def liveness() -> dict[str, Any]:
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Error mapping

def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError) -> JSONResponse:
        return error_envelope(exc.status_code, exc.error, exc.data)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        if not errors:
            return error_envelope(400, "Invalid request")
        first = errors[0]
        field_name = ".".join(str(part) for part in first.get("loc", ())[1:]) or "body"
        if first.get("type") == "missing":
            return error_envelope(400, f"Missing required field: {field_name}")
        return error_envelope(400, f"Invalid field {field_name}: {first.get('msg')}")

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = "Route not found" if exc.status_code == 404 else str(exc.detail)
        return error_envelope(exc.status_code, message)

    @app.exception_handler(SessionNotFoundError)
    async def _not_found(request: Request, exc: SessionNotFoundError) -> JSONResponse:
        return error_envelope(404, "Session not found")

    @app.exception_handler(DuplicateSessionError)
    async def _duplicate(request: Request, exc: DuplicateSessionError) -> JSONResponse:
        return error_envelope(409, "A session for this request is already in progress",
                              {"sessionId": exc.existing_session_id})

    @app.exception_handler(SessionProvisioningError)
    async def _provisioning(request: Request, exc: SessionProvisioningError) -> JSONResponse:
        return error_envelope(500, "Failed to provision preview container",
                              {"sessionId": exc.session_id, "status": "error"})

    @app.exception_handler(MachineDestroyError)
    async def _destroy(request: Request, exc: MachineDestroyError) -> JSONResponse:
        return error_envelope(500, "Failed to stop preview container")

    @app.exception_handler(UnknownJobError)
    async def _unknown_job(request: Request, exc: UnknownJobError) -> JSONResponse:
        return error_envelope(404, f"Unknown job: {exc.name}")

    async def _upstream(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Request failed", path=request.url.path, error=str(exc))
        return error_envelope(500, "Internal server error")

    for error_class in (FlyMachineError, SessionStoreError, ContainerManagerError):
        app.add_exception_handler(error_class, _upstream)

    @app.exception_handler(Exception)
    async def _internal(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error", path=request.url.path)
        return error_envelope(500, "Internal server error")


def create_app(
    orchestrator: Orchestrator | None = None,
    settings: Settings | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    When no orchestrator is supplied, one is built from settings at startup and
    torn down at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = orchestrator is None
        if owned:
            active_settings = settings or get_settings()
            configure_logging(active_settings.log_level, active_settings.log_json)
            app.state.orchestrator = build_orchestrator(active_settings)
        else:
            app.state.orchestrator = orchestrator

        if start_scheduler:
            app.state.orchestrator.scheduler.start()
        logger.info("Preview orchestrator started")
        try:
            yield
        finally:
            if owned:
                await app.state.orchestrator.aclose()
            else:
                await app.state.orchestrator.scheduler.stop()
            logger.info("Preview orchestrator stopped")

    app = FastAPI(title="Preview Orchestrator", version="0.1.0", lifespan=lifespan)
    install_error_handlers(app)
    app.include_router(router)
    app.include_router(public_router)
    return app
