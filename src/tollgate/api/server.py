"""
TOLLGATE - Production FastAPI Server

Metered text-generation gateway with a credit ledger and a job queue.

Endpoints:
- GET /ready - Effective provider and model
- POST /api/v1/llm/complete - Unbilled completion through the provider chain
- GET /skills - List skills
- POST /skills/ask - Run a billed skill (or queue a job skill)
- POST /api/jobs - Queue a job
- GET /api/jobs/{id} - Job status
- GET /api/jobs/{id}/download - Job artifact or inline result
- POST /v1/files/upload - Store a sketch file and queue a sketch_to_app job
- POST /admin/process-one - Process one queued job
- POST /admin/credits/topup - Credit a user
- GET /api/billing/balance - Caller balance
- GET /api/billing/usage - Caller usage history
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
import asyncio
import os
import uuid
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Query, BackgroundTasks, Request, File, Form, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from .. import __version__
from ..config import GatewayConfig
from ..errors import GatewayError, InvalidRequest, Unauthorized
from ..gateway import MeteredGateway, credential_matches
from ..jobs.scheduler import run_periodic_sweeps
from ..skills import get_skill
from ..storage.object_store import FilesystemObjectStore

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class CompleteRequest(BaseModel):
    """Unbilled completion request."""
    prompt: Optional[str] = Field(None, description="User prompt")
    system: Optional[str] = Field(None, description="System prompt")
    max_tokens: Optional[int] = Field(None, description="Capped at 2048")
    temperature: Optional[float] = Field(None, description="Clamped to [0, 1]")
    provider: Optional[str] = Field(None, description="Preferred provider; others are fallbacks")
    model: Optional[str] = Field(None, description="Model for the preferred provider only")


class SkillRequest(BaseModel):
    """Skill invocation."""
    skill: str = Field(..., description="Skill key, see GET /skills")
    input: str = Field(default="", description="Input text")
    extras: Dict[str, Any] = Field(default_factory=dict, description="Skill parameters, e.g. {'to': 'fr'}")
    provider: Optional[str] = None
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


class JobRequest(BaseModel):
    """Job submission."""
    type: str = Field(default="sketch_to_app", description="Job type")
    payload: Dict[str, Any] = Field(default_factory=dict)


class TopUpRequest(BaseModel):
    """Operator credit grant."""
    email: str
    amount: Decimal = Field(..., gt=0)
    reason: str = Field(default="manual-topup")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, config: Optional[GatewayConfig] = None, gateway: Optional[MeteredGateway] = None):
        self.config = config or (gateway.config if gateway else GatewayConfig.from_env())
        self.gateway = gateway or MeteredGateway(
            self.config,
            object_store=FilesystemObjectStore(self.config.artifact_dir),
        )
        self.start_time = datetime.now(timezone.utc)
        self.stop_event = asyncio.Event()
        self.sweep_task: Optional[asyncio.Task] = None

    def start_sweeps(self) -> None:
        if self.config.sweep_interval_seconds > 0:
            self.sweep_task = asyncio.get_running_loop().create_task(
                run_periodic_sweeps(self.gateway.sweeper, self.config.sweep_interval_seconds, self.stop_event)
            )

    async def stop_sweeps(self) -> None:
        self.stop_event.set()
        if self.sweep_task is not None:
            await self.sweep_task
            self.sweep_task = None


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    logger.info("gateway_starting", version=__version__)
    app_state = AppState()
    app_state.start_sweeps()
    yield
    await app_state.stop_sweeps()
    logger.info("gateway_stopping")


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Tollgate",
        description="""
# Metered Text-Generation Gateway

Every billable call produces exactly one usage record and one ledger debit.

## Features
- **Credit ledger**: append-only, balance derived from transactions
- **Provider fallback**: ordered chain across Groq, Workers AI, OpenAI and local models
- **Job queue**: atomic claim, eager trigger plus periodic sweep
        """,
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=GatewayConfig.from_env().cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id", "X-Credits-Used", "X-Credits-Balance", "X-Job-Id"],
    )
    application.add_exception_handler(GatewayError, gateway_error_handler)

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def get_caller_email(
    x_user_email: Optional[str] = Header(None, alias="X-User-Email"),
    email: Optional[str] = Query(None),
) -> Optional[str]:
    """Caller identity, as resolved by the upstream auth layer."""
    return x_user_email or email


def get_request_id(x_request_id: Optional[str] = Header(None, alias="X-Request-Id")) -> str:
    return (x_request_id or "").strip()[:128] or uuid.uuid4().hex


def verify_admin_key(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Operator credential."""
    if not credential_matches(x_admin_key, state.config.admin_key):
        raise Unauthorized("forbidden")
    return x_admin_key


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(status="healthy", version=__version__, uptime_seconds=uptime)


@app.get("/ready", tags=["System"])
async def readiness(state: AppState = Depends(get_state)):
    """Provider and model a request without overrides tries first."""
    return state.gateway.readiness()


@app.post("/api/v1/llm/complete", tags=["Generation"])
async def complete_text(request: CompleteRequest, state: AppState = Depends(get_state)):
    """
    Complete a prompt through the provider fallback chain.

    Not billed. If every provider fails the answer is 502 ``upstream_error``.
    """
    completion = await state.gateway.complete_text(
        request.provider,
        request.model,
        request.prompt or "",
        request.system,
        request.max_tokens,
        request.temperature,
    )
    return {"ok": True, **completion.to_dict()}


@app.get("/skills", tags=["Skills"])
async def list_skills(state: AppState = Depends(get_state)):
    return {"skills": state.gateway.list_skills()}


@app.post("/skills/ask", tags=["Skills"])
async def ask_skill(
    request: SkillRequest,
    background_tasks: BackgroundTasks,
    email: Optional[str] = Depends(get_caller_email),
    request_id: str = Depends(get_request_id),
    state: AppState = Depends(get_state),
):
    """
    Run a skill for the caller.

    Inline skills are answered and billed; the response carries
    ``X-Credits-Used`` and ``X-Credits-Balance``. Job skills are queued
    (202) and picked up by the eager trigger or the next sweep.
    """
    if get_skill(request.skill).queued:
        job = state.gateway.enqueue_skill_job(email, request.skill, request.input, request.extras)
        background_tasks.add_task(state.gateway.trigger.fire, "skills_ask", job.id)
        return JSONResponse(
            status_code=202,
            content={"ok": True, "job_id": job.id, "status": job.status},
            headers={"X-Job-Id": job.id, "X-Request-Id": request_id},
        )

    result = await state.gateway.run_billed_skill(
        email,
        request.skill,
        request.input,
        params=request.extras,
        request_id=request_id,
        provider=request.provider,
        model=request.model,
        max_tokens=request.max_tokens,
        temperature=request.temperature,
    )
    return JSONResponse(
        content=result.to_dict(),
        headers={
            "X-Request-Id": result.request_id,
            "X-Credits-Used": str(result.cost),
            "X-Credits-Balance": str(result.balance),
        },
    )


@app.post("/api/jobs", status_code=202, tags=["Jobs"])
async def enqueue_job(
    request: JobRequest,
    background_tasks: BackgroundTasks,
    email: Optional[str] = Depends(get_caller_email),
    state: AppState = Depends(get_state),
):
    """Queue a job. An eager processing cycle starts after the response."""
    job = state.gateway.enqueue_job(email, request.type, request.payload)
    background_tasks.add_task(state.gateway.trigger.fire, "enqueue", job.id)
    return {"ok": True, "job_id": job.id, "status": job.status}


@app.get("/api/jobs/{job_id}", tags=["Jobs"])
async def get_job(job_id: str, state: AppState = Depends(get_state)):
    return {"job": state.gateway.get_job(job_id).to_dict()}


@app.get("/api/jobs/{job_id}/download", tags=["Jobs"])
async def download_job(job_id: str, state: AppState = Depends(get_state)):
    """Stored artifact if present, otherwise the inline result as text."""
    download = state.gateway.download_job_result(job_id)
    return Response(
        content=download.content,
        media_type=download.content_type,
        headers={
            "Content-Disposition": f'attachment; filename="{download.filename}"',
            "Cache-Control": "no-store",
        },
    )


@app.post("/v1/files/upload", tags=["Jobs"])
async def upload_file(
    background_tasks: BackgroundTasks,
    file: Optional[UploadFile] = File(None),
    prompt: str = Form(""),
    email: Optional[str] = Depends(get_caller_email),
    state: AppState = Depends(get_state),
):
    """
    Store an uploaded sketch and queue a ``sketch_to_app`` job for it.

    Uploads larger than MAX_UPLOAD_BYTES are rejected with 413.
    """
    if file is None:
        raise InvalidRequest("A file field is required", code="file_missing")
    # One byte past the cap is enough to detect overflow
    data = await file.read(state.gateway.config.max_upload_bytes + 1)
    result = state.gateway.upload_and_enqueue(email, file.filename, data, file.content_type, prompt)
    background_tasks.add_task(state.gateway.trigger.fire, "upload", result.job.id)
    return JSONResponse(
        status_code=202,
        content=result.to_dict(),
        headers={"X-Job-Id": result.job.id},
    )


@app.post("/admin/process-one", tags=["Admin"])
async def process_one(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
    x_admin_task: Optional[str] = Header(None, alias="X-Admin-Task"),
    state: AppState = Depends(get_state),
):
    """
    Process the oldest queued job.

    Accepts either the operator key (X-Admin-Key) or the internal
    trigger/scheduler secret (X-Admin-Task).
    """
    result = await state.gateway.process_one_queued_job(admin_key=x_admin_key, task_key=x_admin_task)
    return result.to_dict()


@app.post("/admin/credits/topup", tags=["Admin"])
async def top_up(
    request: TopUpRequest,
    admin_key: str = Depends(verify_admin_key),
    state: AppState = Depends(get_state),
):
    view = state.gateway.top_up(request.email, request.amount, request.reason, {"source": "admin_api"})
    return {"ok": True, **view.to_dict()}


@app.get("/api/billing/balance", tags=["Billing"])
async def get_balance(
    email: Optional[str] = Depends(get_caller_email),
    state: AppState = Depends(get_state),
):
    view = state.gateway.get_balance(email)
    return JSONResponse(content=view.to_dict(), headers={"X-Credits-Balance": str(view.balance)})


@app.get("/api/billing/usage", tags=["Billing"])
async def list_usage(
    limit: int = 50,
    email: Optional[str] = Depends(get_caller_email),
    state: AppState = Depends(get_state),
):
    """Most recent usage events, newest first."""
    events = state.gateway.list_usage(email, limit)
    return {"items": [e.to_dict() for e in events], "count": len(events)}


# ============================================================================
# Run
# ============================================================================

def run(host: str = "0.0.0.0", port: Optional[int] = None, reload: Optional[bool] = None, workers: int = 1):
    """Run the server."""
    import uvicorn
    uvicorn.run(
        "tollgate.api.server:app",
        host=host,
        port=port or int(os.environ.get("PORT", 8000)),
        reload=reload if reload is not None else os.environ.get("DEBUG", "false").lower() == "true",
        workers=workers,
    )


if __name__ == "__main__":
    run()
