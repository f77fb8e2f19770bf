"""Generation job API routes."""

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from vibeforge.core.auth import ClerkUser, require_auth
from vibeforge.queue.schemas import CancelResult, JobStatusView, PreviewResult, SubmitJobResult
from vibeforge.services.cancellation_service import CancellationService
from vibeforge.services.generation_service import GenerationService

router = APIRouter()


def get_generation_service(request: Request) -> GenerationService:
    return request.app.state.generation_service


def get_cancellation_service(request: Request) -> CancellationService:
    return request.app.state.cancellation_service


class SubmitJobRequest(BaseModel):
    """Request model for job submission. Length rules are enforced at admission."""

    prompt: str
    model: str | None = Field(default=None, description="Model selector, e.g. vibe-m")


class CancelJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sandbox_key: str | None = Field(default=None, alias="sandboxKey")


@router.post("", status_code=201, response_model=SubmitJobResult, response_model_by_alias=True)
async def submit_job(
    request: SubmitJobRequest,
    background_tasks: BackgroundTasks,
    user: ClerkUser = Depends(require_auth),
    service: GenerationService = Depends(get_generation_service),
):
    """Admit a generation request and start the job in the background.

    Admission failures (invalid input, insufficient credits) are request-level
    errors. Once the job exists, its outcome is reported via GET /jobs/{id}.
    """
    result = await service.submit_job(user.user_id, request.prompt, request.model)
    background_tasks.add_task(service.run_job, result.job_id)
    return result


@router.get("", response_model=list[JobStatusView], response_model_by_alias=True)
async def list_jobs(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: ClerkUser = Depends(require_auth),
    service: GenerationService = Depends(get_generation_service),
):
    """List the caller's jobs, newest first."""
    return await service.list_jobs(user.user_id, limit=limit, offset=offset)


@router.get("/stats")
async def job_stats(
    user: ClerkUser = Depends(require_auth),
    service: GenerationService = Depends(get_generation_service),
):
    """Counts of the caller's jobs by status."""
    return await service.get_stats(user.user_id)


@router.get("/{job_id}", response_model=JobStatusView, response_model_by_alias=True)
async def get_job_status(
    job_id: str,
    user: ClerkUser = Depends(require_auth),
    service: GenerationService = Depends(get_generation_service),
):
    """Current status of one job. Returns 404 for unknown jobs and other users' jobs."""
    return await service.get_job_status(job_id, user.user_id)


@router.post("/{job_id}/cancel", response_model=CancelResult)
async def cancel_job(
    job_id: str,
    request: CancelJobRequest | None = None,
    user: ClerkUser = Depends(require_auth),
    cancellation: CancellationService = Depends(get_cancellation_service),
):
    """Cancel a job and tear down its sandbox. Idempotent for terminal jobs."""
    sandbox_key = request.sandbox_key if request else None
    return await cancellation.cancel_job(job_id, user.user_id, sandbox_key=sandbox_key)


@router.post("/{job_id}/preview", response_model=PreviewResult, response_model_by_alias=True)
async def preview_job(
    job_id: str,
    user: ClerkUser = Depends(require_auth),
    service: GenerationService = Depends(get_generation_service),
):
    """Re-deploy a completed job into a sandbox and return a fresh preview URL."""
    return await service.preview_job(job_id, user.user_id)
