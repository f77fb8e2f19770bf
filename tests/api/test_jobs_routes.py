"""Tests for the jobs API routes and the domain error to HTTP status mapping."""

import pytest

from vibeforge.core.exceptions import (
    InsufficientCreditsError,
    InvalidRequestError,
    JobAccessDeniedError,
    JobNotFoundError,
    LedgerError,
    SandboxExecutionError,
)
from vibeforge.queue.schemas import (
    CancelResult,
    JobStatus,
    JobStatusView,
    PreviewResult,
    SubmitJobResult,
)

pytestmark = pytest.mark.unit


def _view(job_id="job-1", status=JobStatus.COMPLETED):
    return JobStatusView(
        job_id=job_id,
        status=status,
        artifact="code",
        preview_url="https://3000-sbx-1.e2b.app",
        last_updated="2026-03-10T12:00:00+00:00",
        metadata={"previewUrl": "https://3000-sbx-1.e2b.app"},
    )


# ============================================================================
# POST /api/jobs
# ============================================================================


def test_submit_job_returns_201_and_schedules_run(client, generation_service):
    generation_service.submit_job.return_value = SubmitJobResult(job_id="job-1", credits_remaining=45)

    response = client.post("/api/jobs", json={"prompt": "Build a todo app", "model": "vibe-s"})

    assert response.status_code == 201
    assert response.json() == {"jobId": "job-1", "creditsRemaining": 45}
    generation_service.submit_job.assert_awaited_once_with("user_a", "Build a todo app", "vibe-s")
    generation_service.run_job.assert_awaited_once_with("job-1")


def test_submit_job_insufficient_credits_returns_402(client, generation_service):
    generation_service.submit_job.side_effect = InsufficientCreditsError(
        "Daily free credit limit reached. Upgrade to premium for more credits!", remaining=4
    )

    response = client.post("/api/jobs", json={"prompt": "Build a todo app"})

    assert response.status_code == 402
    body = response.json()
    assert body["detail"].startswith("Daily free credit limit reached")
    assert body["remaining"] == 4
    assert "debug_id" in body
    generation_service.run_job.assert_not_awaited()


def test_submit_job_invalid_prompt_returns_422(client, generation_service):
    generation_service.submit_job.side_effect = InvalidRequestError("Prompt must be at least 10 characters")

    response = client.post("/api/jobs", json={"prompt": "hi"})

    assert response.status_code == 422
    assert response.json()["detail"] == "Prompt must be at least 10 characters"


def test_submit_job_missing_prompt_returns_422(client):
    response = client.post("/api/jobs", json={})

    assert response.status_code == 422


def test_submit_job_ledger_outage_returns_503(client, generation_service):
    generation_service.submit_job.side_effect = LedgerError("redis down")

    response = client.post("/api/jobs", json={"prompt": "Build a todo app"})

    assert response.status_code == 503
    assert "redis" not in response.json()["detail"]


def test_submit_job_requires_auth(anonymous_client, generation_service):
    response = anonymous_client.post("/api/jobs", json={"prompt": "Build a todo app"})

    assert response.status_code == 401
    generation_service.submit_job.assert_not_awaited()


# ============================================================================
# GET /api/jobs, /api/jobs/stats, /api/jobs/{id}
# ============================================================================


def test_get_job_status_uses_wire_names(client, generation_service):
    generation_service.get_job_status.return_value = _view()

    response = client.get("/api/jobs/job-1")

    assert response.status_code == 200
    body = response.json()
    assert body["jobId"] == "job-1"
    assert body["status"] == "completed"
    assert body["previewUrl"] == "https://3000-sbx-1.e2b.app"
    assert body["lastUpdated"] == "2026-03-10T12:00:00+00:00"
    generation_service.get_job_status.assert_awaited_once_with("job-1", "user_a")


def test_get_job_status_not_found_returns_404(client, generation_service):
    generation_service.get_job_status.side_effect = JobNotFoundError("job-1")

    response = client.get("/api/jobs/job-1")

    assert response.status_code == 404
    assert response.json()["detail"] == "Job not found"


def test_list_jobs_passes_pagination(client, generation_service):
    generation_service.list_jobs.return_value = [_view("job-2"), _view("job-1")]

    response = client.get("/api/jobs", params={"limit": 5, "offset": 10})

    assert response.status_code == 200
    assert [j["jobId"] for j in response.json()] == ["job-2", "job-1"]
    generation_service.list_jobs.assert_awaited_once_with("user_a", limit=5, offset=10)


def test_list_jobs_rejects_oversized_limit(client):
    response = client.get("/api/jobs", params={"limit": 1000})

    assert response.status_code == 422


def test_job_stats(client, generation_service):
    generation_service.get_stats.return_value = {"total": 1, "by_status": {"completed": 1}}

    response = client.get("/api/jobs/stats")

    assert response.status_code == 200
    assert response.json()["total"] == 1


# ============================================================================
# POST /api/jobs/{id}/cancel
# ============================================================================


def test_cancel_job_without_body(client, cancellation_service):
    cancellation_service.cancel_job.return_value = CancelResult(success=True)

    response = client.post("/api/jobs/job-1/cancel")

    assert response.status_code == 200
    assert response.json() == {"success": True}
    cancellation_service.cancel_job.assert_awaited_once_with("job-1", "user_a", sandbox_key=None)


def test_cancel_job_with_sandbox_key(client, cancellation_service):
    cancellation_service.cancel_job.return_value = CancelResult(success=True)

    response = client.post("/api/jobs/job-1/cancel", json={"sandboxKey": "tmpl-1"})

    assert response.status_code == 200
    cancellation_service.cancel_job.assert_awaited_once_with("job-1", "user_a", sandbox_key="tmpl-1")


def test_cancel_other_users_job_returns_403(client, cancellation_service):
    cancellation_service.cancel_job.side_effect = JobAccessDeniedError("job-1")

    response = client.post("/api/jobs/job-1/cancel")

    assert response.status_code == 403
    assert "permission" in response.json()["detail"]


def test_cancel_unknown_job_returns_404(client, cancellation_service):
    cancellation_service.cancel_job.side_effect = JobNotFoundError("job-1")

    response = client.post("/api/jobs/job-1/cancel")

    assert response.status_code == 404


# ============================================================================
# POST /api/jobs/{id}/preview
# ============================================================================


def test_preview_job_returns_url(client, generation_service):
    generation_service.preview_job.return_value = PreviewResult(
        job_id="job-1", preview_url="https://3000-sbx-1.e2b.app", credits_remaining=43
    )

    response = client.post("/api/jobs/job-1/preview")

    assert response.status_code == 200
    assert response.json() == {
        "jobId": "job-1",
        "previewUrl": "https://3000-sbx-1.e2b.app",
        "creditsRemaining": 43,
    }


def test_preview_sandbox_failure_returns_502(client, generation_service):
    generation_service.preview_job.side_effect = SandboxExecutionError("npm install failed")

    response = client.post("/api/jobs/job-1/preview")

    assert response.status_code == 502
    assert "npm" not in response.json()["detail"]


# ============================================================================
# Health
# ============================================================================


def test_health_check(anonymous_client):
    response = anonymous_client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "vibeforge"}


def test_health_check_while_draining(app, anonymous_client):
    app.state.shutting_down = True

    response = anonymous_client.get("/api/health")

    assert response.status_code == 503
