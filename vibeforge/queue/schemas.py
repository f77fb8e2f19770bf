"""Job lifecycle states, transition table and job record models."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Valid state transitions. Terminal states have no exits.
TRANSITIONS: dict[JobStatus, list[JobStatus]] = {
    JobStatus.PENDING: [JobStatus.RUNNING, JobStatus.CANCELLING],
    JobStatus.RUNNING: [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLING],
    JobStatus.CANCELLING: [JobStatus.CANCELLED],
    JobStatus.COMPLETED: [],
    JobStatus.FAILED: [],
    JobStatus.CANCELLED: [],
}


class MetadataWriter(str, Enum):
    """Components allowed to write job metadata."""

    ORCHESTRATOR = "orchestrator"
    CANCELLATION = "cancellation"


# Which writer owns each metadata key. Unlisted keys are rejected.
METADATA_KEY_OWNERS: dict[str, MetadataWriter] = {
    "previewUrl": MetadataWriter.ORCHESTRATOR,
    "sandboxId": MetadataWriter.ORCHESTRATOR,
    "executionTimeMs": MetadataWriter.ORCHESTRATOR,
    "startedAt": MetadataWriter.ORCHESTRATOR,
    "completedAt": MetadataWriter.ORCHESTRATOR,
    "failedAt": MetadataWriter.ORCHESTRATOR,
    "errorKind": MetadataWriter.ORCHESTRATOR,
    "debugId": MetadataWriter.ORCHESTRATOR,
    "previewedAt": MetadataWriter.ORCHESTRATOR,
    "cancelledAt": MetadataWriter.CANCELLATION,
    "teardownError": MetadataWriter.CANCELLATION,
}


class MetadataPatch(BaseModel):
    """Typed, additive metadata patch. Unset fields are not written."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    preview_url: str | None = Field(default=None, alias="previewUrl")
    sandbox_id: str | None = Field(default=None, alias="sandboxId")
    execution_time_ms: int | None = Field(default=None, alias="executionTimeMs")
    started_at: str | None = Field(default=None, alias="startedAt")
    completed_at: str | None = Field(default=None, alias="completedAt")
    failed_at: str | None = Field(default=None, alias="failedAt")
    error_kind: str | None = Field(default=None, alias="errorKind")
    debug_id: str | None = Field(default=None, alias="debugId")
    previewed_at: str | None = Field(default=None, alias="previewedAt")
    cancelled_at: str | None = Field(default=None, alias="cancelledAt")
    teardown_error: str | None = Field(default=None, alias="teardownError")

    def to_entries(self) -> dict[str, Any]:
        """Wire-format (camelCase) keys of the fields that were actually set."""
        return self.model_dump(by_alias=True, exclude_none=True)


class JobRecord(BaseModel):
    """A generation job as stored in the Job Store."""

    id: str
    owner_id: str
    prompt: str
    model: str
    status: JobStatus
    artifact: str | None = None
    error_detail: str | None = None
    sandbox_key: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str
    updated_at: str

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobStatusView(BaseModel):
    """Owner-facing status of one job."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    status: JobStatus
    artifact: str | None = None
    preview_url: str | None = Field(default=None, alias="previewUrl")
    error_detail: str | None = Field(default=None, alias="errorDetail")
    last_updated: str = Field(alias="lastUpdated")
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubmitJobResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    credits_remaining: int = Field(alias="creditsRemaining")


class GenerationEvent(BaseModel):
    """Asynchronous dispatch event. Carries a job_id only when resuming."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str
    owner_id: str = Field(alias="ownerId")
    model: str = Field(alias="modelSelector")
    job_id: str | None = Field(default=None, alias="jobId")


def job_status_view(job: JobRecord) -> JobStatusView:
    return JobStatusView(
        job_id=job.id,
        status=job.status,
        artifact=job.artifact,
        preview_url=job.metadata.get("previewUrl"),
        error_detail=job.error_detail,
        last_updated=job.updated_at,
        metadata=job.metadata,
    )


class PreviewResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    preview_url: str = Field(alias="previewUrl")
    credits_remaining: int = Field(alias="creditsRemaining")


class CancelResult(BaseModel):
    success: bool
