"""Terminal-state archive of generation jobs into Postgres."""

from datetime import datetime

import structlog

from vibeforge.queue.schemas import JobRecord

logger = structlog.get_logger(__name__)


async def persist_job_record(job: JobRecord) -> None:
    """Write a terminal job to Postgres for audit/analytics.

    Non-fatal: Redis stays the source of truth for job state, so any failure
    here is logged and swallowed. A disabled archive is skipped silently.

    Args:
        job: Job record in a terminal status
    """
    from vibeforge.db.base import archive_enabled, archive_session
    from vibeforge.db.models.generation_job import GenerationJob

    if not archive_enabled():
        logger.debug("job_archive_disabled", job_id=job.id)
        return

    try:
        async with archive_session() as session:
            # Upsert: a previewed job is archived again with its new metadata
            await session.merge(
                GenerationJob(
                    id=job.id,
                    owner_id=job.owner_id,
                    model=job.model,
                    status=job.status.value,
                    prompt=job.prompt,
                    artifact=job.artifact,
                    preview_url=job.metadata.get("previewUrl"),
                    sandbox_key=job.sandbox_key,
                    error_detail=job.error_detail,
                    execution_time_ms=job.metadata.get("executionTimeMs"),
                    job_metadata=job.metadata,
                    created_at=datetime.fromisoformat(job.created_at),
                    updated_at=datetime.fromisoformat(job.updated_at),
                )
            )
    except Exception as exc:
        logger.error(
            "job_archive_failed",
            job_id=job.id,
            error=str(exc),
            error_type=type(exc).__name__,
        )
