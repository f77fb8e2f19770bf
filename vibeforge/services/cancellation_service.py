"""CancellationService: client-triggered job cancellation with sandbox teardown.

Cancellation is idempotent. A job moves RUNNING|PENDING -> CANCELLING, its
sandbox is destroyed, and it then moves to CANCELLED even if teardown failed
(the failure is recorded in metadata as ``teardownError``).

``complete_cancellation`` is shared with the orchestrator, which calls it when
it observes a cancel request between steps. Both callers may race on the same
job; destroy and the CANCELLED transition are each effective at most once.
"""

from datetime import UTC, datetime

import structlog

from vibeforge.core.exceptions import (
    CancellationError,
    JobAccessDeniedError,
    JobNotFoundError,
    SandboxError,
)
from vibeforge.queue.archive import persist_job_record
from vibeforge.queue.job_store import JobStore
from vibeforge.queue.schemas import CancelResult, JobStatus, MetadataPatch, MetadataWriter
from vibeforge.sandbox.pool import SandboxPool

logger = structlog.get_logger(__name__)


class CancellationService:
    def __init__(self, job_store: JobStore, sandbox_pool: SandboxPool) -> None:
        self.job_store = job_store
        self.sandbox_pool = sandbox_pool

    async def cancel_job(
        self,
        job_id: str,
        owner_id: str,
        sandbox_key: str | None = None,
        now: datetime | None = None,
    ) -> CancelResult:
        """Cancel a job owned by ``owner_id``.

        Args:
            job_id: Job to cancel
            owner_id: Requesting user; must own the job
            sandbox_key: Pool key to tear down instead of the job's recorded one
            now: Current time (for deterministic testing)

        Returns:
            CancelResult(success=True), including when the job was already terminal

        Raises:
            JobNotFoundError: If the job does not exist
            JobAccessDeniedError: If ``owner_id`` does not own the job
            PersistenceError: If the Job Store is unavailable
        """
        log = logger.bind(job_id=job_id, user_id=owner_id)

        job = await self.job_store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.owner_id != owner_id:
            log.warning("job_cancel_denied")
            raise JobAccessDeniedError(job_id)

        # Statuses only move forward, so this loop ends within a few reads
        while True:
            if job.is_terminal:
                log.info("job_cancel_noop", status=job.status.value)
                return CancelResult(success=True)
            if job.status == JobStatus.CANCELLING:
                break
            if await self.job_store.transition(
                job_id, JobStatus.CANCELLING, writer=MetadataWriter.CANCELLATION, now=now
            ):
                log.info("job_cancel_requested")
                break
            job = await self.job_store.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)

        # Re-read so a sandbox attached during the transition is not missed
        job = await self.job_store.get_job(job_id) or job
        target = sandbox_key or job.sandbox_key
        # The recorded instance pins the teardown to the sandbox this job actually used
        instance_id = job.metadata.get("sandboxId") if target == job.sandbox_key else None
        await self.complete_cancellation(job_id, target, instance_id=instance_id, now=now)
        return CancelResult(success=True)

    async def complete_cancellation(
        self,
        job_id: str,
        sandbox_key: str | None,
        instance_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Tear down ``sandbox_key`` (if any) and move the job CANCELLING -> CANCELLED.

        Teardown failures are recorded, never raised. With ``instance_id``, the
        pooled sandbox is only destroyed while ``sandbox_key`` still holds that
        instance; a key refilled for another job is left alone.

        Returns:
            True if this call performed the CANCELLED transition
        """
        now = now or datetime.now(UTC)
        log = logger.bind(job_id=job_id, sandbox_key=sandbox_key)

        teardown_error = None
        if sandbox_key:
            try:
                await self.sandbox_pool.destroy(sandbox_key, instance_id)
            except SandboxError as exc:
                error = CancellationError(f"Sandbox teardown failed: {exc}")
                log.error("job_cancel_teardown_failed", error=str(error), error_type=type(exc).__name__)
                teardown_error = str(error)

        moved = await self.job_store.transition(
            job_id,
            JobStatus.CANCELLED,
            metadata=MetadataPatch(cancelled_at=now.isoformat(), teardown_error=teardown_error),
            writer=MetadataWriter.CANCELLATION,
            now=now,
        )
        if moved:
            log.info("job_cancelled", teardown_failed=teardown_error is not None)
            job = await self.job_store.get_job(job_id)
            if job is not None:
                await persist_job_record(job)
        elif teardown_error:
            # Already cancelled by the other path; keep the teardown failure visible
            await self.job_store.merge_metadata(
                job_id,
                MetadataPatch(teardown_error=teardown_error),
                MetadataWriter.CANCELLATION,
                now=now,
            )
        return moved
