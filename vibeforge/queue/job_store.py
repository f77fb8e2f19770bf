"""Durable job records and the guarded state machine.

Storage layout (Redis):
- ``job:{id}``            hash: id, owner_id, prompt, model, status, artifact,
                          error_detail, sandbox_key, created_at, updated_at
- ``job:{id}:metadata``   hash: one field per metadata key, JSON-encoded value.
                          Only ever HSET, so keys never disappear.
- ``user:{owner}:jobs``   sorted set of job ids scored by creation time
- ``job:{id}:events``     Pub/Sub channel, one JSON message per transition
"""

import functools
import json
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from vibeforge.core.exceptions import JobNotFoundError, PersistenceError
from vibeforge.db.redis import store_retry
from vibeforge.queue.schemas import (
    METADATA_KEY_OWNERS,
    TRANSITIONS,
    JobRecord,
    JobStatus,
    MetadataPatch,
    MetadataWriter,
)

logger = structlog.get_logger(__name__)


class JobEventType:
    """Event type constants for the job:{id}:events Pub/Sub channel."""

    STATUS_CHANGED = "job.status.changed"
    METADATA_UPDATED = "job.metadata.updated"


def _job_key(job_id: str) -> str:
    return f"job:{job_id}"


def _metadata_key(job_id: str) -> str:
    return f"job:{job_id}:metadata"


def _owner_index_key(owner_id: str) -> str:
    return f"user:{owner_id}:jobs"


def _events_channel(job_id: str) -> str:
    return f"job:{job_id}:events"


def _persistence_guard(fn):
    """Retry transient Redis I/O, then surface any Redis failure as PersistenceError."""
    retried = store_retry(fn)

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await retried(self, *args, **kwargs)
        except RedisError as exc:
            logger.error(
                "job_store_unavailable",
                operation=fn.__name__,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PersistenceError(f"Job store unavailable: {exc}") from exc

    return wrapper


def check_metadata_ownership(patch: MetadataPatch, writer: MetadataWriter) -> dict[str, Any]:
    """Return the patch entries, rejecting keys owned by another writer.

    Raises:
        ValueError: If ``writer`` does not own one of the patched keys
    """
    entries = patch.to_entries()
    for key in entries:
        if METADATA_KEY_OWNERS.get(key) != writer:
            raise ValueError(f"{writer.value} may not write metadata key {key!r}")
    return entries


class JobStore:
    """Job records in Redis with compare-and-set state transitions."""

    def __init__(self, redis: Redis):
        self.redis = redis

    async def _publish(self, job_id: str, event: dict[str, Any]) -> None:
        """Publish an event for a write that is already committed.

        Failures are only logged: the write stands even when the event is lost.
        """
        try:
            await self.redis.publish(_events_channel(job_id), json.dumps(event))
        except RedisError as exc:
            logger.warning(
                "job_event_publish_failed",
                job_id=job_id,
                event_type=event["type"],
                error=str(exc),
                error_type=type(exc).__name__,
            )

    @_persistence_guard
    async def create_job(
        self,
        owner_id: str,
        prompt: str,
        model: str,
        job_id: str | None = None,
        now: datetime | None = None,
    ) -> JobRecord:
        """Create a job in PENDING and index it under its owner.

        Args:
            owner_id: Submitting user
            prompt: Generation prompt (immutable)
            model: Model selector value
            job_id: Explicit id (generated when omitted)
            now: Current time (for deterministic testing)

        Returns:
            The stored JobRecord
        """
        now = now or datetime.now(UTC)
        job_id = job_id or str(uuid4())
        timestamp = now.isoformat()

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                _job_key(job_id),
                mapping={
                    "id": job_id,
                    "owner_id": owner_id,
                    "prompt": prompt,
                    "model": model,
                    "status": JobStatus.PENDING.value,
                    "created_at": timestamp,
                    "updated_at": timestamp,
                },
            )
            pipe.zadd(_owner_index_key(owner_id), {job_id: now.timestamp()})
            await pipe.execute()

        logger.info("job_created", job_id=job_id, user_id=owner_id, model=model)
        return JobRecord(
            id=job_id,
            owner_id=owner_id,
            prompt=prompt,
            model=model,
            status=JobStatus.PENDING,
            created_at=timestamp,
            updated_at=timestamp,
        )

    @_persistence_guard
    async def transition(
        self,
        job_id: str,
        new_status: JobStatus,
        *,
        artifact: str | None = None,
        error_detail: str | None = None,
        metadata: MetadataPatch | None = None,
        writer: MetadataWriter = MetadataWriter.ORCHESTRATOR,
        now: datetime | None = None,
    ) -> bool:
        """Transition job to new status if valid. Publishes event on success.

        The status check and the write happen in one optimistic transaction, so
        two writers racing from the same state cannot both succeed.

        Args:
            job_id: Unique job identifier
            new_status: Target status to transition to
            artifact: Generated code to store with the transition
            error_detail: Human-readable failure message to store
            metadata: Additive metadata merged in the same transaction
            writer: Component performing the write (metadata key ownership)
            now: Current time (for deterministic testing)

        Returns:
            True if transition succeeded, False if invalid or job not found
        """
        now = now or datetime.now(UTC)
        entries = check_metadata_ownership(metadata, writer) if metadata else {}
        key = _job_key(job_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = await pipe.hget(key, "status")
                    if current is None:
                        return False

                    current_status = JobStatus(current)
                    if new_status not in TRANSITIONS[current_status]:
                        logger.debug(
                            "job_transition_rejected",
                            job_id=job_id,
                            from_status=current_status.value,
                            to_status=new_status.value,
                        )
                        return False

                    fields = {"status": new_status.value, "updated_at": now.isoformat()}
                    if artifact is not None:
                        fields["artifact"] = artifact
                    if error_detail is not None:
                        fields["error_detail"] = error_detail

                    pipe.multi()
                    pipe.hset(key, mapping=fields)
                    if entries:
                        pipe.hset(
                            _metadata_key(job_id),
                            mapping={k: json.dumps(v) for k, v in entries.items()},
                        )
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        logger.info(
            "job_transitioned",
            job_id=job_id,
            from_status=current_status.value,
            to_status=new_status.value,
        )
        await self._publish(
            job_id,
            {
                "type": JobEventType.STATUS_CHANGED,
                "job_id": job_id,
                "status": new_status.value,
                "previous_status": current_status.value,
                "metadata": entries,
                "timestamp": now.isoformat(),
            },
        )
        return True

    @_persistence_guard
    async def merge_metadata(
        self,
        job_id: str,
        patch: MetadataPatch,
        writer: MetadataWriter,
        now: datetime | None = None,
    ) -> None:
        """Merge ``patch`` into the job's metadata without touching other keys.

        Raises:
            JobNotFoundError: If the job does not exist
            ValueError: If ``writer`` does not own one of the patched keys
        """
        now = now or datetime.now(UTC)
        entries = check_metadata_ownership(patch, writer)
        if not entries:
            return

        if not await self.redis.exists(_job_key(job_id)):
            raise JobNotFoundError(job_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(_metadata_key(job_id), mapping={k: json.dumps(v) for k, v in entries.items()})
            pipe.hset(_job_key(job_id), "updated_at", now.isoformat())
            await pipe.execute()

        await self._publish(
            job_id,
            {
                "type": JobEventType.METADATA_UPDATED,
                "job_id": job_id,
                "metadata": entries,
                "timestamp": now.isoformat(),
            },
        )

    async def attach_sandbox(
        self,
        job_id: str,
        sandbox_key: str,
        instance_id: str,
        now: datetime | None = None,
    ) -> None:
        """Record the pool key of the job's sandbox and its physical instance id."""
        await self._set_sandbox_key(job_id, sandbox_key)
        await self.merge_metadata(
            job_id,
            MetadataPatch(sandbox_id=instance_id),
            MetadataWriter.ORCHESTRATOR,
            now=now,
        )

    @_persistence_guard
    async def _set_sandbox_key(self, job_id: str, sandbox_key: str) -> None:
        await self.redis.hset(_job_key(job_id), "sandbox_key", sandbox_key)

    @_persistence_guard
    async def get_job(self, job_id: str) -> JobRecord | None:
        """Load a job with its merged metadata, or None if unknown."""
        raw = await self.redis.hgetall(_job_key(job_id))
        if not raw:
            return None

        raw_metadata = await self.redis.hgetall(_metadata_key(job_id))
        return JobRecord(
            id=raw["id"],
            owner_id=raw["owner_id"],
            prompt=raw["prompt"],
            model=raw["model"],
            status=JobStatus(raw["status"]),
            artifact=raw.get("artifact"),
            error_detail=raw.get("error_detail"),
            sandbox_key=raw.get("sandbox_key"),
            metadata={k: json.loads(v) for k, v in raw_metadata.items()},
            created_at=raw["created_at"],
            updated_at=raw["updated_at"],
        )

    @_persistence_guard
    async def get_status(self, job_id: str) -> JobStatus | None:
        status = await self.redis.hget(_job_key(job_id), "status")
        return JobStatus(status) if status is not None else None

    async def list_jobs(self, owner_id: str, limit: int = 20, offset: int = 0) -> list[JobRecord]:
        """Owner's jobs, newest first."""
        job_ids = await self._owner_job_ids(owner_id, offset, offset + limit - 1)
        jobs = []
        for job_id in job_ids:
            job = await self.get_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def count_by_status(self, owner_id: str) -> dict[str, int]:
        """Number of the owner's jobs in each status."""
        counts = {status.value: 0 for status in JobStatus}
        for job_id in await self._owner_job_ids(owner_id, 0, -1):
            status = await self.get_status(job_id)
            if status is not None:
                counts[status.value] += 1
        return counts

    @_persistence_guard
    async def _owner_job_ids(self, owner_id: str, start: int, end: int) -> list[str]:
        return await self.redis.zrevrange(_owner_index_key(owner_id), start, end)
