"""Process-wide pool of live sandbox handles.

The pool is the only owner of sandbox handles. Jobs borrow a handle through
``acquire``/``release``; the sweeper and cancellation path remove handles
through ``destroy``.

Concurrency model (single event loop):
- ``acquire`` holds a per-key ``asyncio.Lock`` across "check table, then
  create", so N concurrent acquirers of a new key trigger one provider call.
- Table mutations never await between check and write, so ``destroy`` and
  ``sweep`` may race freely; the loser observes "already gone".
- A key can be refilled with a new instance after a teardown. ``release``
  takes the borrowed handle and ``destroy`` takes its instance id, so a job
  holding a stale handle never touches the replacement.
- Creation runs as a shielded task bounded by ``create_timeout``. A creation
  that finishes after the caller gave up is still registered (under its key,
  or an orphan key if the key was filled meanwhile) and so is swept later.
"""

import asyncio
import functools
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import structlog

from vibeforge.core.exceptions import (
    SandboxError,
    SandboxExecutionError,
    SandboxProvisionError,
    SandboxTeardownError,
)
from vibeforge.sandbox.provider import DeployResult, SandboxInstance, SandboxProvider

logger = structlog.get_logger(__name__)


@dataclass
class SandboxHandle:
    """Local bookkeeping for one physical sandbox."""

    key: str
    template: str
    instance: SandboxInstance
    created_at: datetime
    last_used_at: datetime
    in_use: int = 0
    # Held by a job for the duration of its deploy/execute step
    execution_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def instance_id(self) -> str:
        return self.instance.instance_id


class SandboxPool:
    """Creates, reuses, resolves and evicts sandbox handles keyed by a logical key."""

    def __init__(
        self,
        provider: SandboxProvider,
        *,
        create_timeout: float = 300,
        max_age: timedelta = timedelta(hours=1),
        url_template: str = "https://{port}-{instance_id}.e2b.app",
        preview_port: int = 3000,
    ):
        self.provider = provider
        self.create_timeout = create_timeout
        self.max_age = max_age
        self.url_template = url_template
        self.preview_port = preview_port

        self._handles: dict[str, SandboxHandle] = {}
        self._key_locks: dict[str, asyncio.Lock] = {}
        self._pending_creations: set[asyncio.Task] = set()

    def get(self, key: str) -> SandboxHandle | None:
        return self._handles.get(key)

    def keys(self) -> list[str]:
        return list(self._handles)

    def __len__(self) -> int:
        return len(self._handles)

    def _lock_for(self, key: str) -> asyncio.Lock:
        return self._key_locks.setdefault(key, asyncio.Lock())

    def _pooled(self, key: str, instance_id: str | None) -> SandboxHandle | None:
        """The handle under ``key``, provided it is still the instance the caller borrowed."""
        handle = self._handles.get(key)
        if handle is None or (instance_id is not None and handle.instance_id != instance_id):
            return None
        return handle

    async def acquire(self, key: str, template: str | None = None, now: datetime | None = None) -> SandboxHandle:
        """Return the live handle for ``key``, creating it on a miss.

        The returned handle is marked in use until ``release``. Callers must pass
        the handle itself to ``release`` and its ``instance_id`` to ``destroy``,
        since a key can be refilled with a new instance after a teardown.

        Args:
            key: Logical pool key
            template: Provider template to create from (defaults to ``key``)
            now: Current time (for deterministic testing)

        Raises:
            SandboxProvisionError: If creation fails or exceeds the timeout
        """
        template = template or key

        while True:
            lock = self._lock_for(key)
            async with lock:
                # destroy() may have dropped this lock while we waited on it
                if self._key_locks.get(key) is not lock:
                    continue

                handle = self._handles.get(key)
                if handle is not None:
                    handle.last_used_at = now or datetime.now(UTC)
                    handle.in_use += 1
                    logger.info("sandbox_pool_hit", sandbox_key=key, instance_id=handle.instance_id, in_use=handle.in_use)
                    return handle

                logger.info("sandbox_pool_miss", sandbox_key=key, template=template)
                instance = await self._create(key, template)
                handle = self._register(key, template, instance, now=now)
                handle.in_use += 1
                return handle

    async def _create(self, key: str, template: str) -> SandboxInstance:
        task = asyncio.create_task(self.provider.create(template))
        self._pending_creations.add(task)
        task.add_done_callback(self._pending_creations.discard)

        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.create_timeout)
        except TimeoutError:
            task.add_done_callback(functools.partial(self._adopt_late_instance, key, template))
            logger.error("sandbox_create_timeout", sandbox_key=key, timeout_seconds=self.create_timeout)
            raise SandboxProvisionError(
                f"Sandbox creation for {key} timed out after {self.create_timeout}s"
            ) from None
        except asyncio.CancelledError:
            task.add_done_callback(functools.partial(self._adopt_late_instance, key, template))
            raise
        except SandboxProvisionError:
            raise
        except Exception as exc:
            raise SandboxProvisionError(f"Sandbox creation for {key} failed: {exc}") from exc

    def _adopt_late_instance(self, key: str, template: str, task: asyncio.Task) -> None:
        """Register an instance whose creation outlived its caller, so the sweep can reap it."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("sandbox_late_creation_failed", sandbox_key=key, error=str(exc), error_type=type(exc).__name__)
            return

        handle = self._register(key, template, task.result())
        logger.warning("sandbox_late_creation_adopted", sandbox_key=handle.key, instance_id=handle.instance_id)

    def _register(
        self,
        key: str,
        template: str,
        instance: SandboxInstance,
        now: datetime | None = None,
    ) -> SandboxHandle:
        now = now or datetime.now(UTC)
        if key in self._handles:
            key = f"{key}:orphan:{instance.instance_id}"

        handle = SandboxHandle(
            key=key,
            template=template,
            instance=instance,
            created_at=now,
            last_used_at=now,
        )
        self._handles[key] = handle
        logger.info("sandbox_registered", sandbox_key=key, instance_id=instance.instance_id, pool_size=len(self._handles))
        return handle

    async def deploy(self, handle: SandboxHandle, artifact: str) -> DeployResult:
        """Deploy ``artifact`` into the handle's sandbox, holding its execution lock.

        Raises:
            SandboxExecutionError: If the provider fails to deploy or start the artifact
        """
        async with handle.execution_lock:
            try:
                result = await self.provider.deploy(handle.instance, artifact)
            except SandboxError:
                raise
            except Exception as exc:
                raise SandboxExecutionError(f"Deploy into sandbox {handle.instance_id} failed: {exc}") from exc
            handle.last_used_at = datetime.now(UTC)

        logger.info("sandbox_deployed", sandbox_key=handle.key, instance_id=handle.instance_id, port=result.port)
        return result

    def resolve_url(self, key: str, instance_id: str | None = None) -> str | None:
        """Public preview URL derived from the handle's instance id, or None.

        With ``instance_id``, None is also returned once ``key`` holds a different instance.
        """
        handle = self._pooled(key, instance_id)
        if handle is None or not handle.instance_id:
            return None
        return self.url_template.format(port=self.preview_port, instance_id=handle.instance_id)

    def release(self, handle: SandboxHandle, now: datetime | None = None) -> None:
        """Clear one in-use mark. The physical sandbox stays up for reuse.

        A handle that has already left the pool is ignored, so a stale borrower
        never unmarks the instance that replaced it under the same key.
        """
        if self._handles.get(handle.key) is not handle:
            logger.debug("sandbox_release_stale", sandbox_key=handle.key, instance_id=handle.instance_id)
            return
        handle.in_use = max(0, handle.in_use - 1)
        handle.last_used_at = now or datetime.now(UTC)

    async def destroy(self, key: str, instance_id: str | None = None) -> bool:
        """Remove ``key`` from the pool and tear down its sandbox.

        The handle is removed before teardown, so it never lingers even when
        the provider fails.

        Args:
            key: Pool key to tear down
            instance_id: Only destroy if ``key`` still holds this instance

        Returns:
            True if a handle was removed, False if it was already gone or replaced

        Raises:
            SandboxTeardownError: If the provider failed to kill the sandbox
        """
        handle = self._pooled(key, instance_id)
        if handle is None:
            logger.debug("sandbox_destroy_noop", sandbox_key=key, instance_id=instance_id)
            return False
        del self._handles[key]

        lock = self._key_locks.get(key)
        if lock is not None and not lock.locked():
            del self._key_locks[key]

        try:
            await self.provider.kill(handle.instance)
        except Exception as exc:
            logger.error(
                "sandbox_teardown_failed",
                sandbox_key=key,
                instance_id=handle.instance_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if isinstance(exc, SandboxTeardownError):
                raise
            raise SandboxTeardownError(f"Failed to kill sandbox {handle.instance_id}: {exc}") from exc

        logger.info("sandbox_destroyed", sandbox_key=key, instance_id=handle.instance_id)
        return True

    def _is_expired(self, handle: SandboxHandle, now: datetime) -> bool:
        return handle.in_use == 0 and now - handle.last_used_at > self.max_age

    async def sweep(self, now: datetime | None = None) -> list[str]:
        """Destroy every idle handle whose last use is older than ``max_age``.

        Returns:
            Keys that were evicted
        """
        now = now or datetime.now(UTC)
        candidates = [key for key, handle in self._handles.items() if self._is_expired(handle, now)]

        evicted = []
        for key in candidates:
            handle = self._handles.get(key)
            # Re-check: an acquire or another destroy may have run during an earlier await
            if handle is None or not self._is_expired(handle, now):
                continue
            try:
                await self.destroy(key, handle.instance_id)
            except SandboxTeardownError:
                pass  # logged by destroy; the handle is already out of the pool
            evicted.append(key)

        logger.info("sandbox_sweep_completed", evicted=len(evicted), pool_size=len(self._handles))
        return evicted

    async def close(self) -> None:
        """Cancel pending creations and destroy every handle."""
        for task in list(self._pending_creations):
            task.cancel()

        for key in list(self._handles):
            try:
                await self.destroy(key)
            except SandboxTeardownError:
                pass  # logged by destroy


_pool: SandboxPool | None = None


def init_sandbox_pool(provider: SandboxProvider, **kwargs) -> SandboxPool:
    """Initialize the process-wide sandbox pool."""
    global _pool

    if _pool is None:
        _pool = SandboxPool(provider, **kwargs)
    return _pool


async def close_sandbox_pool() -> None:
    """Destroy all pooled sandboxes and drop the process-wide pool."""
    global _pool

    if _pool is not None:
        await _pool.close()
        _pool = None


def get_sandbox_pool() -> SandboxPool:
    """Return the process-wide sandbox pool.

    Raises RuntimeError if init_sandbox_pool() has not been called.
    """
    if _pool is None:
        raise RuntimeError("Sandbox pool not initialized. Call init_sandbox_pool() first.")
    return _pool
