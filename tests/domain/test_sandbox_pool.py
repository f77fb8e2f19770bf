"""Tests for SandboxPool: single-flight creation, reuse, teardown and sweeping."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from vibeforge.core.exceptions import (
    SandboxExecutionError,
    SandboxProvisionError,
    SandboxTeardownError,
)
from vibeforge.sandbox.pool import (
    SandboxPool,
    close_sandbox_pool,
    get_sandbox_pool,
    init_sandbox_pool,
)

pytestmark = pytest.mark.unit

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


@pytest.fixture
def pool(provider):
    return SandboxPool(provider, create_timeout=5, max_age=timedelta(hours=1))


# ============================================================================
# acquire
# ============================================================================


async def test_acquire_miss_creates_handle(pool, provider):
    handle = await pool.acquire("tmpl-1", now=T0)

    assert provider.create_calls == 1
    assert handle.key == "tmpl-1"
    assert handle.template == "tmpl-1"
    assert handle.instance_id == "sbx-1"
    assert handle.in_use == 1
    assert handle.created_at == T0
    assert len(pool) == 1


async def test_acquire_hit_reuses_handle(pool, provider):
    first = await pool.acquire("tmpl-1", now=T0)
    pool.release(first, now=T0)

    second = await pool.acquire("tmpl-1", now=T0 + timedelta(minutes=5))

    assert second is first
    assert provider.create_calls == 1
    assert second.last_used_at == T0 + timedelta(minutes=5)


async def test_concurrent_acquires_trigger_single_creation(pool, provider):
    provider.create_delay = 0.05

    handles = await asyncio.gather(*[pool.acquire("tmpl-1") for _ in range(5)])

    assert provider.create_calls == 1
    assert all(h is handles[0] for h in handles)
    assert handles[0].in_use == 5


async def test_different_keys_get_different_sandboxes(pool, provider):
    a = await pool.acquire("tmpl-a")
    b = await pool.acquire("tmpl-b")

    assert a.instance_id != b.instance_id
    assert provider.create_calls == 2
    assert sorted(pool.keys()) == ["tmpl-a", "tmpl-b"]


async def test_acquire_uses_explicit_template(pool, provider):
    handle = await pool.acquire("job-42", template="tmpl-1")

    assert handle.key == "job-42"
    assert handle.instance.template == "tmpl-1"


async def test_creation_failure_raises_provision_error(pool, provider):
    provider.create_error = RuntimeError("quota exceeded")

    with pytest.raises(SandboxProvisionError):
        await pool.acquire("tmpl-1")

    assert pool.get("tmpl-1") is None


async def test_creation_timeout_raises_and_late_instance_is_adopted(provider):
    pool = SandboxPool(provider, create_timeout=0.05)
    provider.create_delay = 0.2

    with pytest.raises(SandboxProvisionError):
        await pool.acquire("tmpl-1")
    assert pool.get("tmpl-1") is None

    await asyncio.sleep(0.3)

    handle = pool.get("tmpl-1")
    assert handle is not None
    assert handle.instance_id == "sbx-1"
    assert handle.in_use == 0


async def test_late_instance_registered_under_orphan_key_when_key_taken(provider):
    pool = SandboxPool(provider, create_timeout=0.05)
    provider.create_delay = 0.2

    with pytest.raises(SandboxProvisionError):
        await pool.acquire("tmpl-1")

    provider.create_delay = 0
    replacement = await pool.acquire("tmpl-1")
    await asyncio.sleep(0.3)

    assert pool.get("tmpl-1") is replacement
    assert pool.get("tmpl-1:orphan:sbx-1") is not None
    assert len(pool) == 2


# ============================================================================
# deploy / resolve_url / release
# ============================================================================


async def test_deploy_runs_artifact_in_handle_instance(pool, provider):
    handle = await pool.acquire("tmpl-1")

    result = await pool.deploy(handle, "code")

    assert result.port == 3000
    assert provider.deployed == [("sbx-1", "code")]


async def test_deploy_wraps_unexpected_errors(pool, provider):
    handle = await pool.acquire("tmpl-1")
    provider.deploy_error = RuntimeError("npm exploded")

    with pytest.raises(SandboxExecutionError):
        await pool.deploy(handle, "code")


async def test_deploys_on_same_handle_are_serialized(pool, provider):
    handle = await pool.acquire("tmpl-1")
    provider.deploy_gate = asyncio.Event()

    first = asyncio.create_task(pool.deploy(handle, "first"))
    await provider.deploy_started.wait()
    provider.deploy_started.clear()

    second = asyncio.create_task(pool.deploy(handle, "second"))
    await asyncio.sleep(0.05)
    assert not provider.deploy_started.is_set()
    assert handle.execution_lock.locked()

    provider.deploy_gate.set()
    await asyncio.gather(first, second)

    assert [artifact for _, artifact in provider.deployed] == ["first", "second"]


async def test_resolve_url_uses_instance_id(pool):
    await pool.acquire("tmpl-1")

    assert pool.resolve_url("tmpl-1") == "https://3000-sbx-1.e2b.app"


async def test_resolve_url_unknown_key_returns_none(pool):
    assert pool.resolve_url("missing") is None


async def test_release_clears_in_use_but_keeps_sandbox(pool, provider):
    handle = await pool.acquire("tmpl-1", now=T0)

    pool.release(handle, now=T0 + timedelta(minutes=1))

    assert handle.in_use == 0
    assert handle.last_used_at == T0 + timedelta(minutes=1)
    assert provider.killed == []
    assert pool.get("tmpl-1") is handle


async def test_stale_release_does_not_unmark_replacement(pool, provider):
    stale = await pool.acquire("tmpl-1", now=T0)
    await pool.destroy("tmpl-1")
    replacement = await pool.acquire("tmpl-1", now=T0)

    pool.release(stale, now=T0)

    assert replacement.in_use == 1
    assert await pool.sweep(now=T0 + timedelta(hours=2)) == []
    assert pool.get("tmpl-1") is replacement
    assert provider.killed == ["sbx-1"]


async def test_resolve_url_with_stale_instance_returns_none(pool):
    await pool.acquire("tmpl-1")
    await pool.destroy("tmpl-1")
    await pool.acquire("tmpl-1")

    assert pool.resolve_url("tmpl-1", "sbx-1") is None
    assert pool.resolve_url("tmpl-1", "sbx-2") == "https://3000-sbx-2.e2b.app"


# ============================================================================
# destroy
# ============================================================================


async def test_destroy_removes_and_kills(pool, provider):
    await pool.acquire("tmpl-1")

    assert await pool.destroy("tmpl-1") is True

    assert pool.get("tmpl-1") is None
    assert provider.killed == ["sbx-1"]


async def test_destroy_is_idempotent(pool, provider):
    await pool.acquire("tmpl-1")

    assert await pool.destroy("tmpl-1") is True
    assert await pool.destroy("tmpl-1") is False

    assert provider.killed == ["sbx-1"]


async def test_concurrent_destroys_kill_once(pool, provider):
    await pool.acquire("tmpl-1")

    results = await asyncio.gather(pool.destroy("tmpl-1"), pool.destroy("tmpl-1"))

    assert sorted(results) == [False, True]
    assert provider.killed == ["sbx-1"]


async def test_destroy_kill_failure_still_removes_handle(pool, provider):
    await pool.acquire("tmpl-1")
    provider.kill_error = RuntimeError("provider down")

    with pytest.raises(SandboxTeardownError):
        await pool.destroy("tmpl-1")

    assert pool.get("tmpl-1") is None


async def test_acquire_after_destroy_creates_fresh_sandbox(pool, provider):
    await pool.acquire("tmpl-1")
    await pool.destroy("tmpl-1")

    handle = await pool.acquire("tmpl-1")

    assert handle.instance_id == "sbx-2"
    assert provider.create_calls == 2


async def test_destroy_with_stale_instance_id_leaves_replacement(pool, provider):
    await pool.acquire("tmpl-1")
    await pool.destroy("tmpl-1", "sbx-1")
    replacement = await pool.acquire("tmpl-1")

    assert await pool.destroy("tmpl-1", "sbx-1") is False

    assert pool.get("tmpl-1") is replacement
    assert provider.killed == ["sbx-1"]


async def test_destroy_drops_idle_key_lock(pool):
    await pool.acquire("tmpl-1")
    assert "tmpl-1" in pool._key_locks

    await pool.destroy("tmpl-1")

    assert "tmpl-1" not in pool._key_locks


async def test_acquires_after_lock_dropped_create_once(pool, provider):
    await pool.acquire("tmpl-1")
    provider.create_delay = 0.05
    await pool.destroy("tmpl-1")

    handles = await asyncio.gather(*[pool.acquire("tmpl-1") for _ in range(3)])

    assert provider.create_calls == 2
    assert all(h is handles[0] for h in handles)
    assert handles[0].in_use == 3


# ============================================================================
# sweep
# ============================================================================


async def test_sweep_evicts_idle_expired_handles(pool, provider):
    handle = await pool.acquire("tmpl-1", now=T0)
    pool.release(handle, now=T0)

    evicted = await pool.sweep(now=T0 + timedelta(hours=2))

    assert evicted == ["tmpl-1"]
    assert provider.killed == ["sbx-1"]
    assert len(pool) == 0


async def test_sweep_keeps_recently_used_handles(pool, provider):
    handle = await pool.acquire("tmpl-1", now=T0)
    pool.release(handle, now=T0)

    evicted = await pool.sweep(now=T0 + timedelta(minutes=30))

    assert evicted == []
    assert provider.killed == []


async def test_sweep_boundary_is_strictly_older_than_max_age(pool):
    handle = await pool.acquire("tmpl-1", now=T0)
    pool.release(handle, now=T0)

    assert await pool.sweep(now=T0 + timedelta(hours=1)) == []
    assert await pool.sweep(now=T0 + timedelta(hours=1, seconds=1)) == ["tmpl-1"]


async def test_sweep_never_evicts_in_use_handles(pool, provider):
    await pool.acquire("tmpl-1", now=T0)

    evicted = await pool.sweep(now=T0 + timedelta(days=1))

    assert evicted == []
    assert pool.get("tmpl-1") is not None


async def test_sweep_continues_past_teardown_failure(pool, provider):
    a = await pool.acquire("tmpl-a", now=T0)
    b = await pool.acquire("tmpl-b", now=T0)
    pool.release(a, now=T0)
    pool.release(b, now=T0)
    provider.kill_error = RuntimeError("provider down")

    evicted = await pool.sweep(now=T0 + timedelta(hours=2))

    assert sorted(evicted) == ["tmpl-a", "tmpl-b"]
    assert len(pool) == 0


async def test_close_destroys_every_handle(pool, provider):
    await pool.acquire("tmpl-a")
    await pool.acquire("tmpl-b")

    await pool.close()

    assert len(pool) == 0
    assert sorted(provider.killed) == ["sbx-1", "sbx-2"]


# ============================================================================
# Process-wide accessors
# ============================================================================


async def test_pool_accessors_lifecycle(provider):
    with pytest.raises(RuntimeError):
        get_sandbox_pool()

    pool = init_sandbox_pool(provider, create_timeout=1)
    try:
        assert get_sandbox_pool() is pool
        assert init_sandbox_pool(provider) is pool
    finally:
        await close_sandbox_pool()

    with pytest.raises(RuntimeError):
        get_sandbox_pool()
