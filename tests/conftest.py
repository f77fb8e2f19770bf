"""Shared test fixtures and in-process doubles for the sandbox provider and code generator."""

import asyncio

import pytest
from fakeredis import FakeAsyncRedis

from vibeforge.core.config import Settings
from vibeforge.core.exceptions import SandboxTeardownError
from vibeforge.sandbox.provider import DeployResult, SandboxInstance

SAMPLE_ARTIFACT = "export default function Home() { return <h1>Hello</h1>; }"


class FakeSandboxProvider:
    """Test double for E2BSandboxProvider: no network, records every call."""

    def __init__(self) -> None:
        self.create_calls = 0
        self.create_delay = 0.0
        self.create_error: Exception | None = None
        self.deploy_error: Exception | None = None
        self.kill_error: Exception | None = None
        # When set, deploy blocks until the gate opens
        self.deploy_gate: asyncio.Event | None = None
        self.deploy_started = asyncio.Event()
        self.deployed: list[tuple[str, str]] = []
        self.killed: list[str] = []

    async def create(self, template: str) -> SandboxInstance:
        self.create_calls += 1
        instance_id = f"sbx-{self.create_calls}"
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_error is not None:
            raise self.create_error
        return SandboxInstance(instance_id=instance_id, template=template)

    async def deploy(self, instance: SandboxInstance, artifact: str) -> DeployResult:
        self.deploy_started.set()
        if self.deploy_gate is not None:
            await self.deploy_gate.wait()
        if self.deploy_error is not None:
            raise self.deploy_error
        self.deployed.append((instance.instance_id, artifact))
        return DeployResult(port=3000)

    async def kill(self, instance: SandboxInstance) -> None:
        self.killed.append(instance.instance_id)
        if self.kill_error is not None:
            raise SandboxTeardownError(str(self.kill_error))


class FakeCodeGenerator:
    """Scripted CodeGenerator: each call pops the next outcome (code or exception)."""

    def __init__(self, outcomes: list | None = None) -> None:
        self.outcomes = list(outcomes) if outcomes else []
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        outcome = self.outcomes.pop(0) if self.outcomes else SAMPLE_ARTIFACT
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
async def redis():
    """Create a fake Redis instance for testing."""
    fake_redis = FakeAsyncRedis(decode_responses=True)
    yield fake_redis
    await fake_redis.flushall()
    await fake_redis.aclose()


@pytest.fixture
def settings():
    return Settings(
        e2b_template_id="tmpl-1",
        gemini_api_key="test-gemini-key",
        openai_api_key="",
        anthropic_api_key="",
        min_prompt_length=10,
        generation_timeout_seconds=5,
    )


@pytest.fixture
def provider():
    return FakeSandboxProvider()


@pytest.fixture
def generator():
    return FakeCodeGenerator()
