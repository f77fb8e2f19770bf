"""SandboxProvider capability: the external service that owns physical sandboxes."""

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class SandboxInstance:
    """A physical sandbox as returned by the provider."""

    instance_id: str
    template: str
    native: Any = field(default=None, repr=False)  # provider SDK object, if any


@dataclass
class DeployResult:
    """Outcome of deploying an artifact into a sandbox."""

    port: int
    logs: list[str] = field(default_factory=list)


class SandboxProvider(Protocol):
    """Creates, runs code in, and tears down remote sandboxes."""

    async def create(self, template: str) -> SandboxInstance:
        """Create a sandbox from ``template``. Raises SandboxProvisionError."""
        ...

    async def deploy(self, instance: SandboxInstance, artifact: str) -> DeployResult:
        """Deploy and start ``artifact`` inside ``instance``. Raises SandboxExecutionError."""
        ...

    async def kill(self, instance: SandboxInstance) -> None:
        """Tear the sandbox down. Raises SandboxTeardownError."""
        ...
