"""E2B-backed SandboxProvider.

Deploys a generated Next.js page into an E2B sandbox:
- Writes ``pages/index.js`` and a minimal ``package.json``
- Installs dependencies
- Starts ``next dev`` in the background and waits for it to answer
"""

import asyncio
import json
import logging

import httpx
from e2b_code_interpreter import AsyncSandbox

from vibeforge.core.config import Settings, get_settings
from vibeforge.core.exceptions import (
    SandboxExecutionError,
    SandboxProvisionError,
    SandboxTeardownError,
)
from vibeforge.sandbox.provider import DeployResult, SandboxInstance

logger = logging.getLogger(__name__)

APP_DIR = "/home/user/app"

PACKAGE_JSON = {
    "name": "nextjs-preview",
    "version": "1.0.0",
    "private": True,
    "scripts": {
        "dev": "next dev",
        "build": "next build",
        "start": "next start",
    },
    "dependencies": {
        "next": "^13.0.0",
        "react": "^18.2.0",
        "react-dom": "^18.2.0",
    },
}

_NETWORK_ERROR_MARKERS = ("econnreset", "network", "etimedout")


class E2BSandboxProvider:
    """Creates and drives E2B sandboxes for job previews."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    async def create(self, template: str) -> SandboxInstance:
        """Start a new sandbox from ``template``.

        Raises:
            SandboxProvisionError: If the E2B API rejects or fails the request
        """
        try:
            sandbox = await AsyncSandbox.create(
                template=template,
                timeout=self.settings.sandbox_lifetime_seconds,
                api_key=self.settings.e2b_api_key or None,
            )
        except Exception as e:
            raise SandboxProvisionError(f"Failed to start sandbox: {e}") from e

        logger.info("Sandbox %s created from template %s", sandbox.sandbox_id, template)
        return SandboxInstance(instance_id=sandbox.sandbox_id, template=template, native=sandbox)

    async def _sandbox_for(self, instance: SandboxInstance) -> AsyncSandbox:
        if instance.native is not None:
            return instance.native
        try:
            sandbox = await AsyncSandbox.connect(instance.instance_id, api_key=self.settings.e2b_api_key or None)
        except Exception as e:
            raise SandboxExecutionError(f"Failed to connect to sandbox {instance.instance_id}: {e}") from e
        instance.native = sandbox
        return sandbox

    async def _run(self, sandbox: AsyncSandbox, command: str, timeout: int = 300) -> dict:
        try:
            result = await sandbox.commands.run(command, timeout=float(timeout), cwd=APP_DIR)
        except Exception as e:
            # CommandExitException carries the result fields of a non-zero exit
            exit_code = getattr(e, "exit_code", None)
            if exit_code is None:
                raise SandboxExecutionError(f"Failed to run command '{command}': {e}") from e
            return {"stdout": getattr(e, "stdout", ""), "stderr": getattr(e, "stderr", ""), "exit_code": exit_code}
        return {"stdout": result.stdout, "stderr": result.stderr, "exit_code": result.exit_code}

    async def _install(self, sandbox: AsyncSandbox) -> None:
        result = await self._run(sandbox, "npm install")
        if result["exit_code"] == 0:
            return

        stderr = result.get("stderr", "")
        # Retry once on network errors
        if any(marker in stderr.lower() for marker in _NETWORK_ERROR_MARKERS):
            await asyncio.sleep(10)
            result = await self._run(sandbox, "npm install")
            if result["exit_code"] == 0:
                return
            raise SandboxExecutionError(f"npm install failed after retry: {result.get('stderr', '')[:500]}")
        raise SandboxExecutionError(f"npm install failed: {stderr[:500]}")

    async def _wait_for_dev_server(self, url: str, timeout: int = 120, interval: float = 3.0) -> None:
        """Poll URL with httpx until a non-5xx response or timeout.

        Raises:
            SandboxExecutionError: If server doesn't respond within timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        async with httpx.AsyncClient(verify=False, timeout=10.0) as client:
            while loop.time() < deadline:
                try:
                    resp = await client.get(url, follow_redirects=True)
                    if resp.status_code < 500:
                        return
                except (httpx.ConnectError, httpx.TimeoutException, httpx.RemoteProtocolError):
                    pass  # Server not ready yet
                await asyncio.sleep(interval)

        raise SandboxExecutionError(f"Dev server did not become ready within {timeout}s at {url}")

    async def deploy(self, instance: SandboxInstance, artifact: str) -> DeployResult:
        """Write the artifact as a Next.js page, install, start and wait for the dev server.

        Raises:
            SandboxExecutionError: If any file, install or server step fails
        """
        sandbox = await self._sandbox_for(instance)
        port = self.settings.sandbox_preview_port
        logs: list[str] = []

        try:
            await sandbox.files.make_dir(f"{APP_DIR}/pages")
            await sandbox.files.write(f"{APP_DIR}/pages/index.js", artifact)
            await sandbox.files.write(f"{APP_DIR}/package.json", json.dumps(PACKAGE_JSON, indent=2))
        except Exception as e:
            raise SandboxExecutionError(f"Failed to write app files: {e}") from e
        logs.append("Wrote pages/index.js and package.json")

        await self._install(sandbox)
        logs.append("Installed dependencies")

        try:
            await sandbox.commands.run(f"npx next dev -p {port}", background=True, cwd=APP_DIR)
        except Exception as e:
            raise SandboxExecutionError(f"Failed to start dev server: {e}") from e

        await self._wait_for_dev_server(f"https://{sandbox.get_host(port)}")
        logs.append(f"Dev server listening on port {port}")

        logger.info("Deployed artifact to sandbox %s", instance.instance_id)
        return DeployResult(port=port, logs=logs)

    async def kill(self, instance: SandboxInstance) -> None:
        """Kill the sandbox.

        Raises:
            SandboxTeardownError: If E2B reports a failure
        """
        try:
            if instance.native is not None:
                await instance.native.kill()
            else:
                await AsyncSandbox.kill(instance.instance_id, api_key=self.settings.e2b_api_key or None)
        except Exception as e:
            raise SandboxTeardownError(f"Failed to kill sandbox {instance.instance_id}: {e}") from e

        logger.info("Sandbox %s killed", instance.instance_id)
