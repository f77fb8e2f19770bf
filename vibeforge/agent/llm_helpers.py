"""Shared code-generation helpers: bounded retry and fence stripping.

This module provides:
- strip_code_fences: Remove markdown code fences from model output
- generate_code_with_retry: Call a CodeGenerator, retrying transient provider errors
"""

import asyncio

import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from vibeforge.agent.generator import CodeGenerator
from vibeforge.core.exceptions import GenerationError, TransientGenerationError

logger = structlog.get_logger(__name__)

GENERATION_ATTEMPTS = 3
DEFAULT_GENERATION_TIMEOUT = 120


def strip_code_fences(content: str) -> str:
    """Remove a markdown code fence wrapping the whole output, if present."""
    content = content.strip()
    if content.startswith("```"):
        first_newline = content.find("\n")
        if first_newline != -1:
            content = content[first_newline + 1 :]
        if content.endswith("```"):
            content = content[:-3].rstrip()
    return content


@retry(
    retry=retry_if_exception_type(TransientGenerationError),
    stop=stop_after_attempt(GENERATION_ATTEMPTS),
    wait=wait_exponential(multiplier=2, min=2, max=30),
    reraise=True,
    before_sleep=lambda rs: logger.warning(
        "code_generation_retrying",
        attempt=rs.attempt_number,
        sleep_seconds=rs.next_action.sleep,
        error=str(rs.outcome.exception()),
    ),
)
async def generate_code_with_retry(
    generator: CodeGenerator,
    prompt: str,
    timeout: float = DEFAULT_GENERATION_TIMEOUT,
) -> str:
    """Generate code for ``prompt``, retrying only transient provider failures.

    Each attempt is bounded by ``timeout``; an attempt that times out counts as
    transient. Content errors propagate immediately.

    Args:
        generator: CodeGenerator adapter for the selected model
        prompt: User prompt
        timeout: Per-attempt ceiling in seconds

    Returns:
        Generated code with any wrapping code fence removed

    Raises:
        GenerationError: On content errors, or once transient retries are exhausted
    """
    try:
        raw = await asyncio.wait_for(generator.generate(prompt), timeout=timeout)
    except TimeoutError as exc:
        raise TransientGenerationError(f"Code generation timed out after {timeout}s") from exc

    code = strip_code_fences(raw)
    if not code:
        raise GenerationError("Model returned no code")
    return code
