"""CodeGenerator capability and its provider adapters.

Each ProviderKind maps to one adapter factory in ADAPTER_FACTORIES. Provider
SDK errors are classified here: timeouts, connection failures, rate limits and
5xx/overload responses become TransientGenerationError (retried by the caller);
everything else becomes GenerationError.
"""

from collections.abc import Callable
from typing import Protocol

import anthropic
import openai
import structlog
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from vibeforge.agent.models import BrandedModel, ModelSelector, ProviderKind, calculate_cost, get_model
from vibeforge.agent.prompts import SYSTEM_PROMPT
from vibeforge.core.config import Settings, get_settings
from vibeforge.core.exceptions import GenerationError, TransientGenerationError

logger = structlog.get_logger(__name__)


class CodeGenerator(Protocol):
    """Prompt in, code text out. Raises GenerationError."""

    async def generate(self, prompt: str) -> str: ...


def _log_usage(model: BrandedModel, input_tokens: int, output_tokens: int) -> None:
    logger.info(
        "code_generated",
        model=model.selector.value,
        provider=model.provider.value,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        estimated_cost_usd=round(calculate_cost(model.selector, input_tokens, output_tokens), 6),
    )


class AnthropicCodeGenerator:
    """Claude models via the Anthropic Messages API."""

    def __init__(self, model: BrandedModel, client: AsyncAnthropic, max_tokens: int = 8192):
        self.model = model
        self.client = client
        self.max_tokens = max_tokens

    async def generate(self, prompt: str) -> str:
        try:
            response = await self.client.messages.create(
                model=self.model.provider_model,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=self.max_tokens,
            )
        except (anthropic.APIConnectionError, anthropic.RateLimitError) as exc:
            raise TransientGenerationError(f"Anthropic unavailable: {exc}") from exc
        except anthropic.APIStatusError as exc:
            if exc.status_code >= 500:
                raise TransientGenerationError(f"Anthropic error {exc.status_code}: {exc}") from exc
            raise GenerationError(f"Anthropic rejected the request: {exc}") from exc

        text = "".join(block.text for block in response.content if block.type == "text")
        if not text.strip():
            raise GenerationError("Model returned no code")

        _log_usage(self.model, response.usage.input_tokens, response.usage.output_tokens)
        return text


class OpenAICodeGenerator:
    """Chat Completions models: OpenAI itself and Gemini's OpenAI-compatible endpoint."""

    def __init__(self, model: BrandedModel, client: AsyncOpenAI, max_tokens: int = 8192):
        self.model = model
        self.client = client
        self.max_tokens = max_tokens

    async def generate(self, prompt: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model.provider_model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=self.max_tokens,
            )
        except (openai.APIConnectionError, openai.RateLimitError) as exc:
            raise TransientGenerationError(f"{self.model.provider.value} unavailable: {exc}") from exc
        except openai.APIStatusError as exc:
            if exc.status_code >= 500:
                raise TransientGenerationError(f"{self.model.provider.value} error {exc.status_code}: {exc}") from exc
            raise GenerationError(f"{self.model.provider.value} rejected the request: {exc}") from exc

        text = response.choices[0].message.content if response.choices else None
        if not text or not text.strip():
            raise GenerationError("Model returned no code")

        if response.usage is not None:
            _log_usage(self.model, response.usage.prompt_tokens, response.usage.completion_tokens)
        return text


def _build_gemini(model: BrandedModel, settings: Settings) -> CodeGenerator:
    client = AsyncOpenAI(api_key=settings.gemini_api_key, base_url=settings.gemini_base_url)
    return OpenAICodeGenerator(model, client, max_tokens=settings.generation_max_tokens)


def _build_openai(model: BrandedModel, settings: Settings) -> CodeGenerator:
    client = AsyncOpenAI(api_key=settings.openai_api_key)
    return OpenAICodeGenerator(model, client, max_tokens=settings.generation_max_tokens)


def _build_anthropic(model: BrandedModel, settings: Settings) -> CodeGenerator:
    client = AsyncAnthropic(api_key=settings.anthropic_api_key)
    return AnthropicCodeGenerator(model, client, max_tokens=settings.generation_max_tokens)


ADAPTER_FACTORIES: dict[ProviderKind, Callable[[BrandedModel, Settings], CodeGenerator]] = {
    ProviderKind.GEMINI: _build_gemini,
    ProviderKind.OPENAI: _build_openai,
    ProviderKind.ANTHROPIC: _build_anthropic,
}


def build_code_generator(selector: ModelSelector | str, settings: Settings | None = None) -> CodeGenerator:
    """Construct the adapter for ``selector``.

    Raises:
        ValueError: If ``selector`` is not in the catalog
    """
    settings = settings or get_settings()
    model = get_model(selector)
    return ADAPTER_FACTORIES[model.provider](model, settings)
