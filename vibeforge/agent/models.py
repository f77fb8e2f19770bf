"""Closed catalog of selectable code-generation models.

Every ModelSelector maps to exactly one BrandedModel, and every BrandedModel
names exactly one ProviderKind. Provider selection is a lookup in this table,
never string matching.
"""

from dataclasses import dataclass
from enum import Enum

from vibeforge.core.config import Settings


class ProviderKind(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class ModelSelector(str, Enum):
    VIBE_S = "vibe-s"
    VIBE_M = "vibe-m"
    VIBE_L = "vibe-l"
    GPT_4O = "gpt-4o"
    GPT_4O_MINI = "gpt-4o-mini"
    CLAUDE_3_5_SONNET = "claude-3-5-sonnet"


@dataclass(frozen=True)
class BrandedModel:
    selector: ModelSelector
    name: str
    provider: ProviderKind
    provider_model: str
    description: str
    input_price: float  # USD per 1M tokens
    output_price: float  # USD per 1M tokens
    context_length: int


MODEL_CATALOG: dict[ModelSelector, BrandedModel] = {
    ModelSelector.VIBE_S: BrandedModel(
        selector=ModelSelector.VIBE_S,
        name="Vibe-S (Speed)",
        provider=ProviderKind.GEMINI,
        provider_model="gemini-1.5-flash",
        description="Fast model optimized for quick responses and simple tasks",
        input_price=0.075,
        output_price=0.3,
        context_length=128_000,
    ),
    ModelSelector.VIBE_M: BrandedModel(
        selector=ModelSelector.VIBE_M,
        name="Vibe-M (Balanced)",
        provider=ProviderKind.GEMINI,
        provider_model="gemini-1.5-pro",
        description="Balanced model for general-purpose development tasks",
        input_price=0.125,
        output_price=0.5,
        context_length=128_000,
    ),
    ModelSelector.VIBE_L: BrandedModel(
        selector=ModelSelector.VIBE_L,
        name="Vibe-L (Quality)",
        provider=ProviderKind.GEMINI,
        provider_model="gemini-1.5-pro-002",
        description="High-quality model for complex applications and advanced reasoning",
        input_price=0.25,
        output_price=1.0,
        context_length=128_000,
    ),
    ModelSelector.GPT_4O: BrandedModel(
        selector=ModelSelector.GPT_4O,
        name="GPT-4o",
        provider=ProviderKind.OPENAI,
        provider_model="gpt-4o",
        description="OpenAI's flagship model for complex reasoning and code generation",
        input_price=2.5,
        output_price=10.0,
        context_length=128_000,
    ),
    ModelSelector.GPT_4O_MINI: BrandedModel(
        selector=ModelSelector.GPT_4O_MINI,
        name="GPT-4o Mini",
        provider=ProviderKind.OPENAI,
        provider_model="gpt-4o-mini",
        description="Faster, more affordable version of GPT-4o",
        input_price=0.15,
        output_price=0.6,
        context_length=128_000,
    ),
    ModelSelector.CLAUDE_3_5_SONNET: BrandedModel(
        selector=ModelSelector.CLAUDE_3_5_SONNET,
        name="Claude 3.5 Sonnet",
        provider=ProviderKind.ANTHROPIC,
        provider_model="claude-3-5-sonnet-20241022",
        description="Anthropic's most intelligent model for complex tasks",
        input_price=3.0,
        output_price=15.0,
        context_length=200_000,
    ),
}

DEFAULT_MODEL = ModelSelector.VIBE_M


def get_model(selector: ModelSelector | str) -> BrandedModel:
    """Look up a model. Raises ValueError for an unknown selector."""
    return MODEL_CATALOG[ModelSelector(selector)]


def is_provider_configured(provider: ProviderKind, settings: Settings) -> bool:
    if provider == ProviderKind.GEMINI:
        return bool(settings.gemini_api_key)
    if provider == ProviderKind.OPENAI:
        return bool(settings.openai_api_key)
    return bool(settings.anthropic_api_key)


def get_available_models(settings: Settings) -> list[BrandedModel]:
    """Models whose provider has credentials. The Gemini family is always listed."""
    return [
        model
        for model in MODEL_CATALOG.values()
        if model.provider == ProviderKind.GEMINI or is_provider_configured(model.provider, settings)
    ]


def calculate_cost(selector: ModelSelector | str, input_tokens: int, output_tokens: int) -> float:
    """Estimated USD cost of one request."""
    model = get_model(selector)
    return (input_tokens / 1_000_000) * model.input_price + (output_tokens / 1_000_000) * model.output_price
