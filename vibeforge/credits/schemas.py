"""Credit actions, tier allowances and ledger result models."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class CreditAction(str, Enum):
    """Billable actions. Each maps to a fixed integer cost."""

    APP_GENERATION = "app_generation"
    SANDBOX_PREVIEW = "sandbox_preview"
    CODE_EXECUTION = "code_execution"


CREDIT_COSTS: dict[CreditAction, int] = {
    CreditAction.APP_GENERATION: 5,
    CreditAction.SANDBOX_PREVIEW: 2,
    CreditAction.CODE_EXECUTION: 1,
}


class CreditTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


TIER_DAILY_ALLOWANCE: dict[CreditTier, int] = {
    CreditTier.FREE: 50,
    CreditTier.PREMIUM: 1000,
}

TIER_LIMIT_MESSAGES: dict[CreditTier, str] = {
    CreditTier.FREE: "Daily free credit limit reached. Upgrade to premium for more credits!",
    CreditTier.PREMIUM: "Premium credit limit reached for today",
}

# Usage-log action recorded when a user's tier changes
TIER_CHANGE_ACTION = "tier_change"


class CreditCheckResult(BaseModel):
    ok: bool
    remaining: int
    reason: str | None = None


class UsageEntry(BaseModel):
    """One append-only usage log record."""

    action: str
    cost: int
    success: bool
    timestamp: str  # ISO-8601 UTC
    remaining: int | None = None
    error: str | None = None


class CreditStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current: int
    daily: int
    tier: CreditTier
    reset_at: str = Field(alias="resetAt")
    recent_usage: list[UsageEntry] = Field(default_factory=list, alias="recentUsage")


class UsageHistory(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    usage: list[UsageEntry]
    total: int
    has_more: bool = Field(alias="hasMore")


def get_pricing() -> dict:
    """Static pricing catalog: action costs and tier allowances."""
    return {
        "actions": {action.value: cost for action, cost in CREDIT_COSTS.items()},
        "tiers": {tier.value: allowance for tier, allowance in TIER_DAILY_ALLOWANCE.items()},
    }
