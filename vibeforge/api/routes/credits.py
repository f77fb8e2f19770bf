"""Credit balance and usage API routes."""

from fastapi import APIRouter, Depends, Query, Request

from vibeforge.core.auth import ClerkUser, require_auth
from vibeforge.credits.ledger import CreditLedger
from vibeforge.credits.schemas import CreditStatus, CreditTier, UsageHistory, get_pricing

router = APIRouter()


def get_credit_ledger(request: Request) -> CreditLedger:
    return request.app.state.credit_ledger


@router.get("", response_model=CreditStatus, response_model_by_alias=True)
async def get_credit_status(
    user: ClerkUser = Depends(require_auth),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Current balance, daily allowance, tier, next reset and recent usage."""
    return await ledger.get_status(user.user_id)


@router.get("/usage", response_model=UsageHistory, response_model_by_alias=True)
async def get_usage_history(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: ClerkUser = Depends(require_auth),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    return await ledger.get_usage_history(user.user_id, limit=limit, offset=offset)


@router.get("/pricing")
async def get_credit_pricing():
    """Static pricing: credit cost per action and daily allowance per tier."""
    return get_pricing()


@router.post("/upgrade", response_model=CreditStatus, response_model_by_alias=True)
async def upgrade_to_premium(
    user: ClerkUser = Depends(require_auth),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Move the caller to the premium tier and grant its full daily allowance now."""
    return await ledger.set_tier(user.user_id, CreditTier.PREMIUM)


@router.post("/cancel-premium", response_model=CreditStatus, response_model_by_alias=True)
async def cancel_premium(
    user: ClerkUser = Depends(require_auth),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Return the caller to the free tier, resetting the balance to the free allowance."""
    return await ledger.set_tier(user.user_id, CreditTier.FREE)
