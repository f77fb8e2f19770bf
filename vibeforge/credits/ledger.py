"""Per-user daily credit ledger with atomic check-and-consume.

Storage layout (Redis):
- ``credits:{user_id}``        hash: balance, daily_allowance, tier, reset_at
- ``credits:{user_id}:usage``  list: append-only JSON usage entries (oldest first)

Every read-modify-write of a balance runs inside a WATCH/MULTI optimistic
transaction on the user's hash, so two concurrent requests can never both
pass a check against the same pre-debit (or pre-reset) balance.
"""

import json
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from vibeforge.core.exceptions import LedgerError
from vibeforge.credits.schemas import (
    CREDIT_COSTS,
    TIER_CHANGE_ACTION,
    TIER_DAILY_ALLOWANCE,
    TIER_LIMIT_MESSAGES,
    CreditAction,
    CreditCheckResult,
    CreditStatus,
    CreditTier,
    UsageEntry,
    UsageHistory,
)
from vibeforge.db.redis import store_retry

logger = structlog.get_logger(__name__)

RECENT_USAGE_LIMIT = 10


def _balance_key(user_id: str) -> str:
    return f"credits:{user_id}"


def _usage_key(user_id: str) -> str:
    return f"credits:{user_id}:usage"


def next_reset(now: datetime | None = None) -> datetime:
    """Get next midnight UTC.

    Args:
        now: Current time (for deterministic testing)

    Returns:
        Tomorrow's midnight UTC as datetime
    """
    now = now or datetime.now(UTC)
    tomorrow = now.date() + timedelta(days=1)
    return datetime.combine(tomorrow, datetime.min.time(), tzinfo=UTC)


@dataclass
class _LedgerState:
    balance: int
    daily_allowance: int
    tier: CreditTier
    reset_at: datetime

    @classmethod
    def load(cls, raw: dict, now: datetime) -> "_LedgerState":
        """Build state from a stored hash, or a fresh free-tier entry for a new user."""
        if not raw:
            tier = CreditTier.FREE
            allowance = TIER_DAILY_ALLOWANCE[tier]
            return cls(balance=allowance, daily_allowance=allowance, tier=tier, reset_at=next_reset(now))

        return cls(
            balance=int(raw["balance"]),
            daily_allowance=int(raw["daily_allowance"]),
            tier=CreditTier(raw["tier"]),
            reset_at=datetime.fromisoformat(raw["reset_at"]),
        )

    def refill_if_due(self, now: datetime) -> bool:
        """Refill to the daily allowance once the reset boundary has passed."""
        if now < self.reset_at:
            return False
        self.balance = self.daily_allowance
        self.reset_at = next_reset(now)
        return True

    def to_hash(self) -> dict:
        return {
            "balance": self.balance,
            "daily_allowance": self.daily_allowance,
            "tier": self.tier.value,
            "reset_at": self.reset_at.isoformat(),
        }


def _usage_record(
    action: str,
    cost: int,
    success: bool,
    now: datetime,
    remaining: int | None = None,
    error: str | None = None,
) -> str:
    entry = UsageEntry(
        action=action,
        cost=cost,
        success=success,
        timestamp=now.isoformat(),
        remaining=remaining,
        error=error,
    )
    return entry.model_dump_json()


class CreditLedger:
    """Tracks per-user daily credit balances and the usage audit trail."""

    def __init__(self, redis: Redis):
        self.redis = redis

    async def check_and_consume(
        self,
        user_id: str,
        action: CreditAction | str,
        consume: bool = True,
        now: datetime | None = None,
    ) -> CreditCheckResult:
        """Check the user's balance for ``action`` and optionally debit it.

        A due daily reset is applied in the same transaction as the check.
        With ``consume=False`` nothing is written (dry-run pre-check).

        Args:
            user_id: Owner of the balance
            action: Billable action (determines the cost)
            consume: Debit and log on success; log a failed entry on rejection
            now: Current time (for deterministic testing)

        Returns:
            CreditCheckResult with ok, remaining and a tier-specific reason on rejection

        Raises:
            LedgerError: If the ledger cannot be read or written
        """
        now = now or datetime.now(UTC)
        action = CreditAction(action)

        try:
            result = await self._check_and_consume(user_id, action, consume, now)
        except RedisError as exc:
            logger.error(
                "credit_ledger_unavailable",
                user_id=user_id,
                action=action.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise LedgerError(f"Credit ledger unavailable: {exc}") from exc

        if not result.ok:
            logger.info(
                "credit_check_rejected",
                user_id=user_id,
                action=action.value,
                remaining=result.remaining,
                consume=consume,
            )
        return result

    @store_retry
    async def _check_and_consume(
        self,
        user_id: str,
        action: CreditAction,
        consume: bool,
        now: datetime,
    ) -> CreditCheckResult:
        key = _balance_key(user_id)
        cost = CREDIT_COSTS[action]

        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    state = _LedgerState.load(await pipe.hgetall(key), now)
                    refilled = state.refill_if_due(now)
                    if refilled:
                        logger.info("credit_balance_reset", user_id=user_id, balance=state.balance)

                    if state.balance < cost:
                        reason = TIER_LIMIT_MESSAGES[state.tier]
                        if consume:
                            pipe.multi()
                            pipe.hset(key, mapping=state.to_hash())
                            pipe.rpush(
                                _usage_key(user_id),
                                _usage_record(
                                    action.value, 0, False, now, remaining=state.balance, error=reason
                                ),
                            )
                            await pipe.execute()
                        return CreditCheckResult(ok=False, remaining=state.balance, reason=reason)

                    if not consume:
                        return CreditCheckResult(ok=True, remaining=state.balance - cost)

                    state.balance -= cost
                    pipe.multi()
                    pipe.hset(key, mapping=state.to_hash())
                    pipe.rpush(
                        _usage_key(user_id),
                        _usage_record(action.value, cost, True, now, remaining=state.balance),
                    )
                    await pipe.execute()
                    return CreditCheckResult(ok=True, remaining=state.balance)
                except WatchError:
                    # Another request touched this user's balance; re-read and retry
                    logger.debug("credit_ledger_contention", user_id=user_id, action=action.value)
                    continue

    async def get_status(self, user_id: str, now: datetime | None = None) -> CreditStatus:
        """Return the user's balance, allowance, tier, next reset and recent usage.

        Read-only: a due reset is reflected in the result but not persisted.
        """
        now = now or datetime.now(UTC)
        try:
            raw = await self.redis.hgetall(_balance_key(user_id))
            recent = await self.redis.lrange(_usage_key(user_id), -RECENT_USAGE_LIMIT, -1)
        except RedisError as exc:
            raise LedgerError(f"Credit ledger unavailable: {exc}") from exc

        state = _LedgerState.load(raw, now)
        state.refill_if_due(now)
        return CreditStatus(
            current=state.balance,
            daily=state.daily_allowance,
            tier=state.tier,
            reset_at=state.reset_at.isoformat(),
            recent_usage=[UsageEntry.model_validate_json(item) for item in reversed(recent)],
        )

    async def record_failed_usage(
        self,
        user_id: str,
        action: CreditAction | str,
        error: str,
        now: datetime | None = None,
    ) -> None:
        """Append a zero-cost failed entry for an admitted action that did not complete."""
        now = now or datetime.now(UTC)
        action = CreditAction(action)
        try:
            await self.redis.rpush(_usage_key(user_id), _usage_record(action.value, 0, False, now, error=error))
        except RedisError as exc:
            raise LedgerError(f"Credit ledger unavailable: {exc}") from exc

    async def set_tier(self, user_id: str, tier: CreditTier | str, now: datetime | None = None) -> CreditStatus:
        """Move a user to ``tier``, refilling the balance to the new allowance.

        Args:
            user_id: User identifier
            tier: Target tier
            now: Current time (for deterministic testing)

        Returns:
            The resulting CreditStatus
        """
        now = now or datetime.now(UTC)
        tier = CreditTier(tier)
        key = _balance_key(user_id)

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        state = _LedgerState.load(await pipe.hgetall(key), now)
                        state.tier = tier
                        state.daily_allowance = TIER_DAILY_ALLOWANCE[tier]
                        state.balance = state.daily_allowance
                        state.reset_at = next_reset(now)

                        pipe.multi()
                        pipe.hset(key, mapping=state.to_hash())
                        pipe.rpush(
                            _usage_key(user_id),
                            _usage_record(TIER_CHANGE_ACTION, 0, True, now, remaining=state.balance),
                        )
                        await pipe.execute()
                        break
                    except WatchError:
                        continue
        except RedisError as exc:
            raise LedgerError(f"Credit ledger unavailable: {exc}") from exc

        logger.info("credit_tier_changed", user_id=user_id, tier=tier.value)
        return await self.get_status(user_id, now=now)

    async def get_usage_history(self, user_id: str, limit: int = 20, offset: int = 0) -> UsageHistory:
        """Paginated usage history, newest first. A non-positive ``limit`` yields an empty page."""
        key = _usage_key(user_id)
        offset = max(0, offset)
        try:
            total = await self.redis.llen(key)
            if limit <= 0 or offset >= total:
                items = []
            else:
                items = await self.redis.lrange(key, -(offset + limit), -(offset + 1))
        except RedisError as exc:
            raise LedgerError(f"Credit ledger unavailable: {exc}") from exc

        usage = [UsageEntry.model_validate_json(item) for item in reversed(items)]
        return UsageHistory(usage=usage, total=total, has_more=offset + len(usage) < total)
