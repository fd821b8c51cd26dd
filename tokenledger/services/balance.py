"""Read-only balance derivation over allocations and the usage log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.config import LedgerSettings, get_settings
from tokenledger.db.models.core import TokenAllocation, TokenUsageLog
from tokenledger.domain.models import TokenBalance
from tokenledger.services.exceptions import require_user_id
from tokenledger.services.subscriptions import SubscriptionService
from tokenledger.utils.datetime import utc_now


def spendable_allocation_filter(user_id: int, now: datetime, scope: str | None = None) -> list:
    """Predicate for allocations that count towards a balance at ``now``."""

    clauses = [
        TokenAllocation.user_id == user_id,
        TokenAllocation.is_active.is_(True),
        or_(TokenAllocation.expires_at.is_(None), TokenAllocation.expires_at > now),
    ]
    if scope is not None:
        clauses.append(TokenAllocation.reason == scope)
    return clauses


class BalanceCalculator:
    """Derive ``allocated``/``used``/``remaining`` for a user.

    Nothing here writes to the session. A scope narrows allocations to rows
    whose ``reason`` equals the scope and usage to the request type mapped
    for it in :class:`~tokenledger.config.LedgerRules`.
    """

    def __init__(self, session: AsyncSession, settings: LedgerSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    async def get_balance(
        self,
        user_id: int | None,
        scope: str | None = None,
        *,
        now: datetime | None = None,
    ) -> TokenBalance:
        user_id = require_user_id(user_id)
        now = now or utc_now()
        allocated = await self.allocated_total(user_id, scope=scope, now=now)
        used = await self.used_total(user_id, scope=scope)
        return TokenBalance.from_totals(allocated, used, scope=scope)

    async def allocated_total(
        self, user_id: int, *, scope: str | None = None, now: datetime | None = None
    ) -> int:
        stmt = select(func.coalesce(func.sum(TokenAllocation.token_amount), 0)).where(
            *spendable_allocation_filter(user_id, now or utc_now(), scope)
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def used_total(self, user_id: int, *, scope: str | None = None) -> int:
        stmt = select(func.coalesce(func.sum(TokenUsageLog.tokens_used), 0)).where(
            TokenUsageLog.user_id == user_id
        )
        if scope is not None:
            stmt = stmt.where(
                TokenUsageLog.request_type == self.settings.ledger.usage_tag_for(scope)
            )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def get_extra_credits(self, user_id: int | None) -> TokenBalance:
        """Purchased credits only; free-tier users always read as zero."""

        user_id = require_user_id(user_id)
        scope = self.settings.ledger.extra_credits_reason
        subscriptions = SubscriptionService(self.session, settings=self.settings)
        if await subscriptions.is_free_tier(user_id):
            return TokenBalance(scope=scope)
        return await self.get_balance(user_id, scope)


__all__ = ["BalanceCalculator", "spendable_allocation_filter"]
