"""Append-only token usage log."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.config import LedgerSettings, get_settings
from tokenledger.db.models.core import TokenUsageLog, User
from tokenledger.logging import logger
from tokenledger.services.balance import BalanceCalculator
from tokenledger.services.exceptions import (
    InsufficientTokens,
    InvalidAmount,
    UserNotFound,
    require_user_id,
)


class UsageLogService:
    def __init__(self, session: AsyncSession, settings: LedgerSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    async def record_usage(
        self,
        user_id: int | None,
        tokens_used: int,
        *,
        request_type: str,
        model_id: str | None = None,
        cost: float = 0.0,
        metadata: dict[str, Any] | None = None,
    ) -> TokenUsageLog:
        user_id = require_user_id(user_id)
        if tokens_used <= 0:
            raise InvalidAmount("Token usage must be positive.")
        entry = TokenUsageLog(
            user_id=user_id,
            tokens_used=tokens_used,
            request_type=request_type,
            model_id=model_id,
            cost=cost,
            metadata_json=metadata,
        )
        self.session.add(entry)
        await self.session.flush()
        logger.info(
            "usage_recorded",
            user_id=user_id,
            tokens_used=tokens_used,
            request_type=request_type,
            model_id=model_id,
        )
        return entry

    async def consume(
        self,
        user_id: int | None,
        tokens: int,
        *,
        request_type: str = "chat",
        scope: str | None = None,
        model_id: str | None = None,
        cost: float = 0.0,
        metadata: dict[str, Any] | None = None,
    ) -> TokenUsageLog:
        """Log ``tokens`` of usage only if the balance covers it.

        The user row is locked for the rest of the transaction, so concurrent
        consumers for the same user serialize between the balance check and
        the insert. Scoped consumption is tagged with the scope's usage type
        so it is counted against that scope, and it must fit both the scoped
        and the overall balance.
        """

        user_id = require_user_id(user_id)
        if tokens <= 0:
            raise InvalidAmount("Token usage must be positive.")

        stmt = select(User.id).where(User.id == user_id).with_for_update()
        result = await self.session.execute(stmt)
        if result.scalar_one_or_none() is None:
            raise UserNotFound("User not found")

        calculator = BalanceCalculator(self.session, settings=self.settings)
        available = (await calculator.get_balance(user_id)).remaining
        if scope is not None:
            # Scoped rows also count against the overall balance.
            scoped = await calculator.get_balance(user_id, scope)
            available = min(available, scoped.remaining)
        if available < tokens:
            logger.info(
                "usage_rejected",
                user_id=user_id,
                requested=tokens,
                available=available,
                scope=scope,
            )
            raise InsufficientTokens(
                f"Insufficient tokens. Available: {available}, required: {tokens}",
                available=available,
                requested=tokens,
            )

        if scope is not None:
            metadata = {**(metadata or {}), "feature": request_type}
            request_type = self.settings.ledger.usage_tag_for(scope)
        return await self.record_usage(
            user_id,
            tokens,
            request_type=request_type,
            model_id=model_id,
            cost=cost,
            metadata=metadata,
        )

    async def recent_usage(self, user_id: int, *, limit: int = 50) -> list[TokenUsageLog]:
        stmt = (
            select(TokenUsageLog)
            .where(TokenUsageLog.user_id == user_id)
            .order_by(TokenUsageLog.timestamp.desc(), TokenUsageLog.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars())

    async def usage_by_request_type(
        self, user_id: int, *, since: datetime | None = None
    ) -> dict[str, int]:
        return await self._grouped_usage(user_id, TokenUsageLog.request_type, since)

    async def usage_by_model(
        self, user_id: int, *, since: datetime | None = None
    ) -> dict[str, int]:
        return await self._grouped_usage(user_id, TokenUsageLog.model_id, since)

    async def total_cost(self, user_id: int, *, since: datetime | None = None) -> float:
        stmt = select(func.coalesce(func.sum(TokenUsageLog.cost), 0)).where(
            TokenUsageLog.user_id == user_id
        )
        if since is not None:
            stmt = stmt.where(TokenUsageLog.timestamp >= since)
        result = await self.session.execute(stmt)
        return float(result.scalar_one())

    async def _grouped_usage(self, user_id: int, column, since: datetime | None) -> dict[str, int]:
        stmt = (
            select(column, func.sum(TokenUsageLog.tokens_used))
            .where(TokenUsageLog.user_id == user_id, column.is_not(None))
            .group_by(column)
        )
        if since is not None:
            stmt = stmt.where(TokenUsageLog.timestamp >= since)
        result = await self.session.execute(stmt)
        return {key: int(total or 0) for key, total in result.all()}


__all__ = ["UsageLogService"]
