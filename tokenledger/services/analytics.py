"""Admin-facing token analytics."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta
from typing import Literal

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.config import LedgerSettings, get_settings
from tokenledger.db.models.core import (
    Subscription,
    SubscriptionPlan,
    TokenAllocation,
    TokenUsageLog,
    User,
)
from tokenledger.domain.models import (
    AllocationModel,
    DailyUsage,
    TokenUsageMetrics,
    UsageEntry,
    UserTokenDetail,
    UserTokenPage,
    UserTokenRow,
)
from tokenledger.services.allocations import AllocationService
from tokenledger.services.balance import BalanceCalculator
from tokenledger.services.exceptions import UserNotFound
from tokenledger.services.subscriptions import SubscriptionService
from tokenledger.services.usage import UsageLogService
from tokenledger.utils.datetime import as_utc, start_of_day, utc_now

DEFAULT_PLAN_LABEL = "Free"

SortField = Literal["name", "email", "created", "tokens", "usage"]


class TokenAnalyticsService:
    def __init__(self, session: AsyncSession, settings: LedgerSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    async def overview(self, *, days: int = 30, top: int = 10) -> TokenUsageMetrics:
        """Platform-wide allocation and usage figures for the last ``days``."""

        since = start_of_day(utc_now() - timedelta(days=days))

        allocated_stmt = select(func.coalesce(func.sum(TokenAllocation.token_amount), 0)).where(
            TokenAllocation.is_active.is_(True)
        )
        total_allocated = int((await self.session.execute(allocated_stmt)).scalar_one())

        usage_stmt = select(
            func.coalesce(func.sum(TokenUsageLog.tokens_used), 0),
            func.coalesce(func.sum(TokenUsageLog.cost), 0),
        ).where(TokenUsageLog.timestamp >= since)
        used_raw, cost_raw = (await self.session.execute(usage_stmt)).one()
        total_used, total_cost = int(used_raw), float(cost_raw)

        holders_stmt = select(func.count(func.distinct(TokenAllocation.user_id))).where(
            TokenAllocation.is_active.is_(True)
        )
        holders = int((await self.session.execute(holders_stmt)).scalar_one())

        top_stmt = (
            select(TokenUsageLog.user_id, func.sum(TokenUsageLog.tokens_used).label("tokens"))
            .where(TokenUsageLog.timestamp >= since)
            .group_by(TokenUsageLog.user_id)
            .order_by(func.sum(TokenUsageLog.tokens_used).desc())
            .limit(top)
        )
        top_result = await self.session.execute(top_stmt)
        top_usage = {user_id: int(tokens) for user_id, tokens in top_result.all()}
        top_rows = await self._user_rows(top_usage.keys(), used_override=top_usage)
        top_rows.sort(key=lambda row: row.tokens_used, reverse=True)

        model_stmt = (
            select(TokenUsageLog.model_id, func.sum(TokenUsageLog.tokens_used))
            .where(TokenUsageLog.timestamp >= since, TokenUsageLog.model_id.is_not(None))
            .group_by(TokenUsageLog.model_id)
            .order_by(func.sum(TokenUsageLog.tokens_used).desc())
        )
        model_result = await self.session.execute(model_stmt)
        by_model = {model: int(tokens) for model, tokens in model_result.all()}

        day = func.date(TokenUsageLog.timestamp)
        daily_stmt = (
            select(
                day,
                func.sum(TokenUsageLog.tokens_used),
                func.coalesce(func.sum(TokenUsageLog.cost), 0),
            )
            .where(TokenUsageLog.timestamp >= since)
            .group_by(day)
            .order_by(day)
        )
        daily = [
            DailyUsage(
                date=value.isoformat() if hasattr(value, "isoformat") else str(value),
                tokens=int(tokens or 0),
                cost=float(cost or 0),
            )
            for value, tokens, cost in (await self.session.execute(daily_stmt)).all()
        ]

        return TokenUsageMetrics(
            total_tokens_allocated=total_allocated,
            total_tokens_used=total_used,
            total_cost=total_cost,
            utilization_rate=(total_used / total_allocated * 100) if total_allocated > 0 else 0.0,
            cost_per_token=(total_cost / total_used) if total_used > 0 else 0.0,
            users_with_tokens=holders,
            top_users=top_rows,
            usage_by_model=by_model,
            usage_by_day=daily,
        )

    async def user_detail(self, user_id: int, *, recent: int = 50) -> UserTokenDetail:
        user = await self.session.get(User, user_id)
        if user is None:
            raise UserNotFound("User not found")

        calculator = BalanceCalculator(self.session, settings=self.settings)
        balance = await calculator.get_balance(user.id)
        allocations = await AllocationService(
            self.session, settings=self.settings
        ).list_active(user.id)
        usage = UsageLogService(self.session, settings=self.settings)
        recent_rows = await usage.recent_usage(user.id, limit=recent)
        subscription = await SubscriptionService(
            self.session, settings=self.settings
        ).get_active_subscription(user.id)

        latest_allocation = allocations[0] if allocations else None
        return UserTokenDetail(
            user_id=user.id,
            user_name=user.name or "Unknown User",
            email=user.email or "",
            balance=balance,
            total_cost=await usage.total_cost(user.id),
            subscription_plan=(
                subscription.plan.display_name if subscription else DEFAULT_PLAN_LABEL
            ),
            last_refresh=as_utc(
                latest_allocation.created_at if latest_allocation else user.created_at
            ),
            last_activity=as_utc(recent_rows[0].timestamp if recent_rows else user.created_at),
            expires_at=as_utc(latest_allocation.expires_at) if latest_allocation else None,
            allocations=[AllocationModel.model_validate(row) for row in allocations],
            recent_usage=[
                UsageEntry(
                    id=row.id,
                    tokens_used=row.tokens_used,
                    cost=float(row.cost or 0),
                    request_type=row.request_type,
                    model_id=row.model_id,
                    timestamp=row.timestamp,
                    metadata=row.metadata_json,
                )
                for row in recent_rows
            ],
            usage_by_type=await usage.usage_by_request_type(user.id),
            usage_by_model=await usage.usage_by_model(user.id),
        )

    async def list_users(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        search: str | None = None,
        plan: str | None = None,
        sort_by: SortField = "name",
        descending: bool = False,
    ) -> UserTokenPage:
        """One page of users with their token figures.

        ``plan`` matches plan display names case-insensitively as a substring;
        users without an entitled subscription carry the ``Free`` label.
        ``page`` and ``limit`` are clamped and the clamped values are returned.
        """

        page = max(page, 1)
        limit = max(min(limit, 100), 1)
        conditions = []
        if search:
            pattern = f"%{search.lower()}%"
            conditions.append(
                or_(func.lower(User.name).like(pattern), func.lower(User.email).like(pattern))
            )
        if plan:
            conditions.append(self._plan_condition(plan))

        stmt = select(User.id)
        count_stmt = select(func.count(User.id))
        if conditions:
            stmt = stmt.where(*conditions)
            count_stmt = count_stmt.where(*conditions)

        column = {"email": User.email, "created": User.created_at}.get(sort_by, User.name)
        stmt = stmt.order_by(column.desc() if descending else column.asc(), User.id)
        stmt = stmt.offset((page - 1) * limit).limit(limit)

        ids = list((await self.session.execute(stmt)).scalars())
        total = int((await self.session.execute(count_stmt)).scalar_one())
        rows = await self._user_rows(ids)

        if sort_by == "tokens":
            rows.sort(key=lambda row: row.current_tokens, reverse=descending)
        elif sort_by == "usage":
            rows.sort(key=lambda row: row.tokens_used, reverse=descending)
        return UserTokenPage(users=rows, page=page, limit=limit, total_count=total)

    def _plan_condition(self, plan: str):
        needle = plan.lower()
        entitled = (
            select(Subscription.id)
            .join(SubscriptionPlan, Subscription.plan_id == SubscriptionPlan.id)
            .where(
                Subscription.user_id == User.id,
                Subscription.status.in_(self.settings.ledger.entitled_statuses),
            )
        )
        matching = entitled.where(func.lower(SubscriptionPlan.display_name).like(f"%{needle}%"))
        if needle in DEFAULT_PLAN_LABEL.lower():
            return or_(matching.exists(), ~entitled.exists())
        return matching.exists()

    async def _user_rows(
        self, user_ids: Iterable[int], *, used_override: dict[int, int] | None = None
    ) -> list[UserTokenRow]:
        ids = list(user_ids)
        if not ids:
            return []
        now = utc_now()

        users_stmt = select(User).where(User.id.in_(ids))
        users = {user.id: user for user in (await self.session.execute(users_stmt)).scalars()}

        allocated_stmt = (
            select(TokenAllocation.user_id, func.sum(TokenAllocation.token_amount))
            .where(
                TokenAllocation.user_id.in_(ids),
                TokenAllocation.is_active.is_(True),
                or_(TokenAllocation.expires_at.is_(None), TokenAllocation.expires_at > now),
            )
            .group_by(TokenAllocation.user_id)
        )
        allocated_result = await self.session.execute(allocated_stmt)
        allocated = {uid: int(total or 0) for uid, total in allocated_result.all()}

        used_stmt = (
            select(TokenUsageLog.user_id, func.sum(TokenUsageLog.tokens_used))
            .where(TokenUsageLog.user_id.in_(ids))
            .group_by(TokenUsageLog.user_id)
        )
        used_result = await self.session.execute(used_stmt)
        used = {uid: int(total or 0) for uid, total in used_result.all()}

        plans = await self._plan_labels(ids)
        rows = []
        for uid in ids:
            user = users.get(uid)
            if user is None:
                continue
            user_allocated = allocated.get(uid, 0)
            user_used = used.get(uid, 0)
            rows.append(
                UserTokenRow(
                    user_id=uid,
                    user_name=user.name or "Unknown User",
                    email=user.email or "",
                    current_tokens=max(0, user_allocated - user_used),
                    allocated=user_allocated,
                    tokens_used=used_override.get(uid, user_used) if used_override else user_used,
                    subscription_plan=plans.get(uid, DEFAULT_PLAN_LABEL),
                )
            )
        return rows

    async def _plan_labels(self, user_ids: list[int]) -> dict[int, str]:
        stmt = (
            select(Subscription.user_id, SubscriptionPlan.display_name)
            .join(SubscriptionPlan, Subscription.plan_id == SubscriptionPlan.id)
            .where(
                Subscription.user_id.in_(user_ids),
                Subscription.status.in_(self.settings.ledger.entitled_statuses),
            )
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        )
        labels: dict[int, str] = {}
        for user_id, label in (await self.session.execute(stmt)).all():
            labels.setdefault(user_id, label)
        return labels


__all__ = ["TokenAnalyticsService"]
