"""Subscription lookups used by the token ledger."""

from __future__ import annotations

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from tokenledger.config import LedgerSettings, get_settings
from tokenledger.db.models.core import Subscription, SubscriptionPlan, User
from tokenledger.domain.models import DuplicateSubscriptions


class SubscriptionService:
    def __init__(self, session: AsyncSession, settings: LedgerSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    @property
    def _rules(self):
        return self.settings.ledger

    async def get_active_subscription(self, user_id: int) -> Subscription | None:
        stmt = (
            select(Subscription)
            .options(selectinload(Subscription.plan))
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(self._rules.entitled_statuses),
            )
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def active_plan_names(self, user_id: int) -> list[str]:
        stmt = (
            select(SubscriptionPlan.name)
            .join(Subscription, Subscription.plan_id == SubscriptionPlan.id)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(self._rules.entitled_statuses),
            )
        )
        result = await self.session.execute(stmt)
        return list(result.scalars())

    async def is_free_tier(self, user_id: int) -> bool:
        """No entitled subscription, or any entitled subscription on the free plan."""

        names = await self.active_plan_names(user_id)
        return not names or self._rules.free_plan_name in names

    async def find_free_user_ids(self) -> list[int]:
        entitled = (
            select(Subscription.id)
            .join(SubscriptionPlan, Subscription.plan_id == SubscriptionPlan.id)
            .where(
                Subscription.user_id == User.id,
                Subscription.status.in_(self._rules.entitled_statuses),
            )
        )
        on_free_plan = entitled.where(SubscriptionPlan.name == self._rules.free_plan_name)
        stmt = (
            select(User.id)
            .where(or_(~entitled.exists(), on_free_plan.exists()))
            .order_by(User.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars())

    async def find_users_with_multiple_active(self) -> list[DuplicateSubscriptions]:
        """Report users holding more than one concurrent subscription.

        The ledger never picks a winner here; callers get the raw ids so an
        operator can resolve them.
        """

        statuses = self._rules.concurrent_statuses
        offenders = (
            select(Subscription.user_id)
            .where(Subscription.status.in_(statuses))
            .group_by(Subscription.user_id)
            .having(func.count(Subscription.id) > 1)
        )
        stmt = (
            select(Subscription.user_id, Subscription.id, SubscriptionPlan.name)
            .join(SubscriptionPlan, Subscription.plan_id == SubscriptionPlan.id)
            .where(
                Subscription.status.in_(statuses),
                Subscription.user_id.in_(offenders),
            )
            .order_by(Subscription.user_id, Subscription.id)
        )
        result = await self.session.execute(stmt)
        grouped: dict[int, DuplicateSubscriptions] = {}
        for user_id, subscription_id, plan_name in result.all():
            entry = grouped.setdefault(
                user_id,
                DuplicateSubscriptions(user_id=user_id, subscription_ids=[], plan_names=[]),
            )
            entry.subscription_ids.append(subscription_id)
            entry.plan_names.append(plan_name)
        return list(grouped.values())


__all__ = ["SubscriptionService"]
