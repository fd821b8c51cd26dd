"""Subscription plan seed data."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.db.models.core import SubscriptionPlan
from tokenledger.logging import logger
from tokenledger.utils.datetime import utc_now

DEFAULT_PLANS = (
    {
        "name": "free",
        "display_name": "Free",
        "description": "Perfect for getting started with Pine Script",
        "monthly_price": 0.0,
        "annual_price": 0.0,
        "currency": "INR",
        "monthly_token_limit": 0,
    },
    {
        "name": "pro",
        "display_name": "Pro",
        "description": "For serious traders who need advanced features",
        "monthly_price": 2499.0,
        "annual_price": 24999.0,
        "currency": "INR",
        "monthly_token_limit": None,
    },
    {
        "name": "premium",
        "display_name": "Premium",
        "description": "For teams and organizations with advanced needs",
        "monthly_price": 2998.0,
        "annual_price": 29980.0,
        "currency": "INR",
        "monthly_token_limit": 1000,
    },
)


async def ensure_subscription_plans(session: AsyncSession) -> list[SubscriptionPlan]:
    """Insert or refresh the free/pro/premium plans, keyed by plan name."""

    plans: list[SubscriptionPlan] = []
    for payload in DEFAULT_PLANS:
        stmt = select(SubscriptionPlan).where(SubscriptionPlan.name == payload["name"])
        result = await session.execute(stmt)
        plan = result.scalar_one_or_none()
        if plan is None:
            plan = SubscriptionPlan(**payload, is_active=True)
            session.add(plan)
            logger.info("plan_seeded", plan=payload["name"])
        else:
            for field, value in payload.items():
                setattr(plan, field, value)
            plan.is_active = True
            plan.updated_at = utc_now()
        plans.append(plan)

    await session.commit()
    return plans


__all__ = ["DEFAULT_PLANS", "ensure_subscription_plans"]
