"""Shared pytest fixtures for database-backed service tests."""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tokenledger.config import LedgerSettings
from tokenledger.db.base import Base
from tokenledger.db.models.core import (
    Subscription,
    SubscriptionPlan,
    TokenAllocation,
    TokenUsageLog,
    User,
)


class _AsyncSessionWrapper:
    def __init__(self, sync_session) -> None:
        self._sync = sync_session

    async def execute(self, *args, **kwargs):
        return self._sync.execute(*args, **kwargs)

    async def get(self, *args, **kwargs):
        return self._sync.get(*args, **kwargs)

    def add(self, obj) -> None:
        self._sync.add(obj)

    def add_all(self, objs) -> None:
        self._sync.add_all(objs)

    async def flush(self) -> None:
        self._sync.flush()

    async def commit(self) -> None:
        self._sync.commit()

    async def rollback(self) -> None:
        self._sync.rollback()

    async def refresh(self, obj) -> None:
        self._sync.refresh(obj)

    async def close(self) -> None:
        self._sync.close()


@pytest_asyncio.fixture
async def session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    sync_session = SessionLocal()
    try:
        yield _AsyncSessionWrapper(sync_session)
    finally:
        sync_session.close()
        engine.dispose()


@pytest.fixture
def settings() -> LedgerSettings:
    return LedgerSettings(_env_file=None)


class LedgerFactory:
    """Row builders for users, plans, subscriptions and ledger entries."""

    def __init__(self, session) -> None:
        self.session = session
        self._plans: dict[str, SubscriptionPlan] = {}
        self._seq = 0

    async def user(self, name: str | None = None, email: str | None = None) -> User:
        self._seq += 1
        user = User(name=name, email=email or f"user{self._seq}@example.com")
        self.session.add(user)
        await self.session.flush()
        return user

    async def plan(self, name: str) -> SubscriptionPlan:
        if name not in self._plans:
            plan = SubscriptionPlan(name=name, display_name=name.title())
            self.session.add(plan)
            await self.session.flush()
            self._plans[name] = plan
        return self._plans[name]

    async def subscribe(self, user: User, plan_name: str, status: str = "active") -> Subscription:
        plan = await self.plan(plan_name)
        subscription = Subscription(user_id=user.id, plan_id=plan.id, status=status)
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def allocation(
        self,
        user: User,
        amount: int,
        *,
        reason: str | None = None,
        is_active: bool = True,
        expires_at=None,
    ) -> TokenAllocation:
        allocation = TokenAllocation(
            user_id=user.id,
            token_amount=amount,
            allocated_by="test",
            reason=reason,
            is_active=is_active,
            expires_at=expires_at,
        )
        self.session.add(allocation)
        await self.session.flush()
        return allocation

    async def usage(
        self,
        user: User,
        tokens: int,
        *,
        request_type: str = "chat",
        model_id: str | None = None,
        cost: float = 0.0,
        timestamp=None,
    ) -> TokenUsageLog:
        entry = TokenUsageLog(
            user_id=user.id,
            tokens_used=tokens,
            request_type=request_type,
            model_id=model_id,
            cost=cost,
        )
        if timestamp is not None:
            entry.timestamp = timestamp
        self.session.add(entry)
        await self.session.flush()
        return entry


@pytest.fixture
def factory(session) -> LedgerFactory:
    return LedgerFactory(session)
