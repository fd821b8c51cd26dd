"""Free-tier reconciliation of token allocations."""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from tokenledger.config import LedgerRules
from tokenledger.db.models.core import TokenAllocation, TokenUsageLog
from tokenledger.services.balance import BalanceCalculator
from tokenledger.services.exceptions import LedgerPersistenceError
from tokenledger.services.reconciler import PlanChangeReconciler


async def _allocation_state(session):
    stmt = select(
        TokenAllocation.id, TokenAllocation.is_active, TokenAllocation.reason
    ).order_by(TokenAllocation.id)
    result = await session.execute(stmt)
    return [tuple(row) for row in result.all()]


@pytest.mark.asyncio
async def test_free_user_allocations_are_deactivated(session, factory, settings):
    user = await factory.user(name="Free Rider")
    allocation = await factory.allocation(user, 50)

    report = await PlanChangeReconciler(session, settings=settings).reconcile()

    assert report.deactivated == 1
    assert report.affected_users[0].user_id == user.id
    assert report.affected_users[0].name == "Free Rider"
    assert report.affected_users[0].tokens_removed == 50
    state = await _allocation_state(session)
    assert state == [(allocation.id, False, "Deactivated - Free plan user")]
    balance = await BalanceCalculator(session, settings=settings).get_balance(user.id)
    assert balance.remaining == 0


@pytest.mark.asyncio
async def test_users_on_free_plan_and_without_plan_are_both_reconciled(session, factory, settings):
    on_free = await factory.user()
    no_plan = await factory.user()
    paying = await factory.user()
    await factory.subscribe(on_free, "free")
    await factory.subscribe(paying, "pro")
    await factory.allocation(on_free, 10)
    await factory.allocation(no_plan, 20)
    paid_allocation = await factory.allocation(paying, 30)

    report = await PlanChangeReconciler(session, settings=settings).reconcile()

    assert report.free_user_count == 2
    assert report.deactivated == 2
    assert sorted(user.user_id for user in report.affected_users) == [on_free.id, no_plan.id]
    state = dict((row[0], row[1]) for row in await _allocation_state(session))
    assert state[paid_allocation.id] is True


@pytest.mark.asyncio
async def test_cancelled_subscription_counts_as_free(session, factory, settings):
    user = await factory.user()
    await factory.subscribe(user, "pro", status="canceled")
    await factory.allocation(user, 99)

    report = await PlanChangeReconciler(session, settings=settings).reconcile()

    assert report.deactivated == 1


@pytest.mark.asyncio
async def test_reconcile_is_idempotent(session, factory, settings):
    user = await factory.user()
    await factory.allocation(user, 50)
    await factory.allocation(user, 75, reason="extra_credits_purchase")
    reconciler = PlanChangeReconciler(session, settings=settings)

    first = await reconciler.reconcile()
    after_first = await _allocation_state(session)
    second = await reconciler.reconcile()
    after_second = await _allocation_state(session)

    assert first.deactivated == 2
    assert second.deactivated == 0
    assert second.message == "No active token allocations found for free users"
    assert after_first == after_second


@pytest.mark.asyncio
async def test_reconcile_keeps_rows_and_usage_log(session, factory, settings):
    user = await factory.user()
    await factory.allocation(user, 50)
    await factory.usage(user, 20)

    await PlanChangeReconciler(session, settings=settings).reconcile()

    allocations = (await session.execute(select(func.count(TokenAllocation.id)))).scalar_one()
    usage = (await session.execute(select(func.count(TokenUsageLog.id)))).scalar_one()
    assert allocations == 1
    assert usage == 1


@pytest.mark.asyncio
async def test_no_free_users_is_success(session, factory, settings):
    user = await factory.user()
    await factory.subscribe(user, "premium")
    await factory.allocation(user, 1000)

    report = await PlanChangeReconciler(session, settings=settings).reconcile()

    assert report.deactivated == 0
    assert report.free_user_count == 0
    assert report.message == "No free users found with token allocations to clean up"


@pytest.mark.asyncio
async def test_explicit_user_ids_limit_the_run(session, factory, settings):
    first = await factory.user()
    second = await factory.user()
    await factory.allocation(first, 5)
    kept = await factory.allocation(second, 7)

    report = await PlanChangeReconciler(session, settings=settings).reconcile([first.id])

    assert report.deactivated == 1
    state = dict((row[0], row[1]) for row in await _allocation_state(session))
    assert state[kept.id] is True


@pytest.mark.asyncio
async def test_small_batches_cover_every_user(session, factory):
    stub = SimpleNamespace(
        ledger=LedgerRules(reconcile_batch_size=1, deactivation_reason="Downgraded")
    )
    users = [await factory.user() for _ in range(3)]
    for user in users:
        await factory.allocation(user, 10)

    report = await PlanChangeReconciler(session, settings=stub).reconcile()

    assert report.deactivated == 3
    assert {row[2] for row in await _allocation_state(session)} == {"Downgraded"}


@pytest.mark.asyncio
async def test_explicit_user_ids_skip_paying_users(session, factory, settings):
    paying = await factory.user()
    free = await factory.user()
    await factory.subscribe(paying, "pro")
    paid_allocation = await factory.allocation(paying, 1000)
    await factory.allocation(free, 20)

    report = await PlanChangeReconciler(session, settings=settings).reconcile(
        [paying.id, free.id]
    )

    assert report.free_user_count == 1
    assert report.deactivated == 1
    assert [user.user_id for user in report.affected_users] == [free.id]
    state = dict((row[0], row[1]) for row in await _allocation_state(session))
    assert state[paid_allocation.id] is True


@pytest.mark.asyncio
async def test_explicit_paying_user_only_is_a_noop(session, factory, settings):
    paying = await factory.user()
    await factory.subscribe(paying, "premium")
    await factory.allocation(paying, 1000)

    report = await PlanChangeReconciler(session, settings=settings).reconcile([paying.id])

    assert report.deactivated == 0
    assert report.message == "No free users found with token allocations to clean up"


@pytest.mark.asyncio
async def test_failed_batch_keeps_earlier_batches_and_rerun_finishes(session, factory):
    stub = SimpleNamespace(ledger=LedgerRules(reconcile_batch_size=1))
    users = [await factory.user() for _ in range(3)]
    allocation_ids = [(await factory.allocation(user, 10)).id for user in users]

    reconciler = PlanChangeReconciler(session, settings=stub)
    real_deactivate = reconciler.allocations.deactivate_active
    calls = []

    async def flaky_deactivate(user_ids, *, reason=None):
        calls.append(list(user_ids))
        if len(calls) == 2:
            raise OperationalError("UPDATE token_allocations", {}, Exception("connection lost"))
        return await real_deactivate(user_ids, reason=reason)

    reconciler.allocations.deactivate_active = flaky_deactivate

    with pytest.raises(LedgerPersistenceError) as excinfo:
        await reconciler.reconcile()

    assert isinstance(excinfo.value.__cause__, OperationalError)
    state = dict((row[0], row[1]) for row in await _allocation_state(session))
    assert [state[allocation_id] for allocation_id in allocation_ids] == [False, True, True]

    report = await PlanChangeReconciler(session, settings=stub).reconcile()

    assert report.deactivated == 2
    state = dict((row[0], row[1]) for row in await _allocation_state(session))
    assert set(state.values()) == {False}
