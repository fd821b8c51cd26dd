from __future__ import annotations

import pytest

from tokenledger.services.analytics import TokenAnalyticsService
from tokenledger.services.exceptions import UserNotFound


@pytest.mark.asyncio
async def test_overview_totals_and_rates(session, factory, settings):
    heavy = await factory.user(name="Heavy")
    light = await factory.user(name="Light")
    await factory.subscribe(heavy, "pro")
    await factory.allocation(heavy, 600)
    await factory.allocation(light, 400)
    await factory.allocation(light, 999, is_active=False)
    await factory.usage(heavy, 150, model_id="gpt-4o", cost=1.5)
    await factory.usage(light, 50, model_id="claude", cost=0.5)

    metrics = await TokenAnalyticsService(session, settings=settings).overview()

    assert metrics.total_tokens_allocated == 1000
    assert metrics.total_tokens_used == 200
    assert metrics.total_cost == pytest.approx(2.0)
    assert metrics.utilization_rate == pytest.approx(20.0)
    assert metrics.cost_per_token == pytest.approx(0.01)
    assert metrics.users_with_tokens == 2
    assert [row.user_name for row in metrics.top_users] == ["Heavy", "Light"]
    assert metrics.top_users[0].subscription_plan == "Pro"
    assert metrics.top_users[1].subscription_plan == "Free"
    assert metrics.usage_by_model == {"gpt-4o": 150, "claude": 50}
    assert sum(day.tokens for day in metrics.usage_by_day) == 200


@pytest.mark.asyncio
async def test_overview_on_empty_ledger(session, settings):
    metrics = await TokenAnalyticsService(session, settings=settings).overview()

    assert metrics.total_tokens_allocated == 0
    assert metrics.utilization_rate == 0.0
    assert metrics.cost_per_token == 0.0
    assert metrics.top_users == []


@pytest.mark.asyncio
async def test_user_detail(session, factory, settings):
    user = await factory.user(name="Dana", email="dana@example.com")
    await factory.subscribe(user, "premium")
    await factory.allocation(user, 300)
    await factory.usage(user, 40, request_type="chat", model_id="m1", cost=0.4)
    await factory.usage(user, 10, request_type="analysis", model_id="m1", cost=0.1)

    detail = await TokenAnalyticsService(session, settings=settings).user_detail(user.id)

    assert detail.user_name == "Dana"
    assert detail.subscription_plan == "Premium"
    assert detail.balance.remaining == 250
    assert detail.total_cost == pytest.approx(0.5)
    assert len(detail.allocations) == 1
    assert len(detail.recent_usage) == 2
    assert detail.usage_by_type == {"chat": 40, "analysis": 10}
    assert detail.usage_by_model == {"m1": 50}
    assert detail.last_activity.tzinfo is not None


@pytest.mark.asyncio
async def test_user_detail_unknown_user(session, settings):
    with pytest.raises(UserNotFound):
        await TokenAnalyticsService(session, settings=settings).user_detail(123)


@pytest.mark.asyncio
async def test_list_users_search_sort_and_paging(session, factory, settings):
    alice = await factory.user(name="Alice", email="alice@example.com")
    bob = await factory.user(name="Bob", email="bob@example.com")
    await factory.user(name="Carol", email="carol@corp.test")
    await factory.allocation(alice, 100)
    await factory.allocation(bob, 500)
    await factory.usage(bob, 120)
    service = TokenAnalyticsService(session, settings=settings)

    result = await service.list_users(search="example")
    assert result.total_count == 2
    assert [row.user_name for row in result.users] == ["Alice", "Bob"]
    assert result.users[1].current_tokens == 380

    result = await service.list_users(search="example", sort_by="tokens", descending=True)
    assert [row.user_name for row in result.users] == ["Bob", "Alice"]

    result = await service.list_users(page=2, limit=2)
    assert result.total_count == 3
    assert [row.user_name for row in result.users] == ["Carol"]


@pytest.mark.asyncio
async def test_list_users_clamps_paging(session, factory, settings):
    await factory.user(name="Only")

    result = await TokenAnalyticsService(session, settings=settings).list_users(
        page=0, limit=500
    )

    assert (result.page, result.limit) == (1, 100)


@pytest.mark.asyncio
async def test_list_users_filters_by_plan_label(session, factory, settings):
    pro = await factory.user(name="Pro User")
    premium = await factory.user(name="Premium User")
    on_free = await factory.user(name="Free Plan User")
    await factory.user(name="No Plan User")
    lapsed = await factory.user(name="Lapsed User")
    await factory.subscribe(pro, "pro")
    await factory.subscribe(premium, "premium")
    await factory.subscribe(on_free, "free")
    await factory.subscribe(lapsed, "premium", status="canceled")
    service = TokenAnalyticsService(session, settings=settings)

    premium_page = await service.list_users(plan="PREM")
    free_page = await service.list_users(plan="free")

    assert [row.user_name for row in premium_page.users] == ["Premium User"]
    assert premium_page.total_count == 1
    assert [row.user_name for row in free_page.users] == [
        "Free Plan User",
        "Lapsed User",
        "No Plan User",
    ]
    assert {row.subscription_plan for row in free_page.users} == {"Free"}
