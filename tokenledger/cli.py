"""Admin command line for ledger maintenance."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from tokenledger.config import LedgerSettings, get_settings
from tokenledger.db.session import Database, get_database
from tokenledger.domain.models import AllocationRequest
from tokenledger.logging import configure_logging, logger
from tokenledger.services.allocations import AllocationService
from tokenledger.services.analytics import TokenAnalyticsService
from tokenledger.services.balance import BalanceCalculator
from tokenledger.services.exceptions import ServiceError
from tokenledger.services.reconciler import PlanChangeReconciler
from tokenledger.services.seeds import ensure_subscription_plans
from tokenledger.services.subscriptions import SubscriptionService
from tokenledger.services.usage import UsageLogService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tokenledger", description=__doc__)
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="create missing ledger tables")
    commands.add_parser("seed-plans", help="insert or refresh the default plans")

    cleanup = commands.add_parser(
        "cleanup-free-tokens", help="deactivate allocations held by free-tier users"
    )
    cleanup.add_argument("--user", dest="user_ids", type=int, action="append")

    balance = commands.add_parser("balance", help="show a user's token balance")
    balance.add_argument("user_id", type=int)
    group = balance.add_mutually_exclusive_group()
    group.add_argument("--scope")
    group.add_argument("--extra-credits", action="store_true")

    allocate = commands.add_parser("allocate", help="grant, remove or set a user's tokens")
    allocate.add_argument("user_id", type=int)
    allocate.add_argument("amount", type=int)
    allocate.add_argument(
        "--type", dest="allocation_type", choices=("add", "subtract", "set"), default="add"
    )
    allocate.add_argument("--reason", required=True)
    allocate.add_argument("--admin", dest="admin_id", default="cli")
    allocate.add_argument("--expires", type=datetime.fromisoformat)
    allocate.add_argument("--no-notify", dest="notify_user", action="store_false")

    consume = commands.add_parser("consume", help="log usage if the balance covers it")
    consume.add_argument("user_id", type=int)
    consume.add_argument("tokens", type=int)
    consume.add_argument("--request-type", default="chat")
    consume.add_argument("--scope")
    consume.add_argument("--model", dest="model_id")

    commands.add_parser(
        "audit-subscriptions", help="list users with more than one concurrent subscription"
    )

    overview = commands.add_parser("overview", help="platform token analytics")
    overview.add_argument("--days", type=int, default=30)
    overview.add_argument("--top", type=int, default=10)

    user = commands.add_parser("user", help="token details for one user")
    user.add_argument("user_id", type=int)

    users = commands.add_parser("users", help="paginated user token table")
    users.add_argument("--page", type=int, default=1)
    users.add_argument("--limit", type=int, default=20)
    users.add_argument("--search")
    users.add_argument("--plan", help="plan display name, matched as a substring")
    users.add_argument(
        "--sort", choices=("name", "email", "created", "tokens", "usage"), default="name"
    )
    users.add_argument("--desc", action="store_true")
    return parser


async def _dispatch(args: argparse.Namespace, session, settings: LedgerSettings) -> Any:
    command = args.command
    if command == "seed-plans":
        plans = await ensure_subscription_plans(session)
        return {"plans": [plan.name for plan in plans]}
    if command == "cleanup-free-tokens":
        return await PlanChangeReconciler(session, settings=settings).reconcile(args.user_ids)
    if command == "balance":
        calculator = BalanceCalculator(session, settings=settings)
        if args.extra_credits:
            return await calculator.get_extra_credits(args.user_id)
        return await calculator.get_balance(args.user_id, args.scope)
    if command == "allocate":
        request = AllocationRequest(
            user_id=args.user_id,
            token_amount=args.amount,
            allocation_type=args.allocation_type,
            reason=args.reason,
            expires_at=args.expires,
            notify_user=args.notify_user,
        )
        return await AllocationService(session, settings=settings).apply_admin_allocation(
            request, admin_id=args.admin_id
        )
    if command == "consume":
        entry = await UsageLogService(session, settings=settings).consume(
            args.user_id,
            args.tokens,
            request_type=args.request_type,
            scope=args.scope,
            model_id=args.model_id,
        )
        return {
            "usage_id": entry.id,
            "request_type": entry.request_type,
            "tokens_used": entry.tokens_used,
        }
    if command == "audit-subscriptions":
        subscriptions = SubscriptionService(session, settings=settings)
        duplicates = await subscriptions.find_users_with_multiple_active()
        return {"count": len(duplicates), "users": duplicates}
    if command == "overview":
        analytics = TokenAnalyticsService(session, settings=settings)
        return await analytics.overview(days=args.days, top=args.top)
    if command == "user":
        return await TokenAnalyticsService(session, settings=settings).user_detail(args.user_id)
    if command == "users":
        return await TokenAnalyticsService(session, settings=settings).list_users(
            page=args.page,
            limit=args.limit,
            search=args.search,
            plan=args.plan,
            sort_by=args.sort,
            descending=args.desc,
        )
    raise ValueError(f"Unknown command: {command}")


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


async def run_command(
    args: argparse.Namespace, database: Database, settings: LedgerSettings
) -> dict[str, Any]:
    """Execute one command and wrap the outcome in a success/error envelope."""

    try:
        if args.command == "init-db":
            await database.create_schema()
            data = {"schema": "ready"}
        else:
            async with database.session() as session:
                data = await _dispatch(args, session, settings)
                await session.commit()
    except ServiceError as exc:
        logger.warning("command_rejected", command=args.command, error=str(exc))
        return {"success": False, "error": str(exc)}
    except ValidationError as exc:
        return {
            "success": False,
            "error": "Validation error",
            "errors": exc.errors(include_url=False, include_context=False),
        }
    except SQLAlchemyError as exc:
        logger.error("command_failed", command=args.command, error=str(exc))
        return {"success": False, "error": f"Failed to run {args.command}"}
    return {"success": True, "data": _jsonable(data)}


async def _main_async(args: argparse.Namespace, settings: LedgerSettings) -> dict[str, Any]:
    database = get_database(settings)
    try:
        return await run_command(args, database, settings)
    finally:
        await database.dispose()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    envelope = asyncio.run(_main_async(args, settings))
    json.dump(envelope, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 0 if envelope.get("success") else 1


if __name__ == "__main__":
    sys.exit(main())
