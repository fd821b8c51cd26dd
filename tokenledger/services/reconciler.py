"""Deactivate token allocations of users who dropped to the free tier."""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.config import LedgerSettings, get_settings
from tokenledger.db.models.core import User
from tokenledger.domain.models import AffectedUser, ReconciliationReport
from tokenledger.logging import logger
from tokenledger.services.allocations import AllocationService
from tokenledger.services.exceptions import LedgerPersistenceError
from tokenledger.services.subscriptions import SubscriptionService


class PlanChangeReconciler:
    """Soft-delete allocations a user's plan no longer entitles them to.

    Rows are flipped to ``is_active = false`` and restamped with the
    configured reason; nothing is deleted and the usage log is never
    touched. Work is committed per batch of users, so an interrupted run
    leaves earlier batches reconciled. Re-running re-evaluates the free-tier
    predicate and only matches allocations that are still active. Explicit
    user ids narrow the run; users who hold a paid plan are skipped.
    """

    def __init__(self, session: AsyncSession, settings: LedgerSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.allocations = AllocationService(session, settings=self.settings)
        self.subscriptions = SubscriptionService(session, settings=self.settings)

    async def reconcile(self, user_ids: Sequence[int] | None = None) -> ReconciliationReport:
        rules = self.settings.ledger
        logger.info("reconcile_started", explicit_users=user_ids is not None)
        try:
            if user_ids is None:
                free_ids = await self.subscriptions.find_free_user_ids()
            else:
                requested = set(user_ids)
                free_ids = [
                    user_id
                    for user_id in await self.subscriptions.find_free_user_ids()
                    if user_id in requested
                ]
                if len(free_ids) < len(requested):
                    logger.info(
                        "reconcile_skipped_entitled_users",
                        skipped=sorted(requested.difference(free_ids)),
                    )
            logger.info("reconcile_free_users_found", count=len(free_ids))

            if not free_ids:
                return ReconciliationReport(
                    message="No free users found with token allocations to clean up",
                )

            deactivated = 0
            removed: dict[int, int] = {}
            batch_size = rules.reconcile_batch_size
            for start in range(0, len(free_ids), batch_size):
                batch = free_ids[start : start + batch_size]
                totals = await self.allocations.active_totals_by_user(batch)
                if not totals:
                    continue
                count = await self.allocations.deactivate_active(
                    totals.keys(), reason=rules.deactivation_reason
                )
                await self.session.commit()
                deactivated += count
                removed.update(totals)
                logger.info("reconcile_batch_committed", users=len(totals), deactivated=count)

            if deactivated == 0:
                return ReconciliationReport(
                    free_user_count=len(free_ids),
                    message="No active token allocations found for free users",
                )

            affected = await self._describe_users(removed)
        except SQLAlchemyError as exc:
            logger.error("reconcile_failed", error=str(exc))
            await self.session.rollback()
            raise LedgerPersistenceError("Failed to cleanup free user tokens") from exc

        logger.info(
            "reconcile_completed",
            deactivated=deactivated,
            affected_users=len(affected),
        )
        return ReconciliationReport(
            free_user_count=len(free_ids),
            deactivated=deactivated,
            affected_users=affected,
            message=(
                f"Successfully deactivated {deactivated} token allocations "
                f"for {len(affected)} free users"
            ),
        )

    async def _describe_users(self, removed: dict[int, int]) -> list[AffectedUser]:
        stmt = select(User).where(User.id.in_(list(removed))).order_by(User.id)
        result = await self.session.execute(stmt)
        return [
            AffectedUser(
                user_id=user.id,
                name=user.display_name,
                email=user.email,
                tokens_removed=removed[user.id],
            )
            for user in result.scalars()
            if removed[user.id] > 0
        ]


__all__ = ["PlanChangeReconciler"]
