"""Token allocation store and the admin grant workflow."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.config import LedgerSettings, get_settings
from tokenledger.db.models.core import TokenAllocation, User
from tokenledger.domain.models import AllocationModel, AllocationRequest, AllocationResult
from tokenledger.logging import logger
from tokenledger.services.audit import AuditLogService
from tokenledger.services.balance import BalanceCalculator
from tokenledger.services.exceptions import InsufficientTokens, InvalidAmount, UserNotFound
from tokenledger.utils.datetime import utc_now

_RESULT_VERBS = {"add": "added", "subtract": "removed", "set": "set"}


class AllocationService:
    def __init__(self, session: AsyncSession, settings: LedgerSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    async def create_allocation(
        self,
        user_id: int,
        token_amount: int,
        *,
        reason: str | None = None,
        allocated_by: str = "system",
        expires_at: datetime | None = None,
    ) -> TokenAllocation:
        if token_amount == 0:
            raise InvalidAmount("Allocation amount must be non-zero.")
        allocation = TokenAllocation(
            user_id=user_id,
            token_amount=token_amount,
            allocated_by=allocated_by,
            reason=reason,
            expires_at=expires_at,
            is_active=True,
        )
        self.session.add(allocation)
        await self.session.flush()
        logger.info(
            "allocation_created",
            user_id=user_id,
            allocation_id=allocation.id,
            token_amount=token_amount,
            reason=reason,
        )
        return allocation

    async def list_active(
        self, user_id: int, *, include_expired: bool = False
    ) -> list[TokenAllocation]:
        stmt = select(TokenAllocation).where(
            TokenAllocation.user_id == user_id,
            TokenAllocation.is_active.is_(True),
        )
        if not include_expired:
            stmt = stmt.where(
                or_(TokenAllocation.expires_at.is_(None), TokenAllocation.expires_at > utc_now())
            )
        stmt = stmt.order_by(TokenAllocation.created_at.desc(), TokenAllocation.id.desc())
        result = await self.session.execute(stmt)
        return list(result.scalars())

    async def active_totals_by_user(self, user_ids: Iterable[int]) -> dict[int, int]:
        """Sum of active allocation amounts per user, expired rows included."""

        ids = list(user_ids)
        if not ids:
            return {}
        stmt = (
            select(TokenAllocation.user_id, func.sum(TokenAllocation.token_amount))
            .where(
                TokenAllocation.user_id.in_(ids),
                TokenAllocation.is_active.is_(True),
            )
            .group_by(TokenAllocation.user_id)
        )
        result = await self.session.execute(stmt)
        return {user_id: int(total or 0) for user_id, total in result.all()}

    async def deactivate_active(self, user_ids: Iterable[int], *, reason: str | None = None) -> int:
        """Soft-delete every active allocation of ``user_ids``.

        Only rows that are still active match, so a second call is a no-op.
        """

        ids = list(user_ids)
        if not ids:
            return 0
        values: dict = {"is_active": False}
        if reason is not None:
            values["reason"] = reason
        stmt = (
            update(TokenAllocation)
            .where(
                TokenAllocation.user_id.in_(ids),
                TokenAllocation.is_active.is_(True),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def apply_admin_allocation(
        self, request: AllocationRequest, *, admin_id: str
    ) -> AllocationResult:
        user = await self.session.get(User, request.user_id)
        if user is None:
            raise UserNotFound("User not found")

        calculator = BalanceCalculator(self.session, settings=self.settings)
        previous = (await calculator.get_balance(user.id)).remaining
        amount = request.token_amount

        if request.allocation_type == "add":
            final_amount = amount
            reason = f"Added {amount} tokens: {request.reason}"
        elif request.allocation_type == "subtract":
            if previous < amount:
                raise InsufficientTokens(
                    f"Cannot subtract {amount} tokens. User only has {previous} available tokens.",
                    available=previous,
                    requested=amount,
                )
            final_amount = -amount
            reason = f"Removed {amount} tokens: {request.reason}"
        else:
            await self.deactivate_active([user.id])
            final_amount = amount
            reason = f"Set tokens to {amount}: {request.reason}"

        allocation = await self.create_allocation(
            user.id,
            final_amount,
            reason=reason,
            allocated_by=admin_id,
            expires_at=request.expires_at,
        )
        current = (await calculator.get_balance(user.id)).remaining

        if request.notify_user:
            # TODO: send the allocation notice email once a mail transport is configured.
            logger.info("allocation_notification_pending", user_id=user.id, email=user.email)

        await AuditLogService(self.session).log_admin_action(
            admin_id,
            "ALLOCATE_TOKENS",
            target_user_id=user.id,
            details={
                "allocation_type": request.allocation_type,
                "token_amount": amount,
                "final_token_amount": final_amount,
                "previous_tokens": previous,
                "current_tokens": current,
                "reason": reason,
                "expires_at": request.expires_at.isoformat() if request.expires_at else None,
                "notify_user": request.notify_user,
            },
        )
        return AllocationResult(
            allocation=AllocationModel.model_validate(allocation),
            previous_tokens=previous,
            current_tokens=current,
            message=f"Tokens {_RESULT_VERBS[request.allocation_type]} successfully",
        )


__all__ = ["AllocationService"]
