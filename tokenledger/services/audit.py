"""Append-only admin audit trail."""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.db.models.core import AdminAuditLog
from tokenledger.logging import logger

TOKEN_MANAGEMENT = "TOKEN_MANAGEMENT"


class AuditLogService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def log_admin_action(
        self,
        admin_id: str,
        action: str,
        resource: str = TOKEN_MANAGEMENT,
        *,
        target_user_id: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> AdminAuditLog:
        entry = AdminAuditLog(
            admin_id=admin_id,
            action=action,
            resource=resource,
            target_user_id=target_user_id,
            details=details,
        )
        self.session.add(entry)
        await self.session.flush()
        logger.info(
            "admin_action_logged",
            admin_id=admin_id,
            action=action,
            resource=resource,
            target_user_id=target_user_id,
        )
        return entry


__all__ = ["AuditLogService", "TOKEN_MANAGEMENT"]
