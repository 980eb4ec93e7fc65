"""
Fire-and-forget audit trail.

Rows join the caller's unit of work without flushing; a failure to build
one is logged and never surfaces to the caller.
"""
import uuid
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from giftledger.core.identity import Scope
from giftledger.core.pagination import Page, paginate
from giftledger.database.models import AuditLog

logger = structlog.get_logger(__name__)


class AuditLogger:
    """Writes audit rows for privileged actions."""

    @staticmethod
    def log(
        db: AsyncSession,
        scope: Scope,
        action: str,
        resource_type: str,
        resource_id: Any,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            db.add(
                AuditLog(
                    merchant_id=scope.merchant_id,
                    partner_id=scope.partner_id,
                    actor_id=scope.actor_id,
                    actor_type=scope.actor_type,
                    action=action,
                    resource_type=resource_type,
                    resource_id=str(resource_id) if resource_id is not None else None,
                    details=details,
                )
            )
        except Exception as e:
            logger.error("audit_log_failed", action=action, error=str(e))

    @staticmethod
    async def list_for_merchant(
        db: AsyncSession,
        merchant_id: uuid.UUID,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Page:
        stmt = select(AuditLog).where(AuditLog.merchant_id == merchant_id)
        return await paginate(db, stmt, AuditLog, limit, cursor)


audit = AuditLogger()
