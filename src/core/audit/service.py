from enum import StrEnum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.models import AuditLog


class AuditAction(StrEnum):
    """Billing audit actions."""

    CREATE_PAYMENT = "payment.create"
    APPROVE_PAYMENT = "payment.approve"
    REJECT_PAYMENT = "payment.reject"
    FLAG_PAYMENT_REVIEW = "payment.flag_review"
    ALLOCATE_PREPAYMENT = "prepayment.allocate"
    GENERATE_INVOICES = "invoices.generate"
    UPDATE_SETTINGS = "billing_settings.update"
    TEST_CONNECTION = "billing_settings.test_connection"


class AuditService:
    """Service for creating audit logs."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        action: str | AuditAction,
        entity_type: str,
        entity_id: int,
        user_id: int | None = None,
        organization_id: int | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        comment: str | None = None,
    ) -> AuditLog:
        """Create an audit log entry."""
        audit_log = AuditLog(
            organization_id=organization_id,
            user_id=user_id,
            action=str(action),
            entity_type=entity_type,
            entity_id=entity_id,
            old_values=old_values,
            new_values=new_values,
            comment=comment,
        )

        self.db.add(audit_log)
        await self.db.flush()

        return audit_log
