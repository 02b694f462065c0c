"""Reminder records and the rent escalation stages."""

from datetime import date, datetime, timedelta
from enum import IntEnum, StrEnum

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import BaseModel, BigIntPK


class ReminderStage(IntEnum):
    """Rent escalation steps, ordered by days relative to the due date."""

    PRE_DUE = 1
    DUE = 2
    OVERDUE_5 = 3
    OVERDUE_7 = 4
    OVERDUE_30 = 5

    @property
    def offset_days(self) -> int:
        return _STAGE_OFFSETS[self]

    @property
    def template_key(self) -> str:
        return f"rent_stage_{self.value}"

    def trigger_date(self, due_date: date) -> date:
        return due_date + timedelta(days=self.offset_days)

    @classmethod
    def due_on(cls, due_date: date, run_date: date) -> "ReminderStage | None":
        """Latest stage whose trigger date has been reached by run_date."""
        reached = [s for s in cls if s.trigger_date(due_date) <= run_date]
        return max(reached) if reached else None


_STAGE_OFFSETS = {
    ReminderStage.PRE_DUE: -3,
    ReminderStage.DUE: 0,
    ReminderStage.OVERDUE_5: 5,
    ReminderStage.OVERDUE_7: 7,
    ReminderStage.OVERDUE_30: 30,
}


class ReminderType(StrEnum):
    RENT_PAYMENT = "rent_payment"


class DeliveryStatus(StrEnum):
    """Hand-off state of a reminder. SENT, FAILED and CANCELLED are final."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Records that block re-emitting the same stage
ACTIVE_DELIVERY_STATUSES = (DeliveryStatus.PENDING.value, DeliveryStatus.SENT.value)

ACTIVE_STAGE_PREDICATE = "delivery_status IN ('pending', 'sent')"


class ReminderRecord(BaseModel):
    """One escalation message for one invoice at one stage."""

    __tablename__ = "reminders"
    __table_args__ = (
        # At most one pending/sent record per (lease, period, type, stage); failed ones may be retried
        Index(
            "uq_reminders_active_stage",
            "lease_id",
            "period_start",
            "reminder_type",
            "stage",
            unique=True,
            postgresql_where=text(ACTIVE_STAGE_PREDICATE),
            sqlite_where=text(ACTIVE_STAGE_PREDICATE),
        ),
    )

    organization_id: Mapped[int] = mapped_column(BigIntPK, nullable=False, index=True)
    lease_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("leases.id"), nullable=False, index=True
    )
    invoice_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("invoices.id"), nullable=True, index=True
    )
    tenant_user_id: Mapped[int] = mapped_column(BigIntPK, nullable=False)

    reminder_type: Mapped[str] = mapped_column(String(50), nullable=False)
    stage: Mapped[int] = mapped_column(Integer, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    template_key: Mapped[str] = mapped_column(String(50), nullable=False)

    recipient: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    scheduled_for: Mapped[date] = mapped_column(Date, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivery_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeliveryStatus.PENDING.value, index=True
    )
    provider_message_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Carrier-side outcome reported after hand-off; does not change delivery_status
    delivery_report: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
