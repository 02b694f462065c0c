"""Invoice model."""

from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import BaseModel, BigIntPK


class InvoiceType(StrEnum):
    """Invoice type enumeration."""

    RENT = "rent"
    WATER = "water"
    COMBINED = "combined"


class InvoiceStatus(StrEnum):
    """Invoice status enumeration."""

    UNPAID = "unpaid"
    PAID = "paid"


class Invoice(BaseModel):
    """One billing period's charge against a lease."""

    __tablename__ = "invoices"
    __table_args__ = (
        # Idempotency key for the monthly generator and the prepayment allocator
        UniqueConstraint(
            "lease_id", "invoice_type", "period_start", name="uq_invoices_lease_type_period"
        ),
    )

    organization_id: Mapped[int] = mapped_column(BigIntPK, nullable=False, index=True)
    lease_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("leases.id"), nullable=False, index=True
    )

    invoice_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.UNPAID.value, index=True
    )
    # Reporting bucket set by the overdue sweep; never blocks payment
    is_overdue: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    months_covered: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Payment that settled this invoice (a prepayment can settle several)
    paid_by_payment_id: Mapped[int | None] = mapped_column(BigIntPK, nullable=True, index=True)

    lease: Mapped["Lease"] = relationship("Lease")

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID.value


from src.modules.leases.models import Lease  # noqa: E402
