"""Payment model and its status state machine."""

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
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import BaseModel, BigIntPK
from src.core.exceptions import StateConflictError


class PaymentMethod(StrEnum):
    """Payment method options."""

    MPESA = "mpesa"
    CARD = "card"
    BANK = "bank"
    CASH = "cash"
    INTERNAL = "internal"


class PaymentStatus(StrEnum):
    """Payment status options. VERIFIED and FAILED are terminal."""

    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


# Allowed status transitions; anything absent is a state conflict
PAYMENT_TRANSITIONS: dict[str, frozenset[str]] = {
    PaymentStatus.PENDING.value: frozenset(
        {PaymentStatus.VERIFIED.value, PaymentStatus.FAILED.value}
    ),
    PaymentStatus.VERIFIED.value: frozenset(),
    PaymentStatus.FAILED.value: frozenset(),
}


class Payment(BaseModel):
    """
    Payment record for rent or utility invoices.

    A payment points at one invoice, or only at a lease when it prepays
    several months (the allocator then creates and settles the invoices).
    """

    __tablename__ = "payments"

    organization_id: Mapped[int] = mapped_column(BigIntPK, nullable=False, index=True)
    invoice_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("invoices.id"), nullable=True, index=True
    )
    lease_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("leases.id"), nullable=True, index=True
    )
    tenant_user_id: Mapped[int] = mapped_column(BigIntPK, nullable=False, index=True)

    amount_paid: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    months_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
    verified_by: Mapped[int | None] = mapped_column(BigIntPK, nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Gateway receipt number (M-Pesa receipt, card reference, bank slip)
    external_reference: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    # Mobile-money reconciliation state
    checkout_request_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_status_check: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    gateway_status: Mapped[str | None] = mapped_column(String(255), nullable=True)
    auto_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)

    invoice: Mapped["Invoice | None"] = relationship("Invoice")
    lease: Mapped["Lease | None"] = relationship("Lease")

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING.value

    @property
    def is_terminal(self) -> bool:
        return not PAYMENT_TRANSITIONS[self.status]

    def transition_to(self, new_status: PaymentStatus) -> None:
        """Move to new_status or raise StateConflictError."""
        if new_status.value not in PAYMENT_TRANSITIONS[self.status]:
            raise StateConflictError(
                f"Payment {self.id} is {self.status}; cannot become {new_status.value}",
                details={"payment_id": self.id, "status": self.status},
            )
        self.status = new_status.value


# Import for type hints
from src.modules.invoices.models import Invoice  # noqa: E402
from src.modules.leases.models import Lease  # noqa: E402
