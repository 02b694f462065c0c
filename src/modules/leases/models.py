"""Lease model: the billing core's view of a lease.

Leases are created and edited by the property-management service; billing
reads their rent terms and owns only the ``rent_paid_until`` cursor.
"""

from datetime import date
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import Date, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import BaseModel, BigIntPK
from src.shared.utils.dates import add_months, month_start


class LeaseStatus(StrEnum):
    """Lease status enumeration."""

    PENDING = "pending"
    ACTIVE = "active"
    RENEWED = "renewed"
    TERMINATED = "terminated"


# Leases that are billed each month
BILLABLE_LEASE_STATUSES = (LeaseStatus.ACTIVE.value, LeaseStatus.RENEWED.value)


class Lease(BaseModel):
    """Rent terms for one tenant and unit."""

    __tablename__ = "leases"

    organization_id: Mapped[int] = mapped_column(BigIntPK, nullable=False, index=True)
    tenant_user_id: Mapped[int] = mapped_column(BigIntPK, nullable=False, index=True)
    # Recipient for reminders; null means the tenant cannot be reached by SMS
    tenant_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    monthly_rent: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LeaseStatus.PENDING.value, index=True
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Month-start through which rent is settled. Only ever moves forward.
    rent_paid_until: Mapped[date | None] = mapped_column(Date, nullable=True)

    @property
    def is_billable(self) -> bool:
        return self.status in BILLABLE_LEASE_STATUSES

    @property
    def first_billable_period(self) -> date:
        """A lease that starts mid-month is first billed for the following month."""
        if self.start_date.day == 1:
            return self.start_date
        return add_months(month_start(self.start_date), 1)

    @property
    def last_billable_period(self) -> date | None:
        return month_start(self.end_date) if self.end_date else None

    def covers_period(self, period_start: date) -> bool:
        """True when the paid-through cursor already includes period_start."""
        return self.rent_paid_until is not None and self.rent_paid_until >= period_start
