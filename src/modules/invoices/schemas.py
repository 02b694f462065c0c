"""Schemas for Invoices module."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from src.modules.invoices.models import InvoiceStatus, InvoiceType


class InvoiceResponse(BaseModel):
    """Schema for invoice response."""

    id: int
    organization_id: int
    lease_id: int
    invoice_type: str
    period_start: date
    due_date: date
    amount: Decimal
    status: str
    is_overdue: bool
    months_covered: int
    description: str | None = None
    paid_at: datetime | None = None
    paid_by_payment_id: int | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class InvoiceFilters(BaseModel):
    """Filters for listing invoices."""

    lease_id: int | None = None
    invoice_type: InvoiceType | None = None
    status: InvoiceStatus | None = None
    is_overdue: bool | None = None
    period_from: date | None = None
    period_to: date | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(100, ge=1, le=500)


# --- Monthly generation ---


class MonthlyGenerationRequest(BaseModel):
    """Generate rent invoices for the month containing as_of (default: today)."""

    as_of: date | None = None


class MonthlyGenerationResult(BaseModel):
    """Result of monthly rent invoice generation."""

    period_start: date
    leases_processed: int
    created: int  # Rows this run inserted; concurrent runs may each see their own share
    already_invoiced: int
    skipped_prepaid: int
    skipped_not_eligible: int
    total_amount: Decimal = Decimal("0.00")


class OverdueResult(BaseModel):
    """Result of the overdue sweep."""

    as_of: date
    overdue_count: int


# --- Lease billing summary ---


class LeaseBillingSummary(BaseModel):
    """Where a lease stands: next invoice to pay and what is owed."""

    lease_id: int
    monthly_rent: Decimal
    rent_paid_until: date | None
    next_period_due: date
    next_unpaid_invoice: InvoiceResponse | None = None
    unpaid_count: int
    overdue_count: int
    total_owed: Decimal
