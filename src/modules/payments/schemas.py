"""Pydantic schemas for Payments module."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import Field, model_validator

from src.shared.schemas.base import BaseSchema
from src.modules.payments.models import PaymentMethod, PaymentStatus

# Longest prepayment accepted in one payment
MAX_MONTHS_PER_PAYMENT = 12


# --- Payment Schemas ---


class PaymentCreate(BaseSchema):
    """Schema for recording a payment. Either invoice_id or lease_id is required."""

    invoice_id: int | None = None
    lease_id: int | None = None
    tenant_user_id: int | None = None
    amount_paid: Decimal = Field(gt=0, description="Payment amount (must be positive)")
    payment_method: PaymentMethod
    payment_date: date | None = None
    months_paid: int = Field(1, ge=1, le=MAX_MONTHS_PER_PAYMENT)
    external_reference: str | None = Field(None, max_length=100)
    checkout_request_id: str | None = Field(None, max_length=100)
    notes: str | None = None

    @model_validator(mode="after")
    def require_invoice_or_lease(self):
        if self.invoice_id is None and self.lease_id is None:
            raise ValueError("Either invoice_id or lease_id is required")
        return self


class PaymentResponse(BaseSchema):
    """Schema for payment response."""

    id: int
    organization_id: int
    invoice_id: int | None
    lease_id: int | None
    tenant_user_id: int
    amount_paid: Decimal
    payment_method: str
    payment_date: date
    months_paid: int
    status: str
    verified_by: int | None
    verified_at: datetime | None
    failure_reason: str | None
    notes: str | None
    external_reference: str | None
    checkout_request_id: str | None
    retry_count: int
    last_status_check: datetime | None
    gateway_status: str | None
    auto_verified: bool
    needs_review: bool
    created_at: datetime


class PaymentFilters(BaseSchema):
    """Filters for listing payments."""

    lease_id: int | None = None
    invoice_id: int | None = None
    status: PaymentStatus | None = None
    payment_method: PaymentMethod | None = None
    needs_review: bool | None = None
    date_from: date | None = None
    date_to: date | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=100)


class PaymentApprove(BaseSchema):
    notes: str | None = None


class PaymentReject(BaseSchema):
    reason: str = Field(..., min_length=1, max_length=1000)


class PaymentDecision(BaseSchema):
    """Approve outcome: the payment plus the invoices it settled."""

    payment: PaymentResponse
    applied_invoice_ids: list[int] = []
    rent_paid_until: date | None = None


# --- Prepayment Schemas ---


class PrepaymentPreviewRequest(BaseSchema):
    lease_id: int
    amount_paid: Decimal = Field(gt=0)
    months: int = Field(..., ge=1, le=MAX_MONTHS_PER_PAYMENT)


class PrepaymentPreview(BaseSchema):
    """What an allocation would do, computed without writing anything."""

    lease_id: int
    monthly_rent: Decimal
    months: int
    expected_amount: Decimal
    amount_matches: bool
    periods: list[date]
    rent_paid_until_before: date | None
    rent_paid_until_after: date | None
    within_lease_term: bool


class AllocationResult(BaseSchema):
    """Result of allocating one payment across consecutive rent periods."""

    payment_id: int
    lease_id: int
    periods: list[date]
    applied_invoice_ids: list[int]
    rent_paid_until: date | None
