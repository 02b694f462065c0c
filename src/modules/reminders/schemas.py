"""Schemas for Reminders module."""

from datetime import date, datetime

from pydantic import BaseModel, Field

from src.modules.reminders.models import DeliveryStatus


class ReminderResponse(BaseModel):
    id: int
    organization_id: int
    lease_id: int
    invoice_id: int | None
    reminder_type: str
    stage: int
    period_start: date
    template_key: str
    recipient: str
    message: str
    scheduled_for: date
    sent_at: datetime | None
    delivery_status: str
    delivery_report: str | None
    last_error: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class ReminderFilters(BaseModel):
    lease_id: int | None = None
    invoice_id: int | None = None
    stage: int | None = Field(None, ge=1, le=5)
    delivery_status: DeliveryStatus | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=200)


class ReminderRunResult(BaseModel):
    """Result of one reminder run."""

    run_date: date
    invoices_considered: int
    reminders_sent: int
    reminders_failed: int
    already_reminded: int
    skipped_paid: int
    skipped_no_phone: int
    skipped_inactive_lease: int = 0
    cancelled: int


class DeliveryReport(BaseModel):
    """Carrier delivery report for a dispatched reminder."""

    provider_message_id: str = Field(..., min_length=1, max_length=100)
    delivered: bool
    error: str | None = None
