"""Invoice settlement primitive shared by payment approval and prepayment allocation."""

from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.database import insert_ignore
from src.core.exceptions import StateConflictError
from src.modules.invoices.models import Invoice, InvoiceStatus, InvoiceType
from src.modules.leases.models import Lease
from src.shared.utils.dates import period_label

INVOICE_KEY = ["lease_id", "invoice_type", "period_start"]


def due_date_for(period_start: date) -> date:
    return period_start + timedelta(days=settings.invoice_due_offset_days)


def rent_invoice_values(lease: Lease, period_start: date) -> dict:
    """Column values for a lease's rent invoice for one period."""
    return {
        "organization_id": lease.organization_id,
        "lease_id": lease.id,
        "invoice_type": InvoiceType.RENT.value,
        "period_start": period_start,
        "due_date": due_date_for(period_start),
        "amount": lease.monthly_rent,
        "status": InvoiceStatus.UNPAID.value,
        "is_overdue": False,
        "months_covered": 1,
        "description": f"Rent for {period_label(period_start)}",
    }


async def find_period_invoice(
    db: AsyncSession,
    lease_id: int,
    period_start: date,
    invoice_type: str = InvoiceType.RENT.value,
) -> Invoice | None:
    result = await db.execute(
        select(Invoice).where(
            Invoice.lease_id == lease_id,
            Invoice.invoice_type == invoice_type,
            Invoice.period_start == period_start,
        )
    )
    return result.scalar_one_or_none()


async def ensure_period_invoice(db: AsyncSession, lease: Lease, period_start: date) -> Invoice:
    """Find or create the lease's rent invoice for period_start."""
    await insert_ignore(db, Invoice, rent_invoice_values(lease, period_start), INVOICE_KEY)
    invoice = await find_period_invoice(db, lease.id, period_start)
    if invoice is None:
        raise StateConflictError(
            f"Rent invoice for lease {lease.id} period {period_start} could not be created"
        )
    return invoice


def settle_invoice(invoice: Invoice, payment_id: int, paid_at: datetime) -> bool:
    """
    Mark an invoice paid by payment_id.

    Returns False when the same payment already settled it (a retried
    allocation), True when this call settled it.

    Raises:
        StateConflictError: If another payment already settled the invoice
    """
    if invoice.status == InvoiceStatus.PAID.value:
        if invoice.paid_by_payment_id == payment_id:
            return False
        raise StateConflictError(
            f"Invoice {invoice.id} for {period_label(invoice.period_start)} is already paid",
            details={"invoice_id": invoice.id, "paid_by_payment_id": invoice.paid_by_payment_id},
        )
    invoice.status = InvoiceStatus.PAID.value
    invoice.is_overdue = False
    invoice.paid_at = paid_at
    invoice.paid_by_payment_id = payment_id
    return True


def advance_paid_through(lease: Lease, period_start: date) -> date:
    """Move the lease's paid-through cursor forward to period_start; never backwards."""
    if lease.rent_paid_until is None or period_start > lease.rent_paid_until:
        lease.rent_paid_until = period_start
    return lease.rent_paid_until
