"""Service for Invoices module: monthly generation, overdue sweep, lookups."""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.database import insert_ignore
from src.core.exceptions import NotFoundError
from src.modules.invoices.models import Invoice, InvoiceStatus, InvoiceType
from src.modules.invoices.schemas import (
    InvoiceFilters,
    InvoiceResponse,
    LeaseBillingSummary,
    MonthlyGenerationResult,
    OverdueResult,
)
from src.modules.invoices.settlement import INVOICE_KEY, rent_invoice_values
from src.modules.leases.models import BILLABLE_LEASE_STATUSES, Lease
from src.shared.utils.dates import add_months, month_start
from src.shared.utils.money import round_money

logger = logging.getLogger(__name__)


class InvoiceService:
    """Service for managing rent invoices."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    # --- Monthly generation ---

    async def generate_monthly_invoices(
        self,
        as_of: date,
        organization_id: int | None = None,
        generated_by_id: int | None = None,
    ) -> MonthlyGenerationResult:
        """
        Create the rent invoice for as_of's month on every billable lease.

        Safe to re-run any number of times for the same month: the insert is
        an insert-or-ignore on (lease_id, invoice_type, period_start).
        """
        period_start = month_start(as_of)

        query = select(Lease).where(Lease.status.in_(BILLABLE_LEASE_STATUSES)).order_by(Lease.id)
        if organization_id is not None:
            query = query.where(Lease.organization_id == organization_id)
        result = await self.db.execute(query)
        leases = list(result.scalars().all())

        created = 0
        already_invoiced = 0
        skipped_prepaid = 0
        skipped_not_eligible = 0
        total_amount = Decimal("0.00")

        for lease in leases:
            last_period = lease.last_billable_period
            if lease.first_billable_period > period_start or (
                last_period is not None and last_period < period_start
            ):
                skipped_not_eligible += 1
                continue
            if lease.covers_period(period_start):
                skipped_prepaid += 1
                continue

            inserted = await insert_ignore(
                self.db, Invoice, rent_invoice_values(lease, period_start), INVOICE_KEY
            )
            if inserted:
                created += 1
                total_amount += lease.monthly_rent
            else:
                already_invoiced += 1

        outcome = MonthlyGenerationResult(
            period_start=period_start,
            leases_processed=len(leases),
            created=created,
            already_invoiced=already_invoiced,
            skipped_prepaid=skipped_prepaid,
            skipped_not_eligible=skipped_not_eligible,
            total_amount=round_money(total_amount),
        )

        if created:
            await self.audit.log(
                action=AuditAction.GENERATE_INVOICES,
                entity_type="BillingPeriod",
                entity_id=int(period_start.strftime("%Y%m")),
                user_id=generated_by_id,
                organization_id=organization_id,
                new_values=outcome.model_dump(mode="json"),
            )

        await self.db.commit()
        logger.info(
            "Monthly invoices for %s: created=%d existing=%d prepaid=%d not_eligible=%d leases=%d",
            period_start,
            created,
            already_invoiced,
            skipped_prepaid,
            skipped_not_eligible,
            len(leases),
        )
        return outcome

    # --- Overdue sweep ---

    async def mark_overdue(self, today: date, organization_id: int | None = None) -> OverdueResult:
        """Flag unpaid invoices whose due date has passed. Already-flagged rows are untouched."""
        stmt = (
            update(Invoice)
            .where(
                Invoice.status == InvoiceStatus.UNPAID.value,
                Invoice.due_date < today,
                Invoice.is_overdue.is_(False),
            )
            .values(is_overdue=True)
        )
        if organization_id is not None:
            stmt = stmt.where(Invoice.organization_id == organization_id)
        result = await self.db.execute(stmt)
        await self.db.commit()

        count = result.rowcount or 0
        logger.info("Overdue sweep as of %s: %d invoice(s) flagged", today, count)
        return OverdueResult(as_of=today, overdue_count=count)

    # --- Lookups ---

    async def get_invoice_by_id(self, invoice_id: int, organization_id: int | None = None) -> Invoice:
        """Get invoice by ID, optionally scoped to an organization."""
        query = select(Invoice).where(Invoice.id == invoice_id)
        if organization_id is not None:
            query = query.where(Invoice.organization_id == organization_id)
        result = await self.db.execute(query)
        invoice = result.scalar_one_or_none()
        if not invoice:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    async def list_invoices(
        self, organization_id: int, filters: InvoiceFilters
    ) -> tuple[list[Invoice], int]:
        """List an organization's invoices with filters, newest period first."""
        query = (
            select(Invoice)
            .where(Invoice.organization_id == organization_id)
            .order_by(Invoice.period_start.desc(), Invoice.id.desc())
        )

        if filters.lease_id is not None:
            query = query.where(Invoice.lease_id == filters.lease_id)
        if filters.invoice_type is not None:
            query = query.where(Invoice.invoice_type == filters.invoice_type.value)
        if filters.status is not None:
            query = query.where(Invoice.status == filters.status.value)
        if filters.is_overdue is not None:
            query = query.where(Invoice.is_overdue.is_(filters.is_overdue))
        if filters.period_from is not None:
            query = query.where(Invoice.period_start >= filters.period_from)
        if filters.period_to is not None:
            query = query.where(Invoice.period_start <= filters.period_to)

        count_query = select(func.count()).select_from(query.subquery())
        total_result = await self.db.execute(count_query)
        total = total_result.scalar() or 0

        offset = (filters.page - 1) * filters.limit
        query = query.offset(offset).limit(filters.limit)

        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def get_lease(self, lease_id: int, organization_id: int | None = None) -> Lease:
        query = select(Lease).where(Lease.id == lease_id)
        if organization_id is not None:
            query = query.where(Lease.organization_id == organization_id)
        result = await self.db.execute(query)
        lease = result.scalar_one_or_none()
        if not lease:
            raise NotFoundError("Lease", lease_id)
        return lease

    async def get_lease_billing_summary(
        self, lease_id: int, organization_id: int, today: date
    ) -> LeaseBillingSummary:
        """Next invoice due, unpaid count and total owed for a lease."""
        lease = await self.get_lease(lease_id, organization_id)

        result = await self.db.execute(
            select(Invoice)
            .where(
                Invoice.lease_id == lease.id,
                Invoice.status == InvoiceStatus.UNPAID.value,
            )
            .order_by(Invoice.period_start, Invoice.id)
        )
        unpaid = list(result.scalars().all())

        if lease.rent_paid_until is not None:
            next_period = add_months(lease.rent_paid_until, 1)
        else:
            next_period = max(lease.first_billable_period, month_start(today))
        rent_unpaid = [i for i in unpaid if i.invoice_type == InvoiceType.RENT.value]
        if rent_unpaid:
            next_period = min(next_period, rent_unpaid[0].period_start)

        return LeaseBillingSummary(
            lease_id=lease.id,
            monthly_rent=lease.monthly_rent,
            rent_paid_until=lease.rent_paid_until,
            next_period_due=next_period,
            next_unpaid_invoice=InvoiceResponse.model_validate(unpaid[0]) if unpaid else None,
            unpaid_count=len(unpaid),
            overdue_count=sum(1 for i in unpaid if i.is_overdue),
            total_owed=round_money(sum((i.amount for i in unpaid), Decimal("0.00"))),
        )
