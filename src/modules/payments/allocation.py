"""Prepayment allocation: one payment settling several consecutive rent months."""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.database import utcnow
from src.core.exceptions import (
    AllocationIncompleteError,
    AppException,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from src.modules.invoices.models import Invoice, InvoiceStatus, InvoiceType
from src.modules.invoices.settlement import (
    advance_paid_through,
    ensure_period_invoice,
    settle_invoice,
)
from src.modules.leases.models import Lease
from src.modules.payments.schemas import AllocationResult, PrepaymentPreview
from src.shared.utils.dates import add_months, month_start
from src.shared.utils.money import amounts_match, round_money

logger = logging.getLogger(__name__)


class PrepaymentService:
    """Allocates a lump rent payment across consecutive monthly invoices."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    async def _get_lease(
        self, lease_id: int, organization_id: int | None = None, for_update: bool = False
    ) -> Lease:
        query = select(Lease).where(Lease.id == lease_id)
        if organization_id is not None:
            query = query.where(Lease.organization_id == organization_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        lease = result.scalar_one_or_none()
        if not lease:
            raise NotFoundError("Lease", lease_id)
        return lease

    @staticmethod
    def expected_amount(lease: Lease, months: int) -> Decimal:
        return round_money(lease.monthly_rent * months)

    def validate_amount(self, lease: Lease, amount_paid: Decimal, months: int) -> None:
        """The amount must equal months x monthly rent (to the cent); no partial allocation."""
        if months < 1:
            raise ValidationError("months must be at least 1", field="months")
        expected = self.expected_amount(lease, months)
        if not amounts_match(amount_paid, expected):
            raise ValidationError(
                f"Amount {round_money(amount_paid)} does not match {months} month(s) "
                f"of rent ({expected})",
                field="amount_paid",
                details={"expected_amount": str(expected), "amount_paid": str(round_money(amount_paid))},
            )

    async def _coverage_start(self, lease: Lease, payment_id: int | None, today: date) -> date:
        """
        First month the payment covers.

        A retried allocation resumes from the first month this payment already
        settled; otherwise the oldest unpaid rent month after the cursor, then
        the month after the cursor (never earlier than the current month).
        """
        if payment_id is not None:
            result = await self.db.execute(
                select(func.min(Invoice.period_start)).where(
                    Invoice.lease_id == lease.id,
                    Invoice.invoice_type == InvoiceType.RENT.value,
                    Invoice.paid_by_payment_id == payment_id,
                )
            )
            resumed = result.scalar()
            if resumed is not None:
                return resumed

        arrears_query = select(func.min(Invoice.period_start)).where(
            Invoice.lease_id == lease.id,
            Invoice.invoice_type == InvoiceType.RENT.value,
            Invoice.status == InvoiceStatus.UNPAID.value,
        )
        if lease.rent_paid_until is not None:
            arrears_query = arrears_query.where(Invoice.period_start > lease.rent_paid_until)
        result = await self.db.execute(arrears_query)
        arrears = result.scalar()
        if arrears is not None:
            return arrears

        candidates = [month_start(today), lease.first_billable_period]
        if lease.rent_paid_until is not None:
            candidates.append(add_months(lease.rent_paid_until, 1))
        return max(candidates)

    async def plan_periods(
        self, lease: Lease, months: int, payment_id: int | None, today: date
    ) -> list[date]:
        start = await self._coverage_start(lease, payment_id, today)
        return [add_months(start, i) for i in range(months)]

    @staticmethod
    def _within_lease_term(lease: Lease, periods: list[date]) -> bool:
        last = lease.last_billable_period
        return last is None or periods[-1] <= last

    async def preview(
        self,
        lease_id: int,
        amount_paid: Decimal,
        months: int,
        today: date,
        organization_id: int | None = None,
    ) -> PrepaymentPreview:
        """Describe what allocate() would cover. Writes nothing."""
        lease = await self._get_lease(lease_id, organization_id)
        periods = await self.plan_periods(lease, months, None, today)
        expected = self.expected_amount(lease, months)
        matches = amounts_match(amount_paid, expected)
        within_term = self._within_lease_term(lease, periods)
        after = lease.rent_paid_until
        if matches and within_term and (after is None or periods[-1] > after):
            after = periods[-1]
        return PrepaymentPreview(
            lease_id=lease.id,
            monthly_rent=lease.monthly_rent,
            months=months,
            expected_amount=expected,
            amount_matches=matches,
            periods=periods,
            rent_paid_until_before=lease.rent_paid_until,
            rent_paid_until_after=after,
            within_lease_term=within_term,
        )

    async def allocate(
        self,
        lease_id: int,
        amount_paid: Decimal,
        months: int,
        payment_id: int,
        today: date,
        actor_id: int | None = None,
    ) -> AllocationResult:
        """
        Create (or find) and settle `months` consecutive rent invoices for one payment.

        Each month is settled in its own savepoint. If month N fails, months
        before it stay settled, the cursor advances only through the last
        settled month and AllocationIncompleteError reports what was applied.
        The caller owns the commit. Re-running with the same payment_id resumes
        from the months it already settled and converges to the same end state.

        Raises:
            ValidationError: Amount mismatch or coverage past the lease end
            StateConflictError: A target month was already paid by another payment
            AllocationIncompleteError: Some months were settled, then one failed
        """
        lease = await self._get_lease(lease_id, for_update=True)
        self.validate_amount(lease, amount_paid, months)

        periods = await self.plan_periods(lease, months, payment_id, today)
        if not self._within_lease_term(lease, periods):
            raise ValidationError(
                f"Allocation through {periods[-1]} runs past the lease end date {lease.end_date}",
                field="months",
            )

        result = await self.db.execute(
            select(Invoice).where(
                Invoice.lease_id == lease.id,
                Invoice.invoice_type == InvoiceType.RENT.value,
                Invoice.period_start.in_(periods),
                Invoice.status == InvoiceStatus.PAID.value,
            )
        )
        for invoice in result.scalars().all():
            if invoice.paid_by_payment_id != payment_id:
                raise StateConflictError(
                    f"Rent for {invoice.period_start} is already paid by another payment",
                    details={"invoice_id": invoice.id, "period_start": str(invoice.period_start)},
                )

        paid_at = utcnow()
        applied: list[int] = []
        settled_through: date | None = None
        failure: tuple[date, Exception] | None = None

        for period in periods:
            try:
                async with self.db.begin_nested():
                    invoice = await ensure_period_invoice(self.db, lease, period)
                    settle_invoice(invoice, payment_id, paid_at)
                    await self.db.flush()
            except (AppException, SQLAlchemyError) as exc:
                failure = (period, exc)
                break
            applied.append(invoice.id)
            settled_through = period

        cursor_before = lease.rent_paid_until
        if settled_through is not None:
            advance_paid_through(lease, settled_through)

        await self.audit.log(
            action=AuditAction.ALLOCATE_PREPAYMENT,
            entity_type="Payment",
            entity_id=payment_id,
            user_id=actor_id,
            organization_id=lease.organization_id,
            old_values={"rent_paid_until": str(cursor_before) if cursor_before else None},
            new_values={
                "lease_id": lease.id,
                "months": months,
                "applied_invoice_ids": applied,
                "rent_paid_until": str(lease.rent_paid_until) if lease.rent_paid_until else None,
                "complete": failure is None,
            },
        )
        await self.db.flush()

        if failure is not None:
            failed_period, exc = failure
            logger.error(
                "Allocation for payment %s stopped at %s after %d of %d month(s): %s",
                payment_id,
                failed_period,
                len(applied),
                months,
                exc,
            )
            raise AllocationIncompleteError(
                f"Settled {len(applied)} of {months} month(s); {failed_period} failed",
                applied_invoice_ids=applied,
                failed_period=str(failed_period),
            ) from exc

        logger.info(
            "Payment %s settled %d month(s) on lease %s; paid through %s",
            payment_id,
            months,
            lease.id,
            lease.rent_paid_until,
        )
        return AllocationResult(
            payment_id=payment_id,
            lease_id=lease.id,
            periods=periods,
            applied_invoice_ids=applied,
            rent_paid_until=lease.rent_paid_until,
        )
