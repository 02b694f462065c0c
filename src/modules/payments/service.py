"""Service for Payments module: intake, lookup, manual approve/reject."""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.core.audit.service import AuditAction, AuditService
from src.core.database import utcnow
from src.core.exceptions import (
    AllocationIncompleteError,
    AuthorizationError,
    ExternalServiceError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from src.integrations.notifications.dispatcher import (
    Notification,
    NotificationDispatcher,
    get_notification_dispatcher,
)
from src.integrations.notifications.templates import PAYMENT_CONFIRMED, render_payment_confirmed
from src.modules.invoices.models import Invoice, InvoiceType
from src.modules.invoices.settlement import settle_invoice
from src.modules.leases.models import Lease
from src.modules.payments.allocation import PrepaymentService
from src.modules.payments.models import Payment, PaymentStatus
from src.modules.payments.schemas import (
    PaymentCreate,
    PaymentDecision,
    PaymentFilters,
    PaymentResponse,
)
from src.shared.utils.money import MONEY_TOLERANCE, round_money

logger = logging.getLogger(__name__)


class PaymentService:
    """Service for recording payments and deciding pending ones."""

    def __init__(self, db: AsyncSession, dispatcher: NotificationDispatcher | None = None):
        self.db = db
        self.audit = AuditService(db)
        self.prepayments = PrepaymentService(db)
        self.dispatcher = dispatcher or get_notification_dispatcher()

    # --- Intake ---

    async def create_payment(
        self, data: PaymentCreate, organization_id: int, recorded_by_id: int
    ) -> Payment:
        """Record a pending payment against an invoice, or against a lease for months ahead."""
        invoice: Invoice | None = None
        if data.invoice_id is not None:
            result = await self.db.execute(
                select(Invoice).where(
                    Invoice.id == data.invoice_id,
                    Invoice.organization_id == organization_id,
                )
            )
            invoice = result.scalar_one_or_none()
            if not invoice:
                raise NotFoundError("Invoice", data.invoice_id)
            if invoice.is_paid:
                raise StateConflictError(f"Invoice {invoice.id} is already paid")
            if data.lease_id is not None and data.lease_id != invoice.lease_id:
                raise ValidationError("lease_id does not match the invoice's lease", field="lease_id")

        lease_id = invoice.lease_id if invoice else data.lease_id
        result = await self.db.execute(
            select(Lease).where(Lease.id == lease_id, Lease.organization_id == organization_id)
        )
        lease = result.scalar_one_or_none()
        if not lease:
            raise NotFoundError("Lease", lease_id)

        funds_rent = invoice is None or invoice.invoice_type == InvoiceType.RENT.value
        if funds_rent:
            # Rejected now rather than at approval time
            self.prepayments.validate_amount(lease, data.amount_paid, data.months_paid)
        elif data.months_paid != 1:
            raise ValidationError("months_paid applies to rent payments only", field="months_paid")

        payment = Payment(
            organization_id=organization_id,
            invoice_id=invoice.id if invoice else None,
            lease_id=lease.id,
            tenant_user_id=data.tenant_user_id or lease.tenant_user_id,
            amount_paid=round_money(data.amount_paid),
            payment_method=data.payment_method.value,
            payment_date=data.payment_date or date.today(),
            months_paid=data.months_paid,
            status=PaymentStatus.PENDING.value,
            external_reference=data.external_reference,
            checkout_request_id=data.checkout_request_id,
            notes=data.notes,
            retry_count=0,
            needs_review=False,
            auto_verified=False,
        )
        self.db.add(payment)
        await self.db.flush()

        await self.audit.log(
            action=AuditAction.CREATE_PAYMENT,
            entity_type="Payment",
            entity_id=payment.id,
            user_id=recorded_by_id,
            organization_id=organization_id,
            new_values={
                "invoice_id": payment.invoice_id,
                "lease_id": payment.lease_id,
                "amount_paid": str(payment.amount_paid),
                "payment_method": payment.payment_method,
                "months_paid": payment.months_paid,
            },
        )

        await self.db.commit()
        return payment

    # --- Lookup ---

    async def get_payment_by_id(self, payment_id: int, organization_id: int | None = None) -> Payment:
        """Get payment by ID, optionally scoped to an organization."""
        query = select(Payment).where(Payment.id == payment_id)
        if organization_id is not None:
            query = query.where(Payment.organization_id == organization_id)
        result = await self.db.execute(query)
        payment = result.scalar_one_or_none()
        if not payment:
            raise NotFoundError("Payment", payment_id)
        return payment

    async def list_payments(
        self, organization_id: int, filters: PaymentFilters
    ) -> tuple[list[Payment], int]:
        """List an organization's payments with filters."""
        query = select(Payment).where(Payment.organization_id == organization_id)

        if filters.lease_id:
            query = query.where(Payment.lease_id == filters.lease_id)
        if filters.invoice_id:
            query = query.where(Payment.invoice_id == filters.invoice_id)
        if filters.status:
            query = query.where(Payment.status == filters.status.value)
        if filters.payment_method:
            query = query.where(Payment.payment_method == filters.payment_method.value)
        if filters.needs_review is not None:
            query = query.where(Payment.needs_review.is_(filters.needs_review))
        if filters.date_from:
            query = query.where(Payment.payment_date >= filters.date_from)
        if filters.date_to:
            query = query.where(Payment.payment_date <= filters.date_to)

        # Count total
        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        # Paginate
        query = query.order_by(Payment.created_at.desc(), Payment.id.desc())
        query = query.offset((filters.page - 1) * filters.limit).limit(filters.limit)

        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    # --- Decisions ---

    async def _get_for_decision(self, payment_id: int, organization_id: int) -> Payment:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .options(selectinload(Payment.invoice))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if not payment:
            raise NotFoundError("Payment", payment_id)
        if payment.organization_id != organization_id:
            raise AuthorizationError("Payment belongs to another organization")
        if not payment.is_pending:
            raise StateConflictError(
                f"Payment {payment.id} is already {payment.status}",
                details={"payment_id": payment.id, "status": payment.status},
            )
        return payment

    @staticmethod
    def funds_rent(payment: Payment) -> bool:
        return payment.invoice is None or payment.invoice.invoice_type == InvoiceType.RENT.value

    async def _settle_direct(self, payment: Payment) -> list[int]:
        """Non-rent invoice: paid once verified payments (this one included) cover the amount."""
        invoice = payment.invoice
        if invoice.is_paid:
            logger.warning(
                "Payment %s verified against invoice %s which is already paid", payment.id, invoice.id
            )
            return []

        result = await self.db.execute(
            select(func.coalesce(func.sum(Payment.amount_paid), 0)).where(
                Payment.invoice_id == invoice.id,
                Payment.status == PaymentStatus.VERIFIED.value,
                Payment.id != payment.id,
            )
        )
        covered = Decimal(str(result.scalar())) + payment.amount_paid
        if covered + MONEY_TOLERANCE < invoice.amount:
            return []
        settle_invoice(invoice, payment.id, utcnow())
        return [invoice.id]

    async def approve_payment(
        self,
        payment_id: int,
        actor_id: int,
        organization_id: int,
        notes: str | None = None,
        today: date | None = None,
        receipt: str | None = None,
        auto_verified: bool = False,
    ) -> PaymentDecision:
        """
        Verify a pending payment and settle what it pays for.

        Rent goes through the prepayment allocator (one or more months);
        other invoice types are settled directly. If an allocation stops
        part-way, the settled months are kept, the payment stays pending and
        is flagged for review, and AllocationIncompleteError is raised.
        """
        payment = await self._get_for_decision(payment_id, organization_id)
        today = today or date.today()

        applied: list[int] = []
        rent_paid_until: date | None = None
        if self.funds_rent(payment):
            try:
                allocation = await self.prepayments.allocate(
                    lease_id=payment.lease_id,
                    amount_paid=payment.amount_paid,
                    months=payment.months_paid,
                    payment_id=payment.id,
                    today=today,
                    actor_id=actor_id,
                )
            except AllocationIncompleteError as exc:
                payment.needs_review = True
                payment.notes = append_note(payment.notes, f"Allocation incomplete: {exc.message}")
                await self.db.commit()
                raise
            applied = allocation.applied_invoice_ids
            rent_paid_until = allocation.rent_paid_until
        else:
            applied = await self._settle_direct(payment)

        old_status = payment.status
        payment.transition_to(PaymentStatus.VERIFIED)
        payment.verified_by = actor_id
        payment.verified_at = utcnow()
        payment.needs_review = False
        payment.auto_verified = auto_verified
        if receipt:
            payment.external_reference = receipt
        if notes:
            payment.notes = append_note(payment.notes, notes)

        await self.audit.log(
            action=AuditAction.APPROVE_PAYMENT,
            entity_type="Payment",
            entity_id=payment.id,
            user_id=actor_id,
            organization_id=payment.organization_id,
            old_values={"status": old_status},
            new_values={
                "status": payment.status,
                "applied_invoice_ids": applied,
                "auto_verified": auto_verified,
            },
        )
        await self.db.commit()

        logger.info(
            "Payment %s verified (%s); settled invoices %s", payment.id, payment.payment_method, applied
        )
        await self._notify_confirmed(payment, rent_paid_until)

        return PaymentDecision(
            payment=PaymentResponse.model_validate(payment),
            applied_invoice_ids=applied,
            rent_paid_until=rent_paid_until,
        )

    async def reject_payment(
        self,
        payment_id: int,
        actor_id: int,
        organization_id: int,
        reason: str,
    ) -> Payment:
        """Fail a pending payment. Invoices are left as they are."""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required", field="reason")

        payment = await self._get_for_decision(payment_id, organization_id)
        old_status = payment.status
        payment.transition_to(PaymentStatus.FAILED)
        payment.failure_reason = reason
        payment.verified_by = actor_id
        payment.verified_at = utcnow()
        payment.needs_review = False

        await self.audit.log(
            action=AuditAction.REJECT_PAYMENT,
            entity_type="Payment",
            entity_id=payment.id,
            user_id=actor_id,
            organization_id=payment.organization_id,
            old_values={"status": old_status},
            new_values={"status": payment.status},
            comment=reason,
        )
        await self.db.commit()
        logger.info("Payment %s rejected: %s", payment.id, reason)
        return payment

    async def _notify_confirmed(self, payment: Payment, rent_paid_until: date | None) -> None:
        """Tell the tenant the payment went through. Never undoes the settlement."""
        if payment.lease_id is None:
            return
        lease = await self.db.get(Lease, payment.lease_id)
        if lease is None or not lease.tenant_phone:
            return
        notification = Notification(
            recipient=lease.tenant_phone,
            template_key=PAYMENT_CONFIRMED,
            message=render_payment_confirmed(
                payment.amount_paid,
                payment.payment_method,
                payment.external_reference,
                rent_paid_until,
            ),
            related_entity_type="payment",
            related_entity_id=payment.id,
        )
        try:
            await self.dispatcher.dispatch(notification)
        except ExternalServiceError as exc:
            logger.warning("Payment %s confirmation not delivered: %s", payment.id, exc.message)


def append_note(existing: str | None, note: str) -> str:
    return f"{existing}\n{note}" if existing else note
