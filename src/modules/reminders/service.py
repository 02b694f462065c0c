"""Rent reminder escalation."""

import logging
from datetime import date, timedelta

from sqlalchemy import func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database import insert_ignore, utcnow
from src.core.exceptions import ExternalServiceError, NotFoundError
from src.integrations.notifications.dispatcher import (
    Notification,
    NotificationDispatcher,
    get_notification_dispatcher,
)
from src.integrations.notifications.templates import render_rent_stage
from src.modules.invoices.models import Invoice, InvoiceStatus, InvoiceType
from src.modules.leases.models import Lease
from src.modules.reminders.models import (
    ACTIVE_DELIVERY_STATUSES,
    ACTIVE_STAGE_PREDICATE,
    DeliveryStatus,
    ReminderRecord,
    ReminderStage,
    ReminderType,
)
from src.modules.reminders.schemas import DeliveryReport, ReminderFilters, ReminderRunResult
from src.shared.utils.dates import day_in_month

logger = logging.getLogger(__name__)

_ACTIVE_KEY = ["lease_id", "period_start", "reminder_type", "stage"]
# Earliest stage fires this many days before the due date
_LOOKAHEAD_DAYS = -ReminderStage.PRE_DUE.offset_days


class ReminderService:
    """Emits at most one reminder per invoice per run, at its highest stage due."""

    def __init__(self, db: AsyncSession, dispatcher: NotificationDispatcher | None = None):
        self.db = db
        self.dispatcher = dispatcher or get_notification_dispatcher()

    async def send_reminders_for_day(
        self,
        day_of_month: int,
        today: date | None = None,
        organization_id: int | None = None,
    ) -> ReminderRunResult:
        """
        Run the reminder cadence for day_of_month of the current month.

        For each unpaid rent invoice the latest stage reached by the run date
        is emitted, unless that stage (or a later one) already has a pending or
        sent record. Invoices whose period is covered by the lease's paid-through
        cursor, or whose lease is no longer active, get nothing and their pending
        records are cancelled.
        """
        run_date = day_in_month(today or date.today(), day_of_month)

        query = (
            select(Invoice, Lease)
            .join(Lease, Invoice.lease_id == Lease.id)
            .where(
                Invoice.invoice_type == InvoiceType.RENT.value,
                Invoice.status == InvoiceStatus.UNPAID.value,
                Invoice.due_date <= run_date + timedelta(days=_LOOKAHEAD_DAYS),
            )
            .order_by(Invoice.due_date, Invoice.id)
        )
        if organization_id is not None:
            query = query.where(Invoice.organization_id == organization_id)
        rows = (await self.db.execute(query)).all()

        counts = {
            "sent": 0,
            "failed": 0,
            "already": 0,
            "paid": 0,
            "no_phone": 0,
            "inactive": 0,
            "cancelled": 0,
        }

        for invoice, lease in rows:
            if not lease.is_billable:
                counts["inactive"] += 1
                counts["cancelled"] += await self._cancel_pending(invoice.id)
                continue

            if lease.covers_period(invoice.period_start):
                counts["paid"] += 1
                counts["cancelled"] += await self._cancel_pending(invoice.id)
                continue

            stage = ReminderStage.due_on(invoice.due_date, run_date)
            if stage is None:
                continue

            highest = await self._highest_active_stage(lease.id, invoice.period_start)
            if highest is not None and highest >= stage:
                counts["already"] += 1
                continue

            if not lease.tenant_phone:
                counts["no_phone"] += 1
                continue

            record = await self._emit(invoice, lease, stage, run_date)
            if record is None:
                counts["already"] += 1
                continue
            if await self._dispatch(record):
                counts["sent"] += 1
            else:
                counts["failed"] += 1

        await self.db.commit()

        result = ReminderRunResult(
            run_date=run_date,
            invoices_considered=len(rows),
            reminders_sent=counts["sent"],
            reminders_failed=counts["failed"],
            already_reminded=counts["already"],
            skipped_paid=counts["paid"],
            skipped_no_phone=counts["no_phone"],
            skipped_inactive_lease=counts["inactive"],
            cancelled=counts["cancelled"],
        )
        logger.info(
            "Reminders for %s: sent=%d failed=%d already=%d paid=%d no_phone=%d inactive=%d",
            run_date,
            result.reminders_sent,
            result.reminders_failed,
            result.already_reminded,
            result.skipped_paid,
            result.skipped_no_phone,
            result.skipped_inactive_lease,
        )
        return result

    async def _highest_active_stage(self, lease_id: int, period_start: date) -> int | None:
        result = await self.db.execute(
            select(func.max(ReminderRecord.stage)).where(
                ReminderRecord.lease_id == lease_id,
                ReminderRecord.period_start == period_start,
                ReminderRecord.reminder_type == ReminderType.RENT_PAYMENT.value,
                ReminderRecord.delivery_status.in_(ACTIVE_DELIVERY_STATUSES),
            )
        )
        return result.scalar()

    async def _cancel_pending(self, invoice_id: int) -> int:
        result = await self.db.execute(
            update(ReminderRecord)
            .where(
                ReminderRecord.invoice_id == invoice_id,
                ReminderRecord.delivery_status == DeliveryStatus.PENDING.value,
            )
            .values(delivery_status=DeliveryStatus.CANCELLED.value)
        )
        return result.rowcount or 0

    async def _emit(
        self, invoice: Invoice, lease: Lease, stage: ReminderStage, run_date: date
    ) -> ReminderRecord | None:
        """Insert the pending record; None when a concurrent run already holds this stage."""
        values = {
            "organization_id": invoice.organization_id,
            "lease_id": lease.id,
            "invoice_id": invoice.id,
            "tenant_user_id": lease.tenant_user_id,
            "reminder_type": ReminderType.RENT_PAYMENT.value,
            "stage": int(stage),
            "period_start": invoice.period_start,
            "template_key": stage.template_key,
            "recipient": lease.tenant_phone,
            "message": render_rent_stage(
                stage.template_key, invoice.amount, invoice.due_date, invoice.period_start
            ),
            "scheduled_for": run_date,
            "delivery_status": DeliveryStatus.PENDING.value,
        }
        inserted = await insert_ignore(
            self.db,
            ReminderRecord,
            values,
            _ACTIVE_KEY,
            index_where=text(ACTIVE_STAGE_PREDICATE),
        )
        if not inserted:
            return None
        # Persist the pending record before handing it to the transport
        await self.db.commit()

        result = await self.db.execute(
            select(ReminderRecord).where(
                ReminderRecord.lease_id == lease.id,
                ReminderRecord.period_start == invoice.period_start,
                ReminderRecord.reminder_type == ReminderType.RENT_PAYMENT.value,
                ReminderRecord.stage == int(stage),
                ReminderRecord.delivery_status == DeliveryStatus.PENDING.value,
            )
        )
        return result.scalar_one()

    async def _dispatch(self, record: ReminderRecord) -> bool:
        notification = Notification(
            recipient=record.recipient,
            template_key=record.template_key,
            message=record.message,
            related_entity_type="invoice",
            related_entity_id=record.invoice_id,
        )
        try:
            message_id = await self.dispatcher.dispatch(notification)
        except ExternalServiceError as exc:
            record.delivery_status = DeliveryStatus.FAILED.value
            record.last_error = exc.message
            await self.db.commit()
            logger.warning("Reminder %s to %s not handed off: %s", record.id, record.recipient, exc.message)
            return False

        record.delivery_status = DeliveryStatus.SENT.value
        record.sent_at = utcnow()
        record.provider_message_id = message_id
        await self.db.commit()
        return True

    async def record_delivery_report(self, report: DeliveryReport) -> ReminderRecord:
        """Store the carrier's delivery outcome. A sent reminder stays sent."""
        result = await self.db.execute(
            select(ReminderRecord).where(
                ReminderRecord.provider_message_id == report.provider_message_id
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError("Reminder", report.provider_message_id)

        record.delivery_report = "delivered" if report.delivered else "failed"
        if not report.delivered:
            record.last_error = report.error or "Delivery failed"
        await self.db.commit()
        return record

    async def list_reminders(
        self, organization_id: int, filters: ReminderFilters
    ) -> tuple[list[ReminderRecord], int]:
        query = select(ReminderRecord).where(ReminderRecord.organization_id == organization_id)
        if filters.lease_id is not None:
            query = query.where(ReminderRecord.lease_id == filters.lease_id)
        if filters.invoice_id is not None:
            query = query.where(ReminderRecord.invoice_id == filters.invoice_id)
        if filters.stage is not None:
            query = query.where(ReminderRecord.stage == filters.stage)
        if filters.delivery_status is not None:
            query = query.where(ReminderRecord.delivery_status == filters.delivery_status.value)

        total = (
            await self.db.execute(select(func.count()).select_from(query.subquery()))
        ).scalar() or 0
        query = query.order_by(ReminderRecord.id.desc())
        query = query.offset((filters.page - 1) * filters.limit).limit(filters.limit)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total
