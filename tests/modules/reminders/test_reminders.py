"""Tests for rent reminder escalation."""

from datetime import date

from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.permissions import Permission
from src.core.config import settings
from src.modules.invoices.service import InvoiceService
from src.modules.leases.models import LeaseStatus
from src.modules.reminders.models import DeliveryStatus, ReminderRecord, ReminderStage
from src.modules.reminders.service import ReminderService

# October 2026 rent is due on the 5th
OCTOBER = date(2026, 10, 1)


async def _records(db: AsyncSession) -> list[ReminderRecord]:
    result = await db.execute(
        select(ReminderRecord)
        .order_by(ReminderRecord.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _run(db: AsyncSession, dispatcher, day: int, month: date = OCTOBER):
    return await ReminderService(db, dispatcher).send_reminders_for_day(day, today=month)


class TestReminderStage:
    def test_stage_reached_by_run_date(self):
        due = date(2026, 10, 5)
        assert ReminderStage.due_on(due, date(2026, 10, 1)) is None
        assert ReminderStage.due_on(due, date(2026, 10, 2)) == ReminderStage.PRE_DUE
        assert ReminderStage.due_on(due, date(2026, 10, 5)) == ReminderStage.DUE
        assert ReminderStage.due_on(due, date(2026, 10, 10)) == ReminderStage.OVERDUE_5
        assert ReminderStage.due_on(due, date(2026, 10, 12)) == ReminderStage.OVERDUE_7
        assert ReminderStage.due_on(due, date(2026, 11, 4)) == ReminderStage.OVERDUE_30

    def test_template_keys(self):
        assert [s.template_key for s in ReminderStage] == [
            "rent_stage_1",
            "rent_stage_2",
            "rent_stage_3",
            "rent_stage_4",
            "rent_stage_5",
        ]


class TestReminderService:
    async def test_stages_escalate_without_duplicates(
        self, db_session: AsyncSession, lease_factory, dispatcher
    ):
        await lease_factory()
        await InvoiceService(db_session).generate_monthly_invoices(OCTOBER)

        first = await _run(db_session, dispatcher, 2)
        repeat = await _run(db_session, dispatcher, 2)
        due_day = await _run(db_session, dispatcher, 5)
        week_late = await _run(db_session, dispatcher, 12)

        assert first.reminders_sent == 1
        assert repeat.reminders_sent == 0
        assert repeat.already_reminded == 1
        assert due_day.reminders_sent == 1
        assert week_late.reminders_sent == 1

        records = await _records(db_session)
        assert [r.stage for r in records] == [1, 2, 4]
        assert all(r.delivery_status == DeliveryStatus.SENT.value for r in records)
        assert [n.template_key for n in dispatcher.sent] == [
            "rent_stage_1",
            "rent_stage_2",
            "rent_stage_4",
        ]

    async def test_thirty_day_stage(self, db_session: AsyncSession, lease_factory, dispatcher):
        await lease_factory()
        await InvoiceService(db_session).generate_monthly_invoices(OCTOBER)

        result = await _run(db_session, dispatcher, 4, month=date(2026, 11, 1))

        assert result.reminders_sent == 1
        assert (await _records(db_session))[0].stage == ReminderStage.OVERDUE_30

    async def test_no_reminder_once_rent_is_covered(
        self, db_session: AsyncSession, lease_factory, dispatcher
    ):
        lease = await lease_factory()
        await InvoiceService(db_session).generate_monthly_invoices(OCTOBER)
        lease.rent_paid_until = OCTOBER
        await db_session.commit()

        result = await _run(db_session, dispatcher, 5)

        assert result.reminders_sent == 0
        assert result.skipped_paid == 1
        assert dispatcher.sent == []
        assert await _records(db_session) == []

    async def test_no_reminders_for_inactive_leases(
        self, db_session: AsyncSession, lease_factory, dispatcher
    ):
        terminated = await lease_factory()
        pending = await lease_factory(tenant_phone="+254700000002")
        await InvoiceService(db_session).generate_monthly_invoices(OCTOBER)
        terminated.status = LeaseStatus.TERMINATED.value
        pending.status = LeaseStatus.PENDING.value
        await db_session.commit()

        result = await _run(db_session, dispatcher, 12)

        assert result.invoices_considered == 2
        assert result.reminders_sent == 0
        assert result.skipped_inactive_lease == 2
        assert dispatcher.sent == []
        assert await _records(db_session) == []

    async def test_failed_hand_off_is_recorded_and_retried(
        self, db_session: AsyncSession, lease_factory, failing_dispatcher, dispatcher
    ):
        await lease_factory()
        await InvoiceService(db_session).generate_monthly_invoices(OCTOBER)

        failed = await _run(db_session, failing_dispatcher, 5)
        assert failed.reminders_failed == 1
        record = (await _records(db_session))[0]
        assert record.delivery_status == DeliveryStatus.FAILED.value
        assert record.last_error

        retried = await _run(db_session, dispatcher, 5)
        assert retried.reminders_sent == 1
        statuses = [r.delivery_status for r in await _records(db_session)]
        assert statuses == [DeliveryStatus.FAILED.value, DeliveryStatus.SENT.value]

    async def test_tenant_without_phone_is_skipped(
        self, db_session: AsyncSession, lease_factory, dispatcher
    ):
        await lease_factory(tenant_phone=None)
        await InvoiceService(db_session).generate_monthly_invoices(OCTOBER)

        result = await _run(db_session, dispatcher, 5)

        assert result.skipped_no_phone == 1
        assert result.reminders_sent == 0

    async def test_message_mentions_amount_and_due_date(
        self, db_session: AsyncSession, lease_factory, dispatcher
    ):
        await lease_factory(monthly_rent="15000.00")
        await InvoiceService(db_session).generate_monthly_invoices(OCTOBER)

        await _run(db_session, dispatcher, 5)

        message = dispatcher.sent[0].message
        assert "15,000" in message
        assert "October 2026" in message


class TestRemindersApi:
    async def test_delivery_report_requires_cron_secret(
        self, client: AsyncClient, monkeypatch
    ):
        monkeypatch.setattr(settings, "cron_secret", "s3cret")
        response = await client.post(
            "/api/v1/reminders/delivery-reports",
            json={"provider_message_id": "msg-1", "delivered": True},
        )
        assert response.status_code == 401

    async def test_delivery_report_updates_record(
        self, client: AsyncClient, db_session: AsyncSession, lease_factory, dispatcher, monkeypatch
    ):
        monkeypatch.setattr(settings, "cron_secret", "s3cret")
        await lease_factory()
        await InvoiceService(db_session).generate_monthly_invoices(OCTOBER)
        await _run(db_session, dispatcher, 5)

        response = await client.post(
            "/api/v1/reminders/delivery-reports",
            json={"provider_message_id": "msg-1", "delivered": False, "error": "Absent subscriber"},
            headers={"Authorization": "Bearer s3cret"},
        )

        assert response.status_code == 200
        record = (await _records(db_session))[0]
        assert record.delivery_report == "failed"
        assert record.delivery_status == DeliveryStatus.SENT.value

    async def test_list_reminders(
        self, client: AsyncClient, db_session: AsyncSession, lease_factory, dispatcher, make_headers
    ):
        await lease_factory()
        await InvoiceService(db_session).generate_monthly_invoices(OCTOBER)
        await _run(db_session, dispatcher, 5)

        response = await client.get(
            "/api/v1/reminders", headers=make_headers(Permission.REMINDER_READ)
        )
        assert response.status_code == 200
        assert response.json()["data"]["total"] == 1
