"""Tests for multi-month prepayment allocation."""

from datetime import date
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.permissions import Permission
from src.core.exceptions import AllocationIncompleteError, StateConflictError, ValidationError
from src.modules.invoices import settlement
from src.modules.invoices.models import Invoice, InvoiceStatus
from src.modules.invoices.service import InvoiceService
from src.modules.payments import allocation
from src.modules.payments.allocation import PrepaymentService
from src.modules.payments.models import PaymentMethod, PaymentStatus
from src.modules.payments.schemas import PaymentCreate
from src.modules.payments.service import PaymentService

TODAY = date(2026, 10, 17)


async def _pending_payment(db: AsyncSession, lease, amount: str, months: int):
    return await PaymentService(db).create_payment(
        PaymentCreate(
            lease_id=lease.id,
            amount_paid=Decimal(amount),
            payment_method=PaymentMethod.MPESA,
            months_paid=months,
        ),
        organization_id=lease.organization_id,
        recorded_by_id=10,
    )


async def _rent_invoices(db: AsyncSession, lease_id: int) -> list[Invoice]:
    result = await db.execute(
        select(Invoice)
        .where(Invoice.lease_id == lease_id)
        .order_by(Invoice.period_start)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


class TestPrepaymentAllocation:
    async def test_three_months_advance_cursor_to_last_month(
        self, db_session: AsyncSession, lease_factory
    ):
        lease = await lease_factory(monthly_rent="10000.00")
        payment = await _pending_payment(db_session, lease, "30000.00", 3)

        decision = await PaymentService(db_session).approve_payment(
            payment.id, actor_id=10, organization_id=1, today=TODAY
        )

        assert decision.rent_paid_until == date(2026, 12, 1)
        assert lease.rent_paid_until == date(2026, 12, 1)
        invoices = await _rent_invoices(db_session, lease.id)
        assert [i.period_start for i in invoices] == [
            date(2026, 10, 1),
            date(2026, 11, 1),
            date(2026, 12, 1),
        ]
        assert all(i.status == InvoiceStatus.PAID.value for i in invoices)
        assert all(i.paid_by_payment_id == payment.id for i in invoices)
        assert sorted(decision.applied_invoice_ids) == sorted(i.id for i in invoices)

    async def test_amount_not_matching_months_is_rejected(
        self, db_session: AsyncSession, lease_factory
    ):
        lease = await lease_factory(monthly_rent="10000.00")
        with pytest.raises(ValidationError):
            await PrepaymentService(db_session).allocate(
                lease.id, Decimal("25000.00"), 3, payment_id=99, today=TODAY
            )
        assert await _rent_invoices(db_session, lease.id) == []
        assert lease.rent_paid_until is None

    async def test_one_cent_tolerance(self, db_session: AsyncSession, lease_factory):
        lease = await lease_factory(monthly_rent="3333.33")
        result = await PrepaymentService(db_session).allocate(
            lease.id, Decimal("9999.98"), 3, payment_id=99, today=TODAY
        )
        assert len(result.applied_invoice_ids) == 3

    async def test_existing_generated_invoice_is_reused(
        self, db_session: AsyncSession, lease_factory
    ):
        lease = await lease_factory()
        await InvoiceService(db_session).generate_monthly_invoices(date(2026, 10, 1))
        generated = (await _rent_invoices(db_session, lease.id))[0]

        payment = await _pending_payment(db_session, lease, "20000.00", 2)
        decision = await PaymentService(db_session).approve_payment(
            payment.id, actor_id=10, organization_id=1, today=TODAY
        )

        invoices = await _rent_invoices(db_session, lease.id)
        assert len(invoices) == 2
        assert generated.id in decision.applied_invoice_ids

    async def test_arrears_are_covered_first(self, db_session: AsyncSession, lease_factory):
        lease = await lease_factory()
        await InvoiceService(db_session).generate_monthly_invoices(date(2026, 9, 1))

        payment = await _pending_payment(db_session, lease, "20000.00", 2)
        decision = await PaymentService(db_session).approve_payment(
            payment.id, actor_id=10, organization_id=1, today=TODAY
        )

        assert decision.rent_paid_until == date(2026, 10, 1)
        periods = [i.period_start for i in await _rent_invoices(db_session, lease.id)]
        assert periods == [date(2026, 9, 1), date(2026, 10, 1)]

    async def test_cursor_only_moves_forward(self, db_session: AsyncSession, lease_factory):
        lease = await lease_factory(rent_paid_until=date(2027, 1, 1))
        payment = await _pending_payment(db_session, lease, "10000.00", 1)

        decision = await PaymentService(db_session).approve_payment(
            payment.id, actor_id=10, organization_id=1, today=TODAY
        )

        assert decision.rent_paid_until == date(2027, 2, 1)

        assert settlement.advance_paid_through(lease, date(2026, 11, 1)) == date(2027, 2, 1)
        assert lease.rent_paid_until == date(2027, 2, 1)

    async def test_prepaid_months_are_skipped_by_generator(
        self, db_session: AsyncSession, lease_factory
    ):
        lease = await lease_factory()
        payment = await _pending_payment(db_session, lease, "30000.00", 3)
        await PaymentService(db_session).approve_payment(
            payment.id, actor_id=10, organization_id=1, today=TODAY
        )

        result = await InvoiceService(db_session).generate_monthly_invoices(date(2026, 11, 1))
        assert result.skipped_prepaid == 1
        assert result.created == 0

    async def test_allocation_past_lease_end_is_rejected(
        self, db_session: AsyncSession, lease_factory
    ):
        lease = await lease_factory(end_date=date(2026, 11, 30))
        preview = await PrepaymentService(db_session).preview(
            lease.id, Decimal("30000.00"), 3, today=TODAY
        )
        assert preview.within_lease_term is False

        with pytest.raises(ValidationError):
            await PrepaymentService(db_session).allocate(
                lease.id, Decimal("30000.00"), 3, payment_id=99, today=TODAY
            )
        assert lease.rent_paid_until is None

    async def test_month_paid_by_another_payment_is_conflict(
        self, db_session: AsyncSession, lease_factory
    ):
        lease = await lease_factory()
        first = await _pending_payment(db_session, lease, "10000.00", 1)
        await PaymentService(db_session).approve_payment(
            first.id, actor_id=10, organization_id=1, today=TODAY
        )
        lease.rent_paid_until = None
        await db_session.commit()

        with pytest.raises(StateConflictError):
            await PrepaymentService(db_session).allocate(
                lease.id, Decimal("20000.00"), 2, payment_id=first.id + 100, today=date(2026, 9, 1)
            )


class TestPartialAllocation:
    async def test_failure_mid_allocation_keeps_settled_months_and_reports(
        self, db_session: AsyncSession, lease_factory, monkeypatch
    ):
        lease = await lease_factory()
        payment = await _pending_payment(db_session, lease, "30000.00", 3)

        real_settle = allocation.settle_invoice
        calls = {"n": 0}

        def flaky_settle(invoice, payment_id, paid_at):
            calls["n"] += 1
            if calls["n"] == 2:
                raise StateConflictError("simulated settlement failure")
            return real_settle(invoice, payment_id, paid_at)

        monkeypatch.setattr(allocation, "settle_invoice", flaky_settle)
        service = PaymentService(db_session)

        with pytest.raises(AllocationIncompleteError) as exc_info:
            await service.approve_payment(payment.id, actor_id=10, organization_id=1, today=TODAY)

        assert exc_info.value.status_code == 409
        details = exc_info.value.details
        assert len(details["applied_invoice_ids"]) == 1
        assert details["failed_period"] == "2026-11-01"
        assert lease.rent_paid_until == date(2026, 10, 1)

        stored = await service.get_payment_by_id(payment.id)
        assert stored.status == PaymentStatus.PENDING.value
        assert stored.needs_review is True

        # Retrying after the fault converges to the full allocation
        monkeypatch.setattr(allocation, "settle_invoice", real_settle)
        decision = await service.approve_payment(payment.id, actor_id=10, organization_id=1, today=TODAY)

        assert decision.payment.status == PaymentStatus.VERIFIED.value
        assert decision.rent_paid_until == date(2026, 12, 1)
        invoices = await _rent_invoices(db_session, lease.id)
        assert len(invoices) == 3
        assert all(i.paid_by_payment_id == payment.id for i in invoices)


class TestPrepaymentPreviewApi:
    async def test_preview_writes_nothing(
        self, client: AsyncClient, db_session: AsyncSession, lease_factory, make_headers
    ):
        lease = await lease_factory(rent_paid_until=date(2030, 12, 1))
        response = await client.post(
            "/api/v1/payments/prepayment-preview",
            json={"lease_id": lease.id, "amount_paid": "20000.00", "months": 2},
            headers=make_headers(Permission.PAYMENT_CREATE),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["amount_matches"] is True
        assert data["periods"] == ["2031-01-01", "2031-02-01"]
        assert data["rent_paid_until_after"] == "2031-02-01"
        assert await _rent_invoices(db_session, lease.id) == []
