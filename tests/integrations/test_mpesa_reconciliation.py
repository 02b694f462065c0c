from datetime import date, timedelta
from decimal import Decimal

import httpx
import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.permissions import Permission
from src.core.billing_settings.schemas import BillingSettingsUpdate
from src.core.billing_settings.service import get_billing_settings, update_billing_settings
from src.core.config import settings
from src.core.database import utcnow
from src.core.exceptions import ConfigurationError
from src.integrations.mpesa.client import (
    DarajaClient,
    GatewayStatus,
    TransactionStatusResult,
    classify_result_code,
)
from src.integrations.mpesa.models import MpesaVerificationAudit
from src.integrations.mpesa.service import ReconciliationService
from src.modules.payments.models import Payment, PaymentMethod, PaymentStatus
from src.modules.payments.schemas import PaymentCreate
from src.modules.payments.service import PaymentService

BASE_URL = "https://sandbox.safaricom.co.ke"


def _daraja(responder) -> DarajaClient:
    """Daraja client whose status query answers come from responder(request)."""
    calls = {"query": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/v1/generate":
            return httpx.Response(200, json={"access_token": "token", "expires_in": "3599"})
        assert request.url.path == "/mpesa/stkpushquery/v1/query"
        assert request.headers["Authorization"] == "Bearer token"
        calls["query"] += 1
        return responder(request)

    client = DarajaClient(
        consumer_key="key",
        consumer_secret="secret",
        shortcode="174379",
        passkey="passkey",
        base_url=BASE_URL,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    client.calls = calls
    return client


def _result(code: str, desc: str = ""):
    def responder(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "ResponseCode": "0",
                "ResponseDescription": "The service request has been accepted successsfully",
                "CheckoutRequestID": "ws_CO_001",
                "ResultCode": code,
                "ResultDesc": desc or f"result {code}",
            },
        )

    return responder


def _timeout(request: httpx.Request) -> httpx.Response:
    raise httpx.ReadTimeout("timed out", request=request)


def _still_processing(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        500,
        json={
            "requestId": "1",
            "errorCode": "500.001.1001",
            "errorMessage": "The transaction is being processed",
        },
    )


async def _mpesa_payment(db: AsyncSession, lease, checkout: str = "ws_CO_001") -> Payment:
    return await PaymentService(db).create_payment(
        PaymentCreate(
            lease_id=lease.id,
            amount_paid=lease.monthly_rent,
            payment_method=PaymentMethod.MPESA,
            checkout_request_id=checkout,
        ),
        organization_id=lease.organization_id,
        recorded_by_id=10,
    )


async def _reload(db: AsyncSession, payment_id: int) -> Payment:
    result = await db.execute(
        select(Payment).where(Payment.id == payment_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


def _later(seconds: int = 0):
    # Past the minimum payment age
    return utcnow() + timedelta(minutes=5, seconds=seconds)


def test_classify_result_code():
    assert classify_result_code("0") == GatewayStatus.COMPLETED
    assert classify_result_code(0) == GatewayStatus.COMPLETED
    assert classify_result_code("1032") == GatewayStatus.FAILED
    assert classify_result_code("2001") == GatewayStatus.FAILED
    assert classify_result_code("1037") == GatewayStatus.PENDING
    assert classify_result_code("4999") == GatewayStatus.PENDING
    assert classify_result_code(None) == GatewayStatus.PENDING


class TestReconciliationCycle:
    async def test_completed_payment_is_auto_verified(
        self, db_session: AsyncSession, lease_factory, dispatcher
    ):
        lease = await lease_factory()
        payment = await _mpesa_payment(db_session, lease)
        daraja = _daraja(_result("0", "The service request is processed successfully."))

        result = await ReconciliationService(db_session, daraja, dispatcher).run_cycle(now=_later())

        assert result.checked == 1
        assert result.verified == 1
        stored = await _reload(db_session, payment.id)
        assert stored.status == PaymentStatus.VERIFIED.value
        assert stored.auto_verified is True
        assert stored.verified_by == settings.system_user_id
        assert lease.rent_paid_until is not None
        assert len(dispatcher.sent) == 1

        audits = (await db_session.execute(select(MpesaVerificationAudit))).scalars().all()
        assert len(audits) == 1
        assert audits[0].result_code == "0"
        assert audits[0].transaction_status == "completed"

    async def test_cancelled_payment_is_failed(self, db_session: AsyncSession, lease_factory):
        lease = await lease_factory()
        payment = await _mpesa_payment(db_session, lease)
        daraja = _daraja(_result("1032", "Request cancelled by user"))

        result = await ReconciliationService(db_session, daraja).run_cycle(now=_later())

        assert result.failed == 1
        stored = await _reload(db_session, payment.id)
        assert stored.status == PaymentStatus.FAILED.value
        assert "1032" in stored.failure_reason
        assert lease.rent_paid_until is None

    async def test_timeouts_exhaust_retries_and_flag_for_review(
        self, db_session: AsyncSession, lease_factory
    ):
        lease = await lease_factory()
        payment = await _mpesa_payment(db_session, lease)
        daraja = _daraja(_timeout)
        service = ReconciliationService(db_session, daraja)
        max_retries = (await get_billing_settings(db_session, 1)).max_retries

        for cycle in range(max_retries):
            result = await service.run_cycle(now=_later(seconds=31 * cycle))
            assert result.checked == 1
            assert result.errors == 1

        stored = await _reload(db_session, payment.id)
        assert stored.status == PaymentStatus.PENDING.value
        assert stored.retry_count == max_retries
        assert stored.needs_review is True

        # Flagged payments are no longer polled
        result = await service.run_cycle(now=_later(seconds=31 * max_retries))
        assert result.checked == 0
        assert daraja.calls["query"] == max_retries

        billing = await get_billing_settings(db_session, 1)
        assert billing.last_test_status.startswith("failed")

    async def test_lowered_retry_limit_flags_spent_payments(
        self, db_session: AsyncSession, lease_factory
    ):
        lease = await lease_factory()
        payment = await _mpesa_payment(db_session, lease)
        daraja = _daraja(_timeout)
        service = ReconciliationService(db_session, daraja)
        await update_billing_settings(
            db_session, 1, BillingSettingsUpdate(max_retries=5), updated_by=10
        )
        await db_session.commit()

        for cycle in range(3):
            await service.run_cycle(now=_later(seconds=31 * cycle))
        assert (await _reload(db_session, payment.id)).retry_count == 3

        await update_billing_settings(
            db_session, 1, BillingSettingsUpdate(max_retries=2), updated_by=10
        )
        await db_session.commit()

        result = await service.run_cycle(now=_later(seconds=31 * 3))

        assert result.checked == 0
        assert result.flagged_for_review == 1
        stored = await _reload(db_session, payment.id)
        assert stored.status == PaymentStatus.PENDING.value
        assert stored.needs_review is True
        assert stored.retry_count == 3
        assert daraja.calls["query"] == 3

    async def test_still_processing_consumes_a_retry_then_completes(
        self, db_session: AsyncSession, lease_factory
    ):
        lease = await lease_factory()
        payment = await _mpesa_payment(db_session, lease)

        processing = ReconciliationService(db_session, _daraja(_still_processing))
        first = await processing.run_cycle(now=_later())
        assert first.pending == 1
        stored = await _reload(db_session, payment.id)
        assert stored.retry_count == 1
        assert stored.status == PaymentStatus.PENDING.value

        # Within the polling frequency the payment is not queried again
        too_soon = await processing.run_cycle(now=_later(seconds=5))
        assert too_soon.checked == 0

        completed = ReconciliationService(db_session, _daraja(_result("0")))
        second = await completed.run_cycle(now=_later(seconds=31))
        assert second.verified == 1

    async def test_disabled_organization_is_a_no_op(self, db_session: AsyncSession, lease_factory):
        lease = await lease_factory()
        await _mpesa_payment(db_session, lease)
        billing = await get_billing_settings(db_session, 1)
        billing.auto_verify_enabled = False
        await db_session.commit()
        daraja = _daraja(_result("0"))

        result = await ReconciliationService(db_session, daraja).run_cycle(now=_later())

        assert result.organizations_disabled == 1
        assert result.checked == 0
        assert daraja.calls["query"] == 0

    async def test_young_payments_wait_for_minimum_age(
        self, db_session: AsyncSession, lease_factory
    ):
        lease = await lease_factory()
        await _mpesa_payment(db_session, lease)
        daraja = _daraja(_result("0"))

        result = await ReconciliationService(db_session, daraja).run_cycle(
            now=utcnow() - timedelta(minutes=5)
        )
        assert result.checked == 0

    async def test_missing_credentials_is_a_configuration_error(
        self, db_session: AsyncSession, monkeypatch
    ):
        monkeypatch.setattr(settings, "mpesa_consumer_key", "")
        with pytest.raises(ConfigurationError):
            await ReconciliationService(db_session).run_cycle()

    async def test_result_for_decided_payment_is_ignored(
        self, db_session: AsyncSession, lease_factory
    ):
        lease = await lease_factory()
        payment = await _mpesa_payment(db_session, lease)
        await PaymentService(db_session).reject_payment(
            payment.id, actor_id=10, organization_id=1, reason="Manual reject"
        )

        outcome = await ReconciliationService(db_session, _daraja(_result("0"))).apply_gateway_result(
            payment.id,
            TransactionStatusResult(status=GatewayStatus.COMPLETED, result_code="0", description="ok"),
            date(2026, 10, 17),
        )

        assert outcome == "skipped"
        assert (await _reload(db_session, payment.id)).status == PaymentStatus.FAILED.value


def _callback(checkout: str, code: int, amount: str = "10000", receipt: str = "SJK3ABCDE1") -> dict:
    body = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout,
        "ResultCode": code,
        "ResultDesc": "The service request is processed successfully." if code == 0 else "Cancelled",
    }
    if code == 0:
        body["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": float(amount)},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": body}}


class TestMpesaApi:
    async def test_callback_verifies_payment_with_receipt(
        self, client: AsyncClient, db_session: AsyncSession, lease_factory, monkeypatch
    ):
        monkeypatch.setattr(settings, "mpesa_webhook_token", "hooktoken")
        lease = await lease_factory()
        payment = await _mpesa_payment(db_session, lease, checkout="ws_CO_CB")

        response = await client.post(
            "/api/v1/mpesa/stk/callback/hooktoken", json=_callback("ws_CO_CB", 0)
        )

        assert response.status_code == 200
        assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
        stored = await _reload(db_session, payment.id)
        assert stored.status == PaymentStatus.VERIFIED.value
        assert stored.external_reference == "SJK3ABCDE1"

    async def test_callback_amount_mismatch_flags_review(
        self, client: AsyncClient, db_session: AsyncSession, lease_factory, monkeypatch
    ):
        monkeypatch.setattr(settings, "mpesa_webhook_token", "hooktoken")
        lease = await lease_factory()
        payment = await _mpesa_payment(db_session, lease, checkout="ws_CO_CB")

        await client.post(
            "/api/v1/mpesa/stk/callback/hooktoken", json=_callback("ws_CO_CB", 0, amount="10")
        )

        stored = await _reload(db_session, payment.id)
        assert stored.status == PaymentStatus.PENDING.value
        assert stored.needs_review is True

    async def test_callback_with_wrong_token_is_not_found(
        self, client: AsyncClient, monkeypatch
    ):
        monkeypatch.setattr(settings, "mpesa_webhook_token", "hooktoken")
        response = await client.post(
            "/api/v1/mpesa/stk/callback/wrong", json=_callback("ws_CO_X", 1032)
        )
        assert response.status_code == 404

    async def test_connection_test_records_outcome(
        self, client: AsyncClient, db_session: AsyncSession, make_headers, monkeypatch
    ):
        monkeypatch.setattr(settings, "mpesa_consumer_key", "")

        response = await client.post(
            "/api/v1/mpesa/test-connection",
            headers=make_headers(Permission.BILLING_SETTINGS_UPDATE),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["ok"] is False
        assert data["status"].startswith("not configured")
        billing = await get_billing_settings(db_session, 1)
        assert billing.last_tested_at is not None

    async def test_connection_test_with_gateway(self, db_session: AsyncSession):
        service = ReconciliationService(db_session, _daraja(_result("0")))
        result = await service.test_connection(organization_id=1, actor_id=10)
        assert result.ok is True
        assert result.status == "ok"
