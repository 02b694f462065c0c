"""M-Pesa auto-verification: polls Daraja for pending STK payments and decides them."""

import logging
import secrets
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.billing_settings.models import BillingSettings
from src.core.billing_settings.schemas import ConnectionTestResult
from src.core.billing_settings.service import get_billing_settings, record_connection_test
from src.core.config import settings
from src.core.database import utcnow
from src.core.exceptions import (
    AllocationIncompleteError,
    AppException,
    ConfigurationError,
    ExternalServiceError,
)
from src.integrations.mpesa.client import (
    DarajaClient,
    GatewayStatus,
    TransactionStatusResult,
    classify_result_code,
)
from src.integrations.mpesa.models import MpesaVerificationAudit
from src.integrations.mpesa.schemas import ReconciliationResult, StkCallbackPayload
from src.integrations.notifications.dispatcher import NotificationDispatcher
from src.modules.payments.models import Payment, PaymentMethod, PaymentStatus
from src.modules.payments.service import PaymentService, append_note
from src.shared.utils.money import amounts_match

logger = logging.getLogger(__name__)

_GATEWAY_STATUS_MAX_LEN = 255


class ReconciliationService:
    """
    Resolve pending M-Pesa payments against the gateway.

    Every payment decision goes through PaymentService, the same path used
    for manual approval. Ambiguous gateway answers (timeouts, "still
    processing", unknown codes) only consume a retry; once retries run out
    the payment stays pending and is flagged for manual review.
    """

    def __init__(
        self,
        db: AsyncSession,
        client: DarajaClient | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ):
        self.db = db
        self.audit = AuditService(db)
        self._client = client
        self.dispatcher = dispatcher

    @property
    def client(self) -> DarajaClient:
        if self._client is None:
            self._client = DarajaClient.from_settings()
        return self._client

    def verify_webhook_token(self, token: str) -> bool:
        expected = settings.mpesa_webhook_token
        if not expected:
            return False
        return secrets.compare_digest(token, expected)

    def _payments(self) -> PaymentService:
        return PaymentService(self.db, self.dispatcher)

    # --- Polling cycle ---

    async def run_cycle(
        self, organization_id: int | None = None, now: datetime | None = None
    ) -> ReconciliationResult:
        """Run one auto-verification pass over every organization with eligible payments."""
        if self._client is None and not settings.mpesa_configured:
            raise ConfigurationError("M-Pesa credentials are not configured")

        now = now or utcnow()
        result = ReconciliationResult()

        if organization_id is not None:
            org_ids = [organization_id]
        else:
            org_ids = await self._organizations_with_pending()

        for org_id in org_ids:
            billing = await get_billing_settings(self.db, org_id)
            await self.db.commit()
            result.organizations += 1
            if not billing.auto_verify_enabled:
                result.organizations_disabled += 1
                continue
            await self._run_for_organization(billing, now, result)

        logger.info(
            "M-Pesa auto-verify: checked=%s verified=%s failed=%s pending=%s review=%s errors=%s",
            result.checked,
            result.verified,
            result.failed,
            result.pending,
            result.flagged_for_review,
            result.errors,
        )
        return result

    async def _organizations_with_pending(self) -> list[int]:
        rows = await self.db.execute(
            select(Payment.organization_id)
            .where(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.payment_method == PaymentMethod.MPESA.value,
                Payment.needs_review.is_(False),
                Payment.checkout_request_id.is_not(None),
            )
            .distinct()
            .order_by(Payment.organization_id)
        )
        return [row[0] for row in rows.all()]

    def _eligible_query(self, billing: BillingSettings, now: datetime):
        check_threshold = now - timedelta(seconds=billing.auto_verify_frequency_seconds)
        created_before = now - timedelta(seconds=settings.reconcile_min_age_seconds)
        return (
            select(Payment)
            .where(
                Payment.organization_id == billing.organization_id,
                Payment.status == PaymentStatus.PENDING.value,
                Payment.payment_method == PaymentMethod.MPESA.value,
                Payment.needs_review.is_(False),
                Payment.checkout_request_id.is_not(None),
                Payment.retry_count < billing.max_retries,
                Payment.created_at <= created_before,
                or_(
                    Payment.last_status_check.is_(None),
                    Payment.last_status_check <= check_threshold,
                ),
            )
            .order_by(Payment.created_at, Payment.id)
            .limit(settings.reconcile_batch_size)
        )

    async def _flag_exhausted(self, billing: BillingSettings, result: ReconciliationResult) -> None:
        """Flag payments whose retry budget is already spent, e.g. after max_retries was lowered."""
        rows = await self.db.execute(
            select(Payment)
            .where(
                Payment.organization_id == billing.organization_id,
                Payment.status == PaymentStatus.PENDING.value,
                Payment.payment_method == PaymentMethod.MPESA.value,
                Payment.needs_review.is_(False),
                Payment.checkout_request_id.is_not(None),
                Payment.retry_count >= billing.max_retries,
            )
            .order_by(Payment.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        for payment in rows.scalars().all():
            await self._flag_for_review(
                payment,
                f"Auto-verification stopped: {payment.retry_count} attempts used, "
                f"limit is {billing.max_retries}",
            )
            result.flagged_for_review += 1
        await self.db.commit()

    async def _run_for_organization(
        self, billing: BillingSettings, now: datetime, result: ReconciliationResult
    ) -> None:
        await self._flag_exhausted(billing, result)
        payments = list((await self.db.execute(self._eligible_query(billing, now))).scalars().all())
        last_error: str | None = None
        reached_gateway = False

        for payment in payments:
            if not await self._claim(payment.id, billing, now):
                result.skipped += 1
                continue
            result.checked += 1

            try:
                status = await self.client.query_stk_status(
                    payment.checkout_request_id, timeout=billing.query_timeout_seconds
                )
            except ExternalServiceError as exc:
                result.errors += 1
                last_error = exc.message
                logger.warning("Status query for payment %s failed: %s", payment.id, exc.message)
                self._record_query(payment, source="query", error=exc.message)
                outcome = await self._consume_retry(payment.id, exc.message, billing.max_retries)
                _count(result, outcome)
                continue

            reached_gateway = True
            self._record_query(payment, source="query", status=status)
            await self.db.commit()

            outcome = await self.apply_gateway_result(payment.id, status, now.date())
            if outcome == "pending":
                outcome = await self._consume_retry(
                    payment.id, status.description or "pending", billing.max_retries
                )
            _count(result, outcome)

        # Connectivity is recorded for operators; it never blocks the next cycle
        if last_error is not None:
            await record_connection_test(self.db, billing.organization_id, f"failed: {last_error}")
            await self.db.commit()
        elif reached_gateway:
            await record_connection_test(self.db, billing.organization_id, "ok")
            await self.db.commit()

    async def _claim(self, payment_id: int, billing: BillingSettings, now: datetime) -> bool:
        """Stamp last_status_check; a concurrent cycle that already stamped it wins."""
        threshold = now - timedelta(seconds=billing.auto_verify_frequency_seconds)
        claimed = await self.db.execute(
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status == PaymentStatus.PENDING.value,
                or_(
                    Payment.last_status_check.is_(None),
                    Payment.last_status_check <= threshold,
                ),
            )
            .values(last_status_check=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return claimed.rowcount == 1

    async def _reload(self, payment_id: int) -> Payment:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def _consume_retry(self, payment_id: int, reason: str, max_retries: int) -> str:
        payment = await self._reload(payment_id)
        if not payment.is_pending:
            await self.db.commit()
            return "skipped"

        payment.retry_count += 1
        payment.gateway_status = reason[:_GATEWAY_STATUS_MAX_LEN]
        if payment.retry_count < max_retries:
            await self.db.commit()
            return "pending"

        await self._flag_for_review(
            payment, f"Auto-verification stopped after {payment.retry_count} attempts: {reason}"
        )
        await self.db.commit()
        return "review"

    async def _flag_for_review(self, payment: Payment, reason: str) -> None:
        payment.needs_review = True
        payment.notes = append_note(payment.notes, reason)
        await self.audit.log(
            action=AuditAction.FLAG_PAYMENT_REVIEW,
            entity_type="Payment",
            entity_id=payment.id,
            user_id=settings.system_user_id,
            organization_id=payment.organization_id,
            new_values={"needs_review": True, "retry_count": payment.retry_count},
            comment=reason,
        )
        logger.warning("Payment %s flagged for review: %s", payment.id, reason)

    def _record_query(
        self,
        payment: Payment,
        source: str,
        status: TransactionStatusResult | None = None,
        error: str | None = None,
    ) -> None:
        self.db.add(
            MpesaVerificationAudit(
                organization_id=payment.organization_id,
                payment_id=payment.id,
                source=source,
                checkout_request_id=payment.checkout_request_id,
                result_code=status.result_code if status else None,
                result_description=status.description if status else None,
                transaction_status=status.status.value if status else None,
                error_message=error,
                raw_response=status.raw if status else None,
            )
        )

    # --- Decisions ---

    async def apply_gateway_result(
        self, payment_id: int, status: TransactionStatusResult, today: date
    ) -> str:
        """
        Act on a definitive gateway answer.

        Returns "verified", "failed", "review", "skipped" (already decided
        elsewhere) or "pending" when the answer was not definitive.
        """
        payment = await self._reload(payment_id)
        if not payment.is_pending:
            await self.db.commit()
            logger.info("Payment %s already %s; gateway result ignored", payment.id, payment.status)
            return "skipped"

        if status.status == GatewayStatus.PENDING:
            await self.db.commit()
            return "pending"

        if status.status == GatewayStatus.FAILED:
            await self._payments().reject_payment(
                payment.id,
                actor_id=settings.system_user_id,
                organization_id=payment.organization_id,
                reason=f"M-Pesa: {status.description or 'transaction failed'} (code {status.result_code})",
            )
            return "failed"

        await self.db.commit()
        try:
            await self._payments().approve_payment(
                payment.id,
                actor_id=settings.system_user_id,
                organization_id=payment.organization_id,
                notes="Auto-verified via M-Pesa status query",
                today=today,
                receipt=status.receipt,
                auto_verified=True,
            )
        except AllocationIncompleteError:
            # Already flagged and committed by the payment service
            return "review"
        except AppException as exc:
            await self.db.rollback()
            payment = await self._reload(payment_id)
            if payment.is_pending:
                await self._flag_for_review(
                    payment, f"Gateway reported success but approval failed: {exc.message}"
                )
            await self.db.commit()
            return "review"
        return "verified"

    async def process_stk_callback(self, payload: StkCallbackPayload) -> bool:
        """Apply an STK push result callback. Returns False when no payment matches."""
        callback = payload.Body.stkCallback
        result = await self.db.execute(
            select(Payment).where(Payment.checkout_request_id == callback.CheckoutRequestID)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            logger.warning("STK callback for unknown checkout %s", callback.CheckoutRequestID)
            return False

        status = TransactionStatusResult(
            status=classify_result_code(callback.ResultCode),
            result_code=str(callback.ResultCode),
            description=callback.ResultDesc,
            receipt=callback.metadata_value("MpesaReceiptNumber"),
            raw=payload.model_dump(mode="json"),
        )
        self._record_query(payment, source="callback", status=status)
        await self.db.commit()

        amount = callback.metadata_value("Amount")
        if (
            status.status == GatewayStatus.COMPLETED
            and amount is not None
            and not amounts_match(Decimal(str(amount)), payment.amount_paid)
        ):
            payment = await self._reload(payment.id)
            if payment.is_pending:
                await self._flag_for_review(
                    payment, f"M-Pesa callback amount {amount} differs from {payment.amount_paid}"
                )
            await self.db.commit()
            return True

        outcome = await self.apply_gateway_result(payment.id, status, utcnow().date())
        if outcome == "pending":
            payment = await self._reload(payment.id)
            payment.gateway_status = (status.description or "pending")[:_GATEWAY_STATUS_MAX_LEN]
            await self.db.commit()
        return True

    # --- Connectivity ---

    async def test_connection(self, organization_id: int, actor_id: int) -> ConnectionTestResult:
        """Fetch an OAuth token and store the outcome on the organization's settings."""
        billing = await get_billing_settings(self.db, organization_id)
        try:
            await self.client.get_access_token(timeout=billing.query_timeout_seconds)
            ok, status = True, "ok"
        except ConfigurationError as exc:
            ok, status = False, f"not configured: {exc.message}"
        except ExternalServiceError as exc:
            ok, status = False, f"failed: {exc.message}"

        row = await record_connection_test(self.db, organization_id, status)
        await self.audit.log(
            action=AuditAction.TEST_CONNECTION,
            entity_type="BillingSettings",
            entity_id=row.id,
            user_id=actor_id,
            organization_id=organization_id,
            new_values={"ok": ok, "status": row.last_test_status},
        )
        await self.db.commit()
        return ConnectionTestResult(ok=ok, status=row.last_test_status, tested_at=row.last_tested_at)


def _count(result: ReconciliationResult, outcome: str) -> None:
    if outcome == "verified":
        result.verified += 1
    elif outcome == "failed":
        result.failed += 1
    elif outcome == "review":
        result.flagged_for_review += 1
    elif outcome == "pending":
        result.pending += 1
    else:
        result.skipped += 1
