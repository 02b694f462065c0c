"""API endpoints for Payments module."""

from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import Principal, require_permission
from src.core.auth.permissions import Permission
from src.core.database.session import get_db
from src.modules.payments.allocation import PrepaymentService
from src.modules.payments.models import PaymentMethod, PaymentStatus
from src.modules.payments.schemas import (
    PaymentApprove,
    PaymentCreate,
    PaymentDecision,
    PaymentFilters,
    PaymentReject,
    PaymentResponse,
    PrepaymentPreview,
    PrepaymentPreviewRequest,
)
from src.modules.payments.service import PaymentService
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post(
    "",
    response_model=ApiResponse[PaymentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_payment(
    data: PaymentCreate,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.PAYMENT_CREATE)),
):
    """Record a pending payment for an invoice or a multi-month rent prepayment."""
    service = PaymentService(db)
    payment = await service.create_payment(data, principal.organization_id, principal.user_id)
    return ApiResponse(
        data=PaymentResponse.model_validate(payment),
        message="Payment recorded",
    )


@router.get(
    "",
    response_model=ApiResponse[PaginatedResponse[PaymentResponse]],
)
async def list_payments(
    lease_id: int | None = Query(None),
    invoice_id: int | None = Query(None),
    status: PaymentStatus | None = Query(None),
    payment_method: PaymentMethod | None = Query(None),
    needs_review: bool | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.PAYMENT_READ)),
):
    """List payments with filters; needs_review=true lists the manual review queue."""
    service = PaymentService(db)
    filters = PaymentFilters(
        lease_id=lease_id,
        invoice_id=invoice_id,
        status=status,
        payment_method=payment_method,
        needs_review=needs_review,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )
    payments, total = await service.list_payments(principal.organization_id, filters)
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[PaymentResponse.model_validate(p) for p in payments],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.post(
    "/prepayment-preview",
    response_model=ApiResponse[PrepaymentPreview],
)
async def preview_prepayment(
    data: PrepaymentPreviewRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.PAYMENT_CREATE)),
):
    """Show which months a payment would cover and whether the amount is exact."""
    preview = await PrepaymentService(db).preview(
        data.lease_id,
        data.amount_paid,
        data.months,
        today=date.today(),
        organization_id=principal.organization_id,
    )
    return ApiResponse(data=preview)


@router.get(
    "/{payment_id}",
    response_model=ApiResponse[PaymentResponse],
)
async def get_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.PAYMENT_READ)),
):
    """Get payment by ID."""
    service = PaymentService(db)
    payment = await service.get_payment_by_id(payment_id, principal.organization_id)
    return ApiResponse(data=PaymentResponse.model_validate(payment))


@router.post(
    "/{payment_id}/approve",
    response_model=ApiResponse[PaymentDecision],
)
async def approve_payment(
    payment_id: int,
    data: PaymentApprove | None = None,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.PAYMENT_VERIFY)),
):
    """Verify a pending payment and settle the invoice(s) it pays for."""
    service = PaymentService(db)
    decision = await service.approve_payment(
        payment_id,
        actor_id=principal.user_id,
        organization_id=principal.organization_id,
        notes=data.notes if data else None,
    )
    return ApiResponse(data=decision, message="Payment verified")


@router.post(
    "/{payment_id}/reject",
    response_model=ApiResponse[PaymentResponse],
)
async def reject_payment(
    payment_id: int,
    data: PaymentReject,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.PAYMENT_VERIFY)),
):
    """Fail a pending payment. A reason is required."""
    service = PaymentService(db)
    payment = await service.reject_payment(
        payment_id,
        actor_id=principal.user_id,
        organization_id=principal.organization_id,
        reason=data.reason,
    )
    return ApiResponse(data=PaymentResponse.model_validate(payment), message="Payment rejected")
