"""API endpoints for Invoices module."""

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import Principal, require_permission
from src.core.auth.permissions import Permission
from src.core.database.session import get_db
from src.modules.invoices.models import InvoiceStatus, InvoiceType
from src.modules.invoices.schemas import (
    InvoiceFilters,
    InvoiceResponse,
    LeaseBillingSummary,
    MonthlyGenerationRequest,
    MonthlyGenerationResult,
)
from src.modules.invoices.service import InvoiceService
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/invoices", tags=["Invoices"])


@router.get(
    "",
    response_model=ApiResponse[PaginatedResponse[InvoiceResponse]],
)
async def list_invoices(
    lease_id: int | None = Query(None),
    invoice_type: InvoiceType | None = Query(None),
    status: InvoiceStatus | None = Query(None),
    is_overdue: bool | None = Query(None),
    period_from: date | None = Query(None),
    period_to: date | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.INVOICE_READ)),
):
    """List the organization's invoices with filters."""
    service = InvoiceService(db)
    filters = InvoiceFilters(
        lease_id=lease_id,
        invoice_type=invoice_type,
        status=status,
        is_overdue=is_overdue,
        period_from=period_from,
        period_to=period_to,
        page=page,
        limit=limit,
    )
    invoices, total = await service.list_invoices(principal.organization_id, filters)
    return ApiResponse(
        success=True,
        data=PaginatedResponse.create(
            items=[InvoiceResponse.model_validate(i) for i in invoices],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.post(
    "/generate-monthly",
    response_model=ApiResponse[MonthlyGenerationResult],
)
async def generate_monthly_invoices(
    data: MonthlyGenerationRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.INVOICE_CREATE)),
):
    """Generate this month's rent invoices for the caller's organization. Safe to repeat."""
    service = InvoiceService(db)
    result = await service.generate_monthly_invoices(
        as_of=data.as_of or date.today(),
        organization_id=principal.organization_id,
        generated_by_id=principal.user_id,
    )
    return ApiResponse(
        success=True,
        message=f"{result.created} invoice(s) created",
        data=result,
    )


@router.get(
    "/leases/{lease_id}/summary",
    response_model=ApiResponse[LeaseBillingSummary],
)
async def get_lease_billing_summary(
    lease_id: int,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.INVOICE_READ)),
):
    """Next period due, unpaid invoices and total owed for a lease."""
    service = InvoiceService(db)
    summary = await service.get_lease_billing_summary(
        lease_id, principal.organization_id, today=date.today()
    )
    return ApiResponse(success=True, data=summary)


@router.get(
    "/{invoice_id}",
    response_model=ApiResponse[InvoiceResponse],
)
async def get_invoice(
    invoice_id: int,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.INVOICE_READ)),
):
    """Get invoice by ID."""
    service = InvoiceService(db)
    invoice = await service.get_invoice_by_id(invoice_id, principal.organization_id)
    return ApiResponse(success=True, data=InvoiceResponse.model_validate(invoice))
