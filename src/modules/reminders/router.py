"""API endpoints for Reminders module."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import Principal, require_cron_secret, require_permission
from src.core.auth.permissions import Permission
from src.core.database.session import get_db
from src.modules.reminders.models import DeliveryStatus
from src.modules.reminders.schemas import DeliveryReport, ReminderFilters, ReminderResponse
from src.modules.reminders.service import ReminderService
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/reminders", tags=["Reminders"])


@router.get(
    "",
    response_model=ApiResponse[PaginatedResponse[ReminderResponse]],
)
async def list_reminders(
    lease_id: int | None = Query(None),
    invoice_id: int | None = Query(None),
    stage: int | None = Query(None, ge=1, le=5),
    delivery_status: DeliveryStatus | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.REMINDER_READ)),
):
    """List reminder records for the organization."""
    filters = ReminderFilters(
        lease_id=lease_id,
        invoice_id=invoice_id,
        stage=stage,
        delivery_status=delivery_status,
        page=page,
        limit=limit,
    )
    records, total = await ReminderService(db).list_reminders(principal.organization_id, filters)
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[ReminderResponse.model_validate(r) for r in records],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.post(
    "/delivery-reports",
    response_model=ApiResponse[ReminderResponse],
    dependencies=[Depends(require_cron_secret)],
)
async def post_delivery_report(
    report: DeliveryReport,
    db: AsyncSession = Depends(get_db),
):
    """Delivery report from the messaging service (shared-secret guarded)."""
    record = await ReminderService(db).record_delivery_report(report)
    return ApiResponse(data=ReminderResponse.model_validate(record))
