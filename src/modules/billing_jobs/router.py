"""Job trigger endpoints for an external cron, guarded by the shared cron secret."""

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import require_cron_secret
from src.core.database.session import get_db
from src.integrations.mpesa.schemas import ReconciliationResult
from src.modules.billing_jobs.schemas import MonthlyRunResult
from src.modules.billing_jobs.service import BillingJobRunner
from src.modules.invoices.schemas import OverdueResult
from src.modules.reminders.schemas import ReminderRunResult
from src.shared.schemas.base import ApiResponse

router = APIRouter(
    prefix="/cron",
    tags=["Billing Jobs"],
    dependencies=[Depends(require_cron_secret)],
)


@router.post("/invoices-monthly", response_model=ApiResponse[MonthlyRunResult])
async def cron_invoices_monthly(
    as_of: date | None = Query(None),
    organization_id: int | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Generate this month's invoices, mark overdue ones, then send today's reminders."""
    result = await BillingJobRunner(db).run_monthly(as_of, organization_id)
    return ApiResponse(data=result, message="Monthly billing run completed")


@router.post("/overdue", response_model=ApiResponse[OverdueResult])
async def cron_overdue(
    as_of: date | None = Query(None),
    organization_id: int | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    result = await BillingJobRunner(db).mark_overdue(as_of, organization_id)
    return ApiResponse(data=result)


@router.post("/reminders", response_model=ApiResponse[ReminderRunResult])
async def cron_reminders(
    day: int | None = Query(None, ge=1, le=31),
    as_of: date | None = Query(None),
    organization_id: int | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    result = await BillingJobRunner(db).send_reminders(day, as_of, organization_id)
    return ApiResponse(data=result, message=f"{result.reminders_sent} reminder(s) sent")


@router.post("/mpesa-auto-verify", response_model=ApiResponse[ReconciliationResult])
async def cron_mpesa_auto_verify(
    organization_id: int | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    result = await BillingJobRunner(db).auto_verify_mpesa(organization_id)
    return ApiResponse(data=result)
