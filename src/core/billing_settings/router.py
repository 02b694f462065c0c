"""API for per-organization billing settings."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import Principal, require_permission
from src.core.auth.permissions import Permission
from src.core.billing_settings.schemas import BillingSettingsResponse, BillingSettingsUpdate
from src.core.billing_settings.service import get_billing_settings, update_billing_settings
from src.core.database.session import get_db
from src.shared.schemas.base import ApiResponse

router = APIRouter(prefix="/billing-settings", tags=["Billing Settings"])


@router.get("", response_model=ApiResponse[BillingSettingsResponse])
async def get_settings(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.BILLING_SETTINGS_READ)),
):
    """Get the caller's organization settings (seeded with defaults on first read)."""
    row = await get_billing_settings(db, principal.organization_id)
    await db.commit()
    return ApiResponse(success=True, data=BillingSettingsResponse.model_validate(row))


@router.put("", response_model=ApiResponse[BillingSettingsResponse])
async def put_settings(
    data: BillingSettingsUpdate,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.BILLING_SETTINGS_UPDATE)),
):
    """Update auto-verification policy; out-of-range values are rejected with 400."""
    row = await update_billing_settings(db, principal.organization_id, data, principal.user_id)
    await db.commit()
    return ApiResponse(
        success=True,
        message="Billing settings updated",
        data=BillingSettingsResponse.model_validate(row),
    )
