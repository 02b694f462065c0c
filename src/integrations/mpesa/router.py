from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import Principal, require_permission
from src.core.auth.permissions import Permission
from src.core.billing_settings.schemas import ConnectionTestResult
from src.core.database.session import get_db
from src.integrations.mpesa.schemas import MpesaCallbackResponse, StkCallbackPayload
from src.integrations.mpesa.service import ReconciliationService
from src.shared.schemas.base import ApiResponse


router = APIRouter(prefix="/mpesa", tags=["M-Pesa"])


@router.post("/stk/callback/{token}", response_model=MpesaCallbackResponse)
async def mpesa_stk_callback(
    token: str,
    payload: StkCallbackPayload,
    db: AsyncSession = Depends(get_db),
):
    service = ReconciliationService(db)
    if not service.verify_webhook_token(token):
        # Avoid exposing endpoint existence when token isn't configured/mismatched.
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

    matched = await service.process_stk_callback(payload)
    # Safaricom retries anything but an accepted answer; unmatched callbacks are only logged.
    if matched:
        return MpesaCallbackResponse(ResultCode=0, ResultDesc="Accepted")
    return MpesaCallbackResponse(ResultCode=0, ResultDesc="Accepted (unmatched)")


@router.post("/test-connection", response_model=ApiResponse[ConnectionTestResult])
async def test_mpesa_connection(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.BILLING_SETTINGS_UPDATE)),
):
    """Check Daraja credentials and record the outcome on the billing settings."""
    result = await ReconciliationService(db).test_connection(
        principal.organization_id, principal.user_id
    )
    return ApiResponse(
        data=result,
        message="Connection OK" if result.ok else "Connection failed",
    )
