from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class StkCallbackItem(BaseModel):
    Name: str
    Value: Any = None


class StkCallbackMetadata(BaseModel):
    Item: list[StkCallbackItem] = Field(default_factory=list)


class StkCallback(BaseModel):
    MerchantRequestID: str | None = None
    CheckoutRequestID: str = Field(..., min_length=1, max_length=100)
    ResultCode: int
    ResultDesc: str | None = None
    CallbackMetadata: StkCallbackMetadata | None = None

    def metadata_value(self, name: str) -> Any:
        if not self.CallbackMetadata:
            return None
        for item in self.CallbackMetadata.Item:
            if item.Name == name:
                return item.Value
        return None


class StkCallbackBody(BaseModel):
    stkCallback: StkCallback


class StkCallbackPayload(BaseModel):
    """Safaricom STK push result callback."""

    Body: StkCallbackBody


class MpesaCallbackResponse(BaseModel):
    ResultCode: int
    ResultDesc: str


class ReconciliationResult(BaseModel):
    """Counts from one auto-verification cycle."""

    organizations: int = 0
    organizations_disabled: int = 0
    checked: int = 0
    verified: int = 0
    failed: int = 0
    pending: int = 0
    flagged_for_review: int = 0
    skipped: int = 0
    errors: int = 0


class VerificationAuditResponse(BaseModel):
    id: int
    payment_id: int
    source: str
    checkout_request_id: str | None
    result_code: str | None
    result_description: str | None
    transaction_status: str | None
    error_message: str | None
    queried_at: datetime

    model_config = {"from_attributes": True}
