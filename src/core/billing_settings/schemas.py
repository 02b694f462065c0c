"""Schemas for billing settings."""

from datetime import datetime

from pydantic import BaseModel, Field

from src.core.billing_settings.models import (
    FREQUENCY_BOUNDS,
    MAX_RETRIES_BOUNDS,
    QUERY_TIMEOUT_BOUNDS,
)


class BillingSettingsUpdate(BaseModel):
    """Update billing settings (all optional)."""

    auto_verify_enabled: bool | None = None
    auto_verify_frequency_seconds: int | None = Field(
        None, ge=FREQUENCY_BOUNDS[0], le=FREQUENCY_BOUNDS[1]
    )
    max_retries: int | None = Field(None, ge=MAX_RETRIES_BOUNDS[0], le=MAX_RETRIES_BOUNDS[1])
    query_timeout_seconds: int | None = Field(
        None, ge=QUERY_TIMEOUT_BOUNDS[0], le=QUERY_TIMEOUT_BOUNDS[1]
    )


class BillingSettingsResponse(BaseModel):
    """Billing settings for API response."""

    id: int
    organization_id: int
    auto_verify_enabled: bool
    auto_verify_frequency_seconds: int
    max_retries: int
    query_timeout_seconds: int
    last_tested_at: datetime | None = None
    last_test_status: str | None = None
    updated_by: int | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class ConnectionTestResult(BaseModel):
    """Outcome of a gateway connectivity test."""

    ok: bool
    status: str
    tested_at: datetime
