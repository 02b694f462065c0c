"""Billing settings model: one row per organization, read by the payment reconciler."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import BaseModel, BigIntPK

DEFAULT_AUTO_VERIFY_ENABLED = True
DEFAULT_FREQUENCY_SECONDS = 30
DEFAULT_MAX_RETRIES = 3
DEFAULT_QUERY_TIMEOUT_SECONDS = 30

# (min, max) inclusive, enforced on every write
FREQUENCY_BOUNDS = (15, 300)
MAX_RETRIES_BOUNDS = (1, 6)
QUERY_TIMEOUT_BOUNDS = (15, 120)


class BillingSettings(BaseModel):
    """Auto-verification policy for one organization's mobile-money payments."""

    __tablename__ = "billing_settings"
    __table_args__ = (
        UniqueConstraint("organization_id", name="uq_billing_settings_organization"),
    )

    organization_id: Mapped[int] = mapped_column(BigIntPK, nullable=False)
    auto_verify_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=DEFAULT_AUTO_VERIFY_ENABLED
    )
    auto_verify_frequency_seconds: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_FREQUENCY_SECONDS
    )
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_MAX_RETRIES)
    query_timeout_seconds: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_QUERY_TIMEOUT_SECONDS
    )
    last_tested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_test_status: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_by: Mapped[int | None] = mapped_column(BigIntPK, nullable=True)
