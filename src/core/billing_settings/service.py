"""Service for per-organization billing settings."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.billing_settings.models import (
    DEFAULT_AUTO_VERIFY_ENABLED,
    DEFAULT_FREQUENCY_SECONDS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_QUERY_TIMEOUT_SECONDS,
    BillingSettings,
)
from src.core.billing_settings.schemas import BillingSettingsUpdate
from src.core.database import insert_ignore, utcnow
from src.core.exceptions import ValidationError


# Stored status text is truncated to the column size
_STATUS_MAX_LEN = 255


async def get_billing_settings(db: AsyncSession, organization_id: int) -> BillingSettings:
    """Get the organization's settings row; seed it with defaults if missing."""
    row = await _select(db, organization_id)
    if row is None:
        # Two first readers may race here; the unique key keeps one row
        await insert_ignore(
            db,
            BillingSettings,
            {
                "organization_id": organization_id,
                "auto_verify_enabled": DEFAULT_AUTO_VERIFY_ENABLED,
                "auto_verify_frequency_seconds": DEFAULT_FREQUENCY_SECONDS,
                "max_retries": DEFAULT_MAX_RETRIES,
                "query_timeout_seconds": DEFAULT_QUERY_TIMEOUT_SECONDS,
            },
            conflict_columns=["organization_id"],
        )
        row = await _select(db, organization_id)
    return row


async def _select(db: AsyncSession, organization_id: int) -> BillingSettings | None:
    result = await db.execute(
        select(BillingSettings).where(BillingSettings.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


def validate_settings_update(data: BillingSettingsUpdate) -> dict:
    """Return the provided fields; ranges are enforced by the schema, nulls are rejected here."""
    update = data.model_dump(exclude_unset=True)
    for key, value in update.items():
        if value is None:
            raise ValidationError(f"{key} cannot be null", field=key)
    return update


async def update_billing_settings(
    db: AsyncSession,
    organization_id: int,
    data: BillingSettingsUpdate,
    updated_by: int,
) -> BillingSettings:
    """Update billing settings (only provided fields)."""
    update = validate_settings_update(data)
    row = await get_billing_settings(db, organization_id)
    old_values = {key: getattr(row, key) for key in update}
    for key, value in update.items():
        setattr(row, key, value)
    row.updated_by = updated_by
    await db.flush()

    await AuditService(db).log(
        action=AuditAction.UPDATE_SETTINGS,
        entity_type="BillingSettings",
        entity_id=row.id,
        user_id=updated_by,
        organization_id=organization_id,
        old_values=old_values,
        new_values=update,
    )
    await db.refresh(row)
    return row


async def record_connection_test(
    db: AsyncSession,
    organization_id: int,
    status: str,
) -> BillingSettings:
    """Store the outcome of a gateway connectivity test."""
    row = await get_billing_settings(db, organization_id)
    row.last_tested_at = utcnow()
    row.last_test_status = status[:_STATUS_MAX_LEN]
    await db.flush()
    await db.refresh(row)
    return row
