from enum import StrEnum


class Permission(StrEnum):
    """Actions the identity service may grant in a token's ``perms`` claim."""

    INVOICE_CREATE = "invoice:create"
    INVOICE_READ = "invoice:read"
    PAYMENT_CREATE = "payment:create"
    PAYMENT_READ = "payment:read"
    PAYMENT_VERIFY = "payment:verify"
    BILLING_SETTINGS_READ = "billing_settings:read"
    BILLING_SETTINGS_UPDATE = "billing_settings:update"
    REMINDER_READ = "reminder:read"
