"""Tenant-facing message templates."""

from datetime import date

from src.shared.utils.money import format_kes

PAYMENT_CONFIRMED = "payment_confirmed"

PAYMENT_METHOD_LABELS = {
    "mpesa": "M-Pesa",
    "card": "card",
    "bank": "bank transfer",
    "cash": "cash",
    "internal": "internal transfer",
}


def render_payment_confirmed(
    amount, payment_method: str, receipt: str | None, paid_through: date | None
) -> str:
    method = PAYMENT_METHOD_LABELS.get(payment_method, payment_method)
    parts = [f"Payment of {format_kes(amount)} via {method} confirmed."]
    if receipt:
        parts.append(f"Receipt: {receipt}.")
    if paid_through:
        parts.append(f"Rent is paid through {paid_through.strftime('%B %Y')}.")
    return " ".join(parts)


RENT_STAGE_TEMPLATES = {
    "rent_stage_1": "Reminder: Your rent for {period_label} is due on {due_date}. Amount: {amount}.",
    "rent_stage_2": "Rent reminder: Please pay {amount} by {due_date} for {period_label}.",
    "rent_stage_3": "Your rent of {amount} for {period_label} was due on {due_date}. Please pay now.",
    "rent_stage_4": "Urgent: Your rent is 7 days overdue. Amount: {amount}. Please pay immediately.",
    "rent_stage_5": (
        "Critical notice: rent of {amount} for {period_label} is 30 days overdue. "
        "Please contact management urgently."
    ),
}


def render_rent_stage(template_key: str, amount, due_date: date, period_start: date) -> str:
    return RENT_STAGE_TEMPLATES[template_key].format(
        amount=format_kes(amount),
        due_date=due_date.strftime("%b %d, %Y"),
        period_label=period_start.strftime("%B %Y"),
    )
