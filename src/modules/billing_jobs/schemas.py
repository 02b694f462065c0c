from datetime import date

from pydantic import BaseModel

from src.modules.invoices.schemas import MonthlyGenerationResult, OverdueResult
from src.modules.reminders.schemas import ReminderRunResult


class MonthlyRunResult(BaseModel):
    """Generate, then mark overdue, then remind, for one billing day."""

    as_of: date
    invoices: MonthlyGenerationResult
    overdue: OverdueResult
    reminders: ReminderRunResult
