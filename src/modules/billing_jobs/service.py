"""Entry points for the scheduled billing jobs, shared by the cron API, the CLI and the scheduler."""

import logging
from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.integrations.mpesa.client import DarajaClient
from src.integrations.mpesa.schemas import ReconciliationResult
from src.integrations.mpesa.service import ReconciliationService
from src.integrations.notifications.dispatcher import NotificationDispatcher
from src.modules.billing_jobs.schemas import MonthlyRunResult
from src.modules.invoices.schemas import MonthlyGenerationResult, OverdueResult
from src.modules.invoices.service import InvoiceService
from src.modules.reminders.schemas import ReminderRunResult
from src.modules.reminders.service import ReminderService

logger = logging.getLogger(__name__)


class BillingJobRunner:
    """Each job is a short batch; re-running any of them for the same day converges."""

    def __init__(
        self,
        db: AsyncSession,
        dispatcher: NotificationDispatcher | None = None,
        gateway: DarajaClient | None = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.gateway = gateway

    async def run_monthly(
        self, as_of: date | None = None, organization_id: int | None = None
    ) -> MonthlyRunResult:
        as_of = as_of or date.today()
        invoices = await self.generate_invoices(as_of, organization_id)
        overdue = await self.mark_overdue(as_of, organization_id)
        reminders = await self.send_reminders(as_of.day, as_of, organization_id)
        return MonthlyRunResult(
            as_of=as_of, invoices=invoices, overdue=overdue, reminders=reminders
        )

    async def generate_invoices(
        self, as_of: date | None = None, organization_id: int | None = None
    ) -> MonthlyGenerationResult:
        return await InvoiceService(self.db).generate_monthly_invoices(
            as_of or date.today(),
            organization_id=organization_id,
            generated_by_id=settings.system_user_id,
        )

    async def mark_overdue(
        self, today: date | None = None, organization_id: int | None = None
    ) -> OverdueResult:
        return await InvoiceService(self.db).mark_overdue(
            today or date.today(), organization_id=organization_id
        )

    async def send_reminders(
        self,
        day_of_month: int | None = None,
        today: date | None = None,
        organization_id: int | None = None,
    ) -> ReminderRunResult:
        today = today or date.today()
        return await ReminderService(self.db, self.dispatcher).send_reminders_for_day(
            day_of_month or today.day, today=today, organization_id=organization_id
        )

    async def auto_verify_mpesa(self, organization_id: int | None = None) -> ReconciliationResult:
        service = ReconciliationService(self.db, client=self.gateway, dispatcher=self.dispatcher)
        return await service.run_cycle(organization_id=organization_id)


JOBS = ("invoices-monthly", "generate-invoices", "overdue", "reminders", "mpesa-auto-verify")


async def run_job(
    db: AsyncSession,
    job: str,
    as_of: date | None = None,
    day: int | None = None,
    organization_id: int | None = None,
):
    """Dispatch a job by its trigger name."""
    runner = BillingJobRunner(db)
    logger.info("Running billing job %s (as_of=%s day=%s org=%s)", job, as_of, day, organization_id)
    if job == "invoices-monthly":
        return await runner.run_monthly(as_of, organization_id)
    if job == "generate-invoices":
        return await runner.generate_invoices(as_of, organization_id)
    if job == "overdue":
        return await runner.mark_overdue(as_of, organization_id)
    if job == "reminders":
        return await runner.send_reminders(day, as_of, organization_id)
    if job == "mpesa-auto-verify":
        return await runner.auto_verify_mpesa(organization_id)
    raise ValueError(f"Unknown job: {job}")
