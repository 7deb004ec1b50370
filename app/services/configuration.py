import asyncio
import math
from typing import Awaitable, List, Optional, Tuple
from app.core.errors import ConflictError, OnboardingError
from app.core.logging_config import logger
from app.schemas.onboarding import (
    ConfigurationReport,
    CoreHours,
    DayHours,
    OptionalSetupRequest,
    StaffDraftRow,
)
from app.services.backend_gateway import BackendGateway
from app.services.staff_drafts import normalize_rows

EMPLOYEE_NUMBER_BASE = 1000


def uniform_hours(open_time: str, close_time: str) -> List[DayHours]:
    """Same hours for all seven days, Sunday first."""
    return [
        DayHours(day_of_week=day, open_time=open_time, close_time=close_time, enabled=True)
        for day in range(7)
    ]


def parse_hourly_pay(raw: str) -> Optional[float]:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value


class ConfigurationBatch:
    """
    Best-effort save of the optional setup details.

    Each part is issued independently and a failure never blocks the
    others. There is no rollback: partial success is an accepted outcome.
    """

    async def save_all(
        self,
        gateway: BackendGateway,
        organization_id: str,
        data: OptionalSetupRequest
    ) -> ConfigurationReport:
        """
        Save week start, operating hours, core hours and staff accounts.

        Args:
            gateway: Backend gateway bound to the current user
            organization_id: Organization created in step 1
            data: Step 2 form

        Returns:
            Report listing the parts that succeeded and failed
        """
        jobs: List[Tuple[str, Awaitable[None]]] = [
            ("week_start", gateway.save_schedule_view_settings(organization_id, data.week_start_day)),
        ]
        if data.hours:
            jobs.append(("hours", gateway.save_business_hours(organization_id, data.hours)))
        if data.core_hours:
            jobs.append(("core_hours", self._save_core_hours(gateway, organization_id, data.core_hours)))

        results = await asyncio.gather(*(job for _, job in jobs), return_exceptions=True)

        report = ConfigurationReport()
        for (name, _), result in zip(jobs, results):
            if isinstance(result, BaseException):
                logger.warning(f"Setup save '{name}' failed for organization {organization_id}: {result}")
                report.failed.append(name)
            else:
                report.succeeded.append(name)

        staff_succeeded, staff_failed = await self.create_staff_accounts(
            gateway, organization_id, data.staff_drafts
        )
        report.succeeded.extend(staff_succeeded)
        report.failed.extend(staff_failed)

        logger.info(
            f"Setup batch for organization {organization_id}: "
            f"succeeded={report.succeeded}, failed={report.failed}"
        )
        return report

    async def _save_core_hours(self, gateway: BackendGateway, organization_id: str, core_hours: CoreHours) -> None:
        await gateway.save_core_hours(
            organization_id,
            uniform_hours(core_hours.open_time, core_hours.close_time),
        )

    async def create_staff_accounts(
        self,
        gateway: BackendGateway,
        organization_id: str,
        rows: List[StaffDraftRow]
    ) -> Tuple[List[str], List[str]]:
        """
        Create accounts for staff rows that have an email.

        Rows without an email stay in the draft snapshot only. An account
        that already exists counts as created.

        Returns:
            (succeeded, failed) lists of "staff:<email>" entries
        """
        succeeded, failed = [], []
        rows_with_email = [row for row in normalize_rows(rows) if row.email and row.role]

        for row in rows_with_email:
            label = f"staff:{row.email}"
            try:
                await gateway.create_staff_account(
                    organization_id,
                    full_name=row.name,
                    email=row.email,
                    role=row.role,
                    employee_number=EMPLOYEE_NUMBER_BASE + len(succeeded) + 1,
                    hourly_pay=parse_hourly_pay(row.hourly_pay),
                )
                succeeded.append(label)
            except ConflictError:
                logger.info(f"Staff account {row.email} already exists; treating as created")
                succeeded.append(label)
            except OnboardingError as e:
                logger.warning(f"Could not create staff account {row.email}: {e.message}")
                failed.append(label)

        return succeeded, failed


# Create singleton instance
configuration_batch = ConfigurationBatch()
