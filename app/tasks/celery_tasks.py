"""
Payroll Engine - Celery Tasks

Background payroll processing and the statutory deadline schedule.
"""

import asyncio
import logging
from datetime import date
from typing import Any, Dict, Optional
from uuid import UUID

from celery import shared_task

from app.config import settings
from app.database import async_session_factory

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper to run async functions in Celery tasks."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _repository():
    from app.services.payroll_repository import SqlAlchemyPayrollRepository
    return SqlAlchemyPayrollRepository(async_session_factory)


def previous_period(today: date):
    """Month and year of the month before ``today``."""
    if today.month == 1:
        return 12, today.year - 1
    return today.month - 1, today.year


# ===========================================
# PAYROLL TASKS
# ===========================================

@shared_task(name='app.tasks.celery_tasks.process_payroll_run_task')
def process_payroll_run_task(run_id: str) -> Dict[str, Any]:
    """Process a PENDING payroll run created through the API."""
    return run_async(_process_payroll_run(UUID(run_id)))


async def _process_payroll_run(run_id: UUID) -> Dict[str, Any]:
    from app.services.payroll_service import PayrollRunService

    service = PayrollRunService.from_settings(_repository(), settings)
    summary = await service.process_run(run_id)
    logger.info(f"Background run {run_id} finished: {summary.success}/{summary.total} succeeded")
    return summary.model_dump(mode="json")


# ===========================================
# STATUTORY DEADLINE TASKS
# ===========================================

@shared_task(name='app.tasks.celery_tasks.generate_statutory_deadlines_task')
def generate_statutory_deadlines_task(month: Optional[int] = None, year: Optional[int] = None) -> Dict[str, Any]:
    """Generate deadlines for a period, by default the month just closed."""
    return run_async(_generate_statutory_deadlines(month, year))


async def _generate_statutory_deadlines(month: Optional[int], year: Optional[int]) -> Dict[str, Any]:
    from app.services.deadline_service import DeadlineService

    if month is None or year is None:
        month, year = previous_period(date.today())
    deadlines = await DeadlineService(_repository()).generate_deadlines(month, year)
    return {"month": month, "year": year, "deadlines": len(deadlines)}


@shared_task(name='app.tasks.celery_tasks.check_statutory_deadline_alerts_task')
def check_statutory_deadline_alerts_task() -> Dict[str, Any]:
    """Send due and overdue alerts for open statutory deadlines."""
    return run_async(_check_statutory_deadline_alerts())


async def _check_statutory_deadline_alerts() -> Dict[str, Any]:
    from app.services.deadline_service import DeadlineService

    result = await DeadlineService(_repository()).check_alerts(date.today())
    return result.model_dump()
