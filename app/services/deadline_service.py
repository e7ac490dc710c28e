"""
Payroll Engine - Statutory Deadline Service

Due-date rules:
- PF payment and ECR return: 15th of the following month
- ESI payment: 15th of the following month
- TDS deposit: 7th of the following month
- Professional Tax: 20th of the following month
- TDS return (Form 24Q): quarterly; Q1 Jul 31, Q2 Oct 31, Q3 Jan 31, Q4 May 31
- Form 16: 15 June after the financial year ends

Alerts fire at most once per threshold; the sent flags live on the row.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID

from app.models.statutory import DeadlineStatus, DeadlineType
from app.schemas.statutory import (
    AlertCheckResult,
    AlertThreshold,
    DeadlineAlert,
    DeadlineSeverity,
    MarkFiledRequest,
    StatutoryDeadlineData,
    UpcomingDeadline,
)
from app.services.payroll_ports import DeadlineRepository, LoggingNotifier, NotificationPort
from app.utils.error_handling import InvalidStateTransitionError, NotFoundException

logger = logging.getLogger(__name__)


class Frequency(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"


@dataclass(frozen=True)
class DeadlineRule:
    deadline_type: DeadlineType
    due_day: int
    frequency: Frequency
    description: str


DEADLINE_RULES: List[DeadlineRule] = [
    DeadlineRule(DeadlineType.PF_PAYMENT, 15, Frequency.MONTHLY, "PF contribution payment"),
    DeadlineRule(DeadlineType.PF_RETURN, 15, Frequency.MONTHLY, "PF ECR filing"),
    DeadlineRule(DeadlineType.ESI_PAYMENT, 15, Frequency.MONTHLY, "ESI contribution payment"),
    DeadlineRule(DeadlineType.TDS_DEPOSIT, 7, Frequency.MONTHLY, "TDS deposit"),
    DeadlineRule(DeadlineType.PT_PAYMENT, 20, Frequency.MONTHLY, "Professional Tax payment"),
    DeadlineRule(DeadlineType.TDS_RETURN_24Q, 31, Frequency.QUARTERLY, "TDS quarterly return (Form 24Q)"),
    DeadlineRule(DeadlineType.FORM_16, 15, Frequency.ANNUAL, "Form 16 issue to employees"),
]

# Last month of a quarter -> month the Form 24Q return is due
_QUARTER_DUE: Dict[int, int] = {6: 7, 9: 10, 12: 1, 3: 5}


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def due_date_for(rule: DeadlineRule, month: int, year: int) -> Optional[date]:
    """
    Due date of ``rule`` for the period month/year, or None when the rule
    does not produce a deadline for that month.
    """
    if rule.frequency == Frequency.MONTHLY:
        due_month, due_year = (1, year + 1) if month == 12 else (month + 1, year)
        return _clamped(due_year, due_month, rule.due_day)

    if rule.frequency == Frequency.QUARTERLY:
        if month not in _QUARTER_DUE:
            return None
        due_month = _QUARTER_DUE[month]
        due_year = year + 1 if month == 12 else year
        return _clamped(due_year, due_month, rule.due_day)

    if rule.frequency == Frequency.ANNUAL:
        # The financial year closes in March
        if month != 3:
            return None
        return _clamped(year, 6, rule.due_day)

    raise ValueError(f"Unknown deadline frequency: {rule.frequency}")


def days_until(due: date, today: date) -> int:
    return (due - today).days


def severity_for(days_remaining: int, status: DeadlineStatus = DeadlineStatus.PENDING) -> DeadlineSeverity:
    if status == DeadlineStatus.OVERDUE or days_remaining <= 1:
        return DeadlineSeverity.CRITICAL
    if days_remaining <= 3:
        return DeadlineSeverity.WARNING
    return DeadlineSeverity.INFO


def threshold_for(days_remaining: int) -> Optional[AlertThreshold]:
    """Which alert window ``days_remaining`` falls in, if any."""
    if days_remaining < 0:
        return AlertThreshold.OVERDUE
    if days_remaining <= 1:
        return AlertThreshold.ONE_DAY
    if days_remaining <= 3:
        return AlertThreshold.THREE_DAY
    if days_remaining <= 7:
        return AlertThreshold.SEVEN_DAY
    return None


_ALERT_FLAGS = {
    AlertThreshold.SEVEN_DAY: "alert_7_day_sent",
    AlertThreshold.THREE_DAY: "alert_3_day_sent",
    AlertThreshold.ONE_DAY: "alert_1_day_sent",
    AlertThreshold.OVERDUE: "overdue_alert_sent",
}


class DeadlineService:
    """Generates deadline rows and raises alerts as they approach."""

    def __init__(self, repository: DeadlineRepository, notifier: Optional[NotificationPort] = None):
        self.repository = repository
        self.notifier = notifier or LoggingNotifier()

    async def generate_deadlines(self, month: int, year: int) -> List[StatutoryDeadlineData]:
        """Upsert every deadline for the period. Running twice creates nothing new."""
        results = []
        created_count = 0
        for rule in DEADLINE_RULES:
            due = due_date_for(rule, month, year)
            if due is None:
                continue
            deadline, created = await self.repository.upsert_deadline(StatutoryDeadlineData(
                deadline_type=rule.deadline_type,
                month=month,
                year=year,
                due_date=due,
                description=f"{rule.description} for {month:02d}/{year}",
            ))
            created_count += int(created)
            results.append(deadline)
        logger.info(f"Generated statutory deadlines for {month:02d}/{year}: {created_count} new, {len(results)} total")
        return results

    async def check_alerts(self, today: Optional[date] = None) -> AlertCheckResult:
        """
        Evaluate every open deadline against today's date and send the alert
        for the window it is in, unless that alert was already sent.
        """
        today = today or date.today()
        result = AlertCheckResult()

        for deadline in await self.repository.list_open_deadlines():
            result.checked += 1
            days = days_until(deadline.due_date, today)
            threshold = threshold_for(days)
            if threshold is None:
                continue

            flag = _ALERT_FLAGS[threshold]
            update = {}
            if threshold == AlertThreshold.OVERDUE and deadline.status != DeadlineStatus.OVERDUE:
                update["status"] = DeadlineStatus.OVERDUE
                result.overdue_marked += 1
            if not getattr(deadline, flag):
                update[flag] = True
                await self.notifier.send_deadline_alert(DeadlineAlert(
                    deadline_id=deadline.id,
                    deadline_type=deadline.deadline_type,
                    due_date=deadline.due_date,
                    days_remaining=days,
                    threshold=threshold,
                    severity=severity_for(days, update.get("status", deadline.status)),
                    description=deadline.description,
                ))
                result.alerts_sent += 1
            if update:
                await self.repository.save_deadline(deadline.model_copy(update=update))

        if result.alerts_sent:
            logger.info(f"Deadline check: {result.alerts_sent} alerts sent, {result.overdue_marked} marked overdue")
        return result

    async def upcoming(self, today: Optional[date] = None, within_days: int = 30) -> List[UpcomingDeadline]:
        today = today or date.today()
        upcoming = []
        for deadline in await self.repository.list_open_deadlines():
            days = days_until(deadline.due_date, today)
            if days > within_days:
                continue
            upcoming.append(UpcomingDeadline(
                deadline=deadline,
                days_remaining=days,
                severity=severity_for(days, deadline.status),
            ))
        return sorted(upcoming, key=lambda u: u.deadline.due_date)

    async def mark_filed(self, deadline_id: UUID, request: MarkFiledRequest) -> StatutoryDeadlineData:
        deadline = await self.repository.get_deadline(deadline_id)
        if deadline is None:
            raise NotFoundException("Statutory deadline", deadline_id)
        if deadline.status == DeadlineStatus.FILED:
            raise InvalidStateTransitionError("Statutory deadline", deadline.status.value, DeadlineStatus.FILED.value)
        return await self.repository.save_deadline(deadline.model_copy(update={
            "status": DeadlineStatus.FILED,
            "filed_at": datetime.now(timezone.utc),
            "filed_by": request.filed_by,
            "filing_reference": request.filing_reference,
            "amount_paid": request.amount_paid,
            "notes": request.notes,
        }))
