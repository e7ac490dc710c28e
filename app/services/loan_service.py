"""
Payroll Engine - Loan Service

Reducing-balance amortization and the employee loan lifecycle.

EMI = P x r x (1 + r)^N / ((1 + r)^N - 1), with r the monthly rate
(annual percent / 1200). Interest on each row is rounded on its own; the
last row absorbs whatever rounding left over so the loan ends at exactly 0.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence
from uuid import UUID

from dateutil.relativedelta import relativedelta

from app.models.loan import LoanDeductionStatus, LoanStatus
from app.schemas.loan import LoanCreate, LoanData, LoanDeductionData
from app.services.money import Paise, divide, round_half_away
from app.services.payroll_ports import LoanRepository
from app.utils.error_handling import (
    ErrorCode,
    InvalidStateTransitionError,
    NotFoundException,
    PayrollValidationError,
)

logger = logging.getLogger(__name__)

MAX_TENURE_MONTHS = 360
MAX_ANNUAL_RATE = Decimal("50")
AUTO_CLOSE_REASON = "Fully repaid through payroll"


# ===========================================
# AMORTIZATION
# ===========================================

@dataclass(frozen=True)
class AmortizationRow:
    installment_number: int
    emi: Paise
    principal: Paise
    interest: Paise
    balance_after: Paise


@dataclass(frozen=True)
class AmortizationSchedule:
    emi: Paise
    rows: List[AmortizationRow]

    @property
    def total_interest(self) -> Paise:
        return sum(row.interest for row in self.rows)

    @property
    def total_principal(self) -> Paise:
        return sum(row.principal for row in self.rows)

    @property
    def total_repayment(self) -> Paise:
        return self.total_principal + self.total_interest


def _validate_terms(principal: Paise, annual_rate: Decimal, tenure_months: int) -> None:
    if principal <= 0:
        raise PayrollValidationError(
            "Loan principal must be greater than zero",
            field="principal", code=ErrorCode.INVALID_LOAN_TERMS,
        )
    if not 1 <= tenure_months <= MAX_TENURE_MONTHS:
        raise PayrollValidationError(
            f"Tenure must be between 1 and {MAX_TENURE_MONTHS} months",
            field="tenure_months", code=ErrorCode.INVALID_LOAN_TERMS,
        )
    if annual_rate < 0 or annual_rate > MAX_ANNUAL_RATE:
        raise PayrollValidationError(
            f"Annual interest rate must be between 0 and {MAX_ANNUAL_RATE}%",
            field="annual_interest_rate", code=ErrorCode.INVALID_LOAN_TERMS,
        )


def monthly_rate(annual_rate: Decimal) -> Decimal:
    return Decimal(annual_rate) / Decimal(1200)


def calculate_emi(principal: Paise, annual_rate: Decimal, tenure_months: int) -> Paise:
    """
    Fixed monthly installment for a reducing-balance loan.

    Args:
        principal: Amount lent, in paise
        annual_rate: Annual interest rate in percent (e.g. Decimal("12"))
        tenure_months: Number of monthly installments

    Returns:
        EMI in paise
    """
    _validate_terms(principal, Decimal(annual_rate), tenure_months)
    r = monthly_rate(annual_rate)
    if r == 0:
        return divide(principal, tenure_months)
    factor = (1 + r) ** tenure_months
    return round_half_away(Decimal(principal) * r * factor / (factor - 1))


def generate_amortization_schedule(
    principal: Paise,
    annual_rate: Decimal,
    tenure_months: int,
) -> AmortizationSchedule:
    """Month-by-month split of each EMI into principal and interest."""
    emi = calculate_emi(principal, annual_rate, tenure_months)
    r = monthly_rate(annual_rate)

    rows: List[AmortizationRow] = []
    balance = principal
    for number in range(1, tenure_months + 1):
        interest = round_half_away(Decimal(balance) * r)
        if number == tenure_months:
            principal_part = balance
        else:
            principal_part = min(emi - interest, balance)
        balance -= principal_part
        rows.append(AmortizationRow(
            installment_number=number,
            emi=principal_part + interest,
            principal=principal_part,
            interest=interest,
            balance_after=balance,
        ))
    return AmortizationSchedule(emi=emi, rows=rows)


def outstanding_balance(loan: LoanData, deductions: Sequence[LoanDeductionData]) -> Paise:
    """Balance after the latest deducted installment, or the full principal."""
    deducted = [d for d in deductions if d.status == LoanDeductionStatus.DEDUCTED]
    if not deducted:
        return loan.principal
    return max(deducted, key=lambda d: d.installment_number).balance_after


def apply_repayment_state(loan: LoanData, deductions: Sequence[LoanDeductionData]) -> LoanData:
    """
    Recompute the remaining balance from the ledger. An active loan whose
    balance reaches zero closes; a closed loan whose last EMI was undone
    reopens.
    """
    remaining = outstanding_balance(loan, deductions)
    update = {"remaining_balance": remaining}
    if remaining == 0 and loan.status == LoanStatus.ACTIVE:
        update.update(
            status=LoanStatus.CLOSED,
            closed_at=datetime.now(timezone.utc),
            closure_reason=AUTO_CLOSE_REASON,
        )
    elif remaining > 0 and loan.status == LoanStatus.CLOSED and loan.closure_reason == AUTO_CLOSE_REASON:
        update.update(status=LoanStatus.ACTIVE, closed_at=None, closure_reason=None)
    return loan.model_copy(update=update)


# ===========================================
# LOAN LIFECYCLE
# ===========================================

class LoanService:
    """Create loans and move them through PENDING -> ACTIVE -> CLOSED."""

    def __init__(self, repository: LoanRepository):
        self.repository = repository

    async def create_loan(self, data: LoanCreate) -> LoanData:
        """
        Create a PENDING loan and pre-generate one SCHEDULED deduction per
        month, starting in the month of ``data.start_date``.
        """
        schedule = generate_amortization_schedule(
            data.principal, data.annual_interest_rate, data.tenure_months
        )
        first_month = data.start_date.replace(day=1)

        loan = LoanData(
            employee_id=data.employee_id,
            loan_type=data.loan_type,
            principal=data.principal,
            annual_interest_rate=data.annual_interest_rate,
            tenure_months=data.tenure_months,
            emi_amount=schedule.emi,
            total_interest=schedule.total_interest,
            total_repayment=schedule.total_repayment,
            remaining_balance=data.principal,
            start_date=data.start_date,
            end_date=first_month + relativedelta(months=data.tenure_months - 1),
            status=LoanStatus.PENDING,
            approved_by=data.approved_by,
        )

        deductions = []
        for row in schedule.rows:
            period = first_month + relativedelta(months=row.installment_number - 1)
            deductions.append(LoanDeductionData(
                loan_id=loan.id,
                employee_id=loan.employee_id,
                month=period.month,
                year=period.year,
                installment_number=row.installment_number,
                emi_amount=row.emi,
                principal_component=row.principal,
                interest_component=row.interest,
                balance_after=row.balance_after,
            ))

        created = await self.repository.create_loan(loan, deductions)
        logger.info(
            f"Created loan {created.id} for employee {created.employee_id}: "
            f"principal={created.principal} emi={created.emi_amount} tenure={created.tenure_months}"
        )
        return created

    async def get_loan(self, loan_id: UUID) -> LoanData:
        loan = await self.repository.get_loan(loan_id)
        if loan is None:
            raise NotFoundException("Loan", loan_id)
        return loan

    async def get_schedule(self, loan_id: UUID) -> List[LoanDeductionData]:
        await self.get_loan(loan_id)
        return await self.repository.list_loan_deductions(loan_id)

    async def disburse(self, loan_id: UUID) -> LoanData:
        loan = await self.get_loan(loan_id)
        self._require(loan, LoanStatus.ACTIVE, LoanStatus.PENDING)
        return await self.repository.save_loan(loan.model_copy(update={
            "status": LoanStatus.ACTIVE,
            "disbursed_at": datetime.now(timezone.utc),
        }))

    async def close(self, loan_id: UUID, reason: Optional[str] = None) -> LoanData:
        """Close an active loan. Closing with money still owed needs a reason."""
        loan = await self.get_loan(loan_id)
        self._require(loan, LoanStatus.CLOSED, LoanStatus.ACTIVE)
        if loan.remaining_balance > 0 and not reason:
            raise PayrollValidationError(
                f"Loan still has {loan.remaining_balance} paise outstanding; a closure reason is required",
                field="reason",
            )
        return await self.repository.save_loan(loan.model_copy(update={
            "status": LoanStatus.CLOSED,
            "closed_at": datetime.now(timezone.utc),
            "closure_reason": reason or "Fully repaid",
        }))

    async def cancel(self, loan_id: UUID, reason: Optional[str] = None) -> LoanData:
        """Cancel the loan; installments not yet deducted are skipped."""
        loan = await self.get_loan(loan_id)
        self._require(loan, LoanStatus.CANCELLED, LoanStatus.PENDING, LoanStatus.ACTIVE)

        deductions = await self.repository.list_loan_deductions(loan_id)
        skipped = [
            d.model_copy(update={"status": LoanDeductionStatus.SKIPPED})
            for d in deductions
            if d.status == LoanDeductionStatus.SCHEDULED
        ]
        if skipped:
            await self.repository.save_loan_deductions(skipped)

        return await self.repository.save_loan(loan.model_copy(update={
            "status": LoanStatus.CANCELLED,
            "closed_at": datetime.now(timezone.utc),
            "closure_reason": reason,
        }))

    async def mark_defaulted(self, loan_id: UUID, reason: Optional[str] = None) -> LoanData:
        loan = await self.get_loan(loan_id)
        self._require(loan, LoanStatus.DEFAULTED, LoanStatus.ACTIVE)
        return await self.repository.save_loan(loan.model_copy(update={
            "status": LoanStatus.DEFAULTED,
            "closure_reason": reason,
        }))

    @staticmethod
    def _require(loan: LoanData, target: LoanStatus, *allowed: LoanStatus) -> None:
        if loan.status not in allowed:
            raise InvalidStateTransitionError("Loan", loan.status.value, target.value)
