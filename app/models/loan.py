"""
Payroll Engine - Employee Loan Models

Salary advances and loans recovered through monthly EMIs. The whole
amortization schedule is generated once, when the loan is created, as one
LoanDeduction row per month.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import (
    BigInteger, Date, DateTime, ForeignKey, Integer, Numeric, String, Text,
    Enum as SQLEnum, UniqueConstraint, Uuid
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel

if TYPE_CHECKING:
    from app.models.payroll import Employee


class LoanType(str, Enum):
    SALARY_ADVANCE = "salary_advance"
    PERSONAL = "personal"
    EMERGENCY = "emergency"
    OTHER = "other"


class LoanStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    DEFAULTED = "defaulted"


class LoanDeductionStatus(str, Enum):
    SCHEDULED = "scheduled"
    DEDUCTED = "deducted"
    SKIPPED = "skipped"


class EmployeeLoan(BaseModel):
    __tablename__ = "employee_loans"

    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    loan_type: Mapped[LoanType] = mapped_column(
        SQLEnum(LoanType),
        default=LoanType.PERSONAL,
        nullable=False,
    )

    principal: Mapped[int] = mapped_column(BigInteger, nullable=False)
    annual_interest_rate: Mapped[Decimal] = mapped_column(
        Numeric(precision=5, scale=2),
        default=Decimal("0.00"),
        nullable=False,
        comment="Annual rate in percent",
    )
    tenure_months: Mapped[int] = mapped_column(Integer, nullable=False)
    emi_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_interest: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_repayment: Mapped[int] = mapped_column(BigInteger, nullable=False)
    remaining_balance: Mapped[int] = mapped_column(BigInteger, nullable=False)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[LoanStatus] = mapped_column(
        SQLEnum(LoanStatus),
        default=LoanStatus.PENDING,
        nullable=False,
        index=True,
    )
    disbursed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    employee: Mapped["Employee"] = relationship(back_populates="loans")
    deductions: Mapped[List["LoanDeduction"]] = relationship(
        back_populates="loan",
        cascade="all, delete-orphan",
        order_by="LoanDeduction.installment_number",
    )


class LoanDeduction(BaseModel):
    """One scheduled EMI. Amounts never change once generated."""

    __tablename__ = "loan_deductions"

    loan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employee_loans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False)

    emi_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    principal_component: Mapped[int] = mapped_column(BigInteger, nullable=False)
    interest_component: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[LoanDeductionStatus] = mapped_column(
        SQLEnum(LoanDeductionStatus),
        default=LoanDeductionStatus.SCHEDULED,
        nullable=False,
    )
    payroll_run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("payroll_runs.id", ondelete="SET NULL"),
        nullable=True,
    )

    loan: Mapped["EmployeeLoan"] = relationship(back_populates="deductions")

    __table_args__ = (
        UniqueConstraint('loan_id', 'month', 'year', name='uq_loan_deduction_period'),
    )
