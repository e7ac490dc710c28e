"""
Payroll Engine - Payroll Models

Monthly payroll with Indian statutory deductions:
- PF (Employees' Provident Fund) - 12% of basic up to the wage ceiling
- ESI (Employee State Insurance) - 0.75% employee / 3.25% employer
- PT (Professional Tax) - state slabs
- TDS (income tax withheld on salary) - old or new regime

All money columns hold integer paise.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import (
    BigInteger, Boolean, Date, DateTime, ForeignKey, Integer, String, Text,
    Enum as SQLEnum, JSON, UniqueConstraint, CheckConstraint, Uuid
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel
from app.services.tax_calculators.tds_service import TaxRegime

if TYPE_CHECKING:
    from app.models.loan import EmployeeLoan


# ===========================================
# ENUMS
# ===========================================

class Gender(str, Enum):
    MALE = "M"
    FEMALE = "F"


class PayrollRunStatus(str, Enum):
    """Payroll run lifecycle."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERTED = "reverted"


class PayrollRunStage(str, Enum):
    """Stage marker inside a run."""
    VALIDATION = "validation"
    CALCULATION = "calculation"
    STATUTORY = "statutory"
    FINALIZATION = "finalization"


class PayrollRecordStatus(str, Enum):
    CALCULATED = "calculated"
    VERIFIED = "verified"
    PAID = "paid"
    ERROR = "error"


# ===========================================
# EMPLOYEE
# ===========================================

class Employee(BaseModel):
    """
    Payroll view of an employee. HR data lives elsewhere; only the fields
    payroll and the statutory filings need are kept here.
    """

    __tablename__ = "employees"

    employee_code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    gender: Mapped[Optional[Gender]] = mapped_column(SQLEnum(Gender), nullable=True)
    work_state: Mapped[Optional[str]] = mapped_column(
        String(2), nullable=True,
        comment="Two-letter state code, drives Professional Tax",
    )

    # Statutory identifiers
    uan: Mapped[Optional[str]] = mapped_column(
        String(12), nullable=True,
        comment="EPFO Universal Account Number",
    )
    esic_number: Mapped[Optional[str]] = mapped_column(String(17), nullable=True)
    pan: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    date_of_joining: Mapped[date] = mapped_column(Date, nullable=False)
    date_of_exit: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    salary_structures: Mapped[List["SalaryStructure"]] = relationship(
        back_populates="employee",
        cascade="all, delete-orphan",
    )
    loans: Mapped[List["EmployeeLoan"]] = relationship(
        back_populates="employee",
        cascade="all, delete-orphan",
    )


class SalaryStructure(BaseModel):
    """
    Effective-dated salary structure. Only one structure per employee may
    be open-ended (effective_to is NULL) at a time.
    """

    __tablename__ = "salary_structures"

    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Monthly components
    basic: Mapped[int] = mapped_column(BigInteger, nullable=False)
    hra: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    special_allowance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    lta: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    medical_allowance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    conveyance_allowance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    other_allowances: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    tax_regime: Mapped[TaxRegime] = mapped_column(
        SQLEnum(TaxRegime),
        default=TaxRegime.NEW,
        nullable=False,
    )

    employee: Mapped["Employee"] = relationship(back_populates="salary_structures")

    __table_args__ = (
        UniqueConstraint('employee_id', 'effective_from', name='uq_salary_structure_employee_from'),
        CheckConstraint('basic >= 0', name='basic_non_negative'),
    )


# ===========================================
# ATTENDANCE
# ===========================================

class AttendanceSummary(BaseModel):
    """Per-employee day counts for a month, produced by the attendance aggregator."""

    __tablename__ = "attendance_summaries"

    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    working_days: Mapped[int] = mapped_column(Integer, nullable=False)
    paid_days: Mapped[int] = mapped_column(Integer, nullable=False)
    lop_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint('employee_id', 'month', 'year', name='uq_attendance_summary_period'),
    )


class AttendanceLock(BaseModel):
    """
    Freezes attendance for a month so payroll can run. Corrections after the
    lock go through a request/approve unlock workflow.
    """

    __tablename__ = "attendance_locks"

    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    locked_by: Mapped[str] = mapped_column(String(100), nullable=False)
    locked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    unlock_requested_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    unlock_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    unlock_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    unlock_approved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    unlock_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('month', 'year', name='uq_attendance_lock_period'),
    )


# ===========================================
# PROFESSIONAL TAX SLABS
# ===========================================

class ProfessionalTaxSlab(BaseModel):
    __tablename__ = "professional_tax_slabs"

    state_code: Mapped[str] = mapped_column(String(2), nullable=False, index=True)
    salary_from: Mapped[int] = mapped_column(BigInteger, nullable=False)
    salary_to: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True,
        comment="Exclusive upper bound; NULL means no upper bound",
    )
    tax_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    month: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True,
        comment="Set for month-specific slabs such as a February surcharge",
    )
    gender: Mapped[Optional[Gender]] = mapped_column(SQLEnum(Gender), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# ===========================================
# PAYROLL RUN
# ===========================================

class PayrollRun(BaseModel):
    """
    One payroll run per (month, year). REVERTED runs keep their row so the
    history survives, but their records are deleted.
    """

    __tablename__ = "payroll_runs"

    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[PayrollRunStatus] = mapped_column(
        SQLEnum(PayrollRunStatus),
        default=PayrollRunStatus.PENDING,
        nullable=False,
        index=True,
    )
    current_stage: Mapped[PayrollRunStage] = mapped_column(
        SQLEnum(PayrollRunStage),
        default=PayrollRunStage.VALIDATION,
        nullable=False,
    )

    # Progress
    total_employees: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[Optional[list]] = mapped_column(
        JSON, nullable=True,
        comment="List of {employee_id, message} entries",
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Totals over CALCULATED records
    total_gross: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_deductions: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_net_pay: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_employer_cost: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_employee_pf: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_employer_pf: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_employee_esi: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_employer_esi: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_professional_tax: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_tds: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_reimbursements: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    initiated_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reverted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    records: Mapped[List["PayrollRecord"]] = relationship(
        back_populates="payroll_run",
        cascade="all, delete-orphan",
    )


class PayrollRecord(BaseModel):
    """
    One employee's computed pay for a run. Statutory identifiers are copied
    from the employee at calculation time so filings match what was paid.
    """

    __tablename__ = "payroll_records"

    payroll_run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payroll_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[PayrollRecordStatus] = mapped_column(
        SQLEnum(PayrollRecordStatus),
        default=PayrollRecordStatus.CALCULATED,
        nullable=False,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Snapshot of the employee
    employee_name: Mapped[str] = mapped_column(String(200), nullable=False)
    uan: Mapped[Optional[str]] = mapped_column(String(12), nullable=True)
    esic_number: Mapped[Optional[str]] = mapped_column(String(17), nullable=True)
    pan: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    tax_regime: Mapped[Optional[TaxRegime]] = mapped_column(SQLEnum(TaxRegime), nullable=True)

    # Days
    working_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    paid_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lop_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Earnings
    basic: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    hra: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    special_allowance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    lta: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    medical_allowance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    conveyance_allowance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    other_allowances: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    gross_before_lop: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    lop_deduction: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    gross_earnings: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    # Provident Fund
    pf_base: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    employee_pf: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    employer_epf: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    employer_eps: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    employer_edli: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    employer_pf_admin: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    # ESI
    esi_applicable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    employee_esi: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    employer_esi: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    # Taxes
    professional_tax: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    tds: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    # Totals
    reimbursements: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False,
        comment="Approved claims paid with this record, outside gross",
    )
    loan_deductions: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_deductions: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    net_pay: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    employer_cost: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    verified_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    payroll_run: Mapped["PayrollRun"] = relationship(back_populates="records")

    __table_args__ = (
        UniqueConstraint('payroll_run_id', 'employee_id', name='uq_payroll_record_run_employee'),
    )
