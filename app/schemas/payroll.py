"""
Payroll Engine - Payroll Schemas

Pydantic schemas exchanged with the persistence ports and the HTTP layer.
Every monetary field is integer paise.
"""

from datetime import date, datetime
from typing import Optional, List
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models.payroll import (
    Gender,
    PayrollRecordStatus,
    PayrollRunStage,
    PayrollRunStatus,
)
from app.services.tax_calculators.tds_service import TaxRegime


# ===========================================
# EMPLOYEE SCHEMAS
# ===========================================

class EmployeeProfile(BaseModel):
    """What payroll needs to know about an employee."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    employee_code: str
    full_name: str
    gender: Optional[Gender] = None
    work_state: Optional[str] = None
    uan: Optional[str] = None
    esic_number: Optional[str] = None
    pan: Optional[str] = None
    date_of_joining: date
    date_of_exit: Optional[date] = None
    is_active: bool = True


# ===========================================
# SALARY STRUCTURE SCHEMAS
# ===========================================

class SalaryComponents(BaseModel):
    """Monthly salary components in paise."""
    basic: int = Field(..., ge=0)
    hra: int = Field(0, ge=0)
    special_allowance: int = Field(0, ge=0)
    lta: int = Field(0, ge=0)
    medical_allowance: int = Field(0, ge=0)
    conveyance_allowance: int = Field(0, ge=0)
    other_allowances: int = Field(0, ge=0)

    @property
    def gross(self) -> int:
        return (
            self.basic + self.hra + self.special_allowance + self.lta
            + self.medical_allowance + self.conveyance_allowance + self.other_allowances
        )

    def compliance_error(self) -> Optional[str]:
        """Return why the structure breaks the basic-pay rule, or None."""
        gross = self.gross
        if gross <= 0:
            return "Gross salary must be greater than zero"
        if self.basic * 2 < gross:
            return f"Basic salary ({self.basic}) must be at least 50% of gross ({gross})"
        return None


class SalaryStructureCreate(SalaryComponents):
    """Create salary structure request."""
    employee_id: UUID
    effective_from: date
    effective_to: Optional[date] = None
    tax_regime: TaxRegime = TaxRegime.NEW

    @model_validator(mode='after')
    def validate_structure(self):
        error = self.compliance_error()
        if error:
            raise ValueError(error)
        if self.effective_to is not None and self.effective_to < self.effective_from:
            raise ValueError("effective_to must be on or after effective_from")
        return self


class SalaryStructureData(SalaryComponents):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    employee_id: UUID
    effective_from: date
    effective_to: Optional[date] = None
    tax_regime: TaxRegime = TaxRegime.NEW

    def is_effective_on(self, as_of: date) -> bool:
        if self.effective_from > as_of:
            return False
        return self.effective_to is None or self.effective_to >= as_of


# ===========================================
# ATTENDANCE SCHEMAS
# ===========================================

class AttendanceSummaryData(BaseModel):
    """Day counts for one employee and month."""
    model_config = ConfigDict(from_attributes=True)

    employee_id: UUID
    month: int = Field(..., ge=1, le=12)
    year: int
    working_days: int = Field(..., gt=0)
    paid_days: int = Field(..., ge=0)
    lop_days: int = Field(0, ge=0)

    @model_validator(mode='after')
    def validate_days(self):
        if self.lop_days > self.working_days:
            raise ValueError("LOP days cannot exceed working days")
        if self.paid_days + self.lop_days != self.working_days:
            raise ValueError(
                f"Paid days ({self.paid_days}) plus LOP days ({self.lop_days}) "
                f"must equal working days ({self.working_days})"
            )
        return self


class AttendanceLockData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    month: int = Field(..., ge=1, le=12)
    year: int
    locked_by: str
    locked_at: datetime
    unlock_requested_by: Optional[str] = None
    unlock_requested_at: Optional[datetime] = None
    unlock_reason: Optional[str] = None
    unlock_approved_by: Optional[str] = None
    unlock_approved_at: Optional[datetime] = None

    @property
    def is_locked(self) -> bool:
        """A lock stops gating payroll once its unlock is approved."""
        return self.unlock_approved_at is None

    @property
    def unlock_pending(self) -> bool:
        return self.unlock_requested_at is not None and self.unlock_approved_at is None


# ===========================================
# PAYROLL RUN SCHEMAS
# ===========================================

class RunPayrollRequest(BaseModel):
    """Run payroll request."""
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000, le=2100)
    initiated_by: Optional[str] = Field(None, max_length=100)


class RunErrorEntry(BaseModel):
    employee_id: UUID
    message: str


class PayrollRunData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    month: int
    year: int
    status: PayrollRunStatus = PayrollRunStatus.PENDING
    current_stage: PayrollRunStage = PayrollRunStage.VALIDATION

    total_employees: int = 0
    processed_count: int = 0
    success_count: int = 0
    error_count: int = 0
    errors: List[RunErrorEntry] = Field(default_factory=list)
    failure_reason: Optional[str] = None

    total_gross: int = 0
    total_deductions: int = 0
    total_net_pay: int = 0
    total_employer_cost: int = 0
    total_employee_pf: int = 0
    total_employer_pf: int = 0
    total_employee_esi: int = 0
    total_employer_esi: int = 0
    total_professional_tax: int = 0
    total_tds: int = 0
    total_reimbursements: int = 0

    initiated_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    reverted_at: Optional[datetime] = None

    @field_validator('errors', mode='before')
    @classmethod
    def none_as_empty(cls, v):
        return v or []


class PayrollRunPatch(BaseModel):
    """Partial update of a run. Only fields that are set get written."""
    status: Optional[PayrollRunStatus] = None
    current_stage: Optional[PayrollRunStage] = None
    total_employees: Optional[int] = None
    processed_count: Optional[int] = None
    success_count: Optional[int] = None
    error_count: Optional[int] = None
    errors: Optional[List[RunErrorEntry]] = None
    failure_reason: Optional[str] = None
    total_gross: Optional[int] = None
    total_deductions: Optional[int] = None
    total_net_pay: Optional[int] = None
    total_employer_cost: Optional[int] = None
    total_employee_pf: Optional[int] = None
    total_employer_pf: Optional[int] = None
    total_employee_esi: Optional[int] = None
    total_employer_esi: Optional[int] = None
    total_professional_tax: Optional[int] = None
    total_tds: Optional[int] = None
    total_reimbursements: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    reverted_at: Optional[datetime] = None


class PayrollRunSummary(BaseModel):
    """What every run reports back."""
    run_id: UUID
    month: int
    year: int
    status: PayrollRunStatus
    total: int
    processed: int
    success: int
    error: int


# ===========================================
# PAYROLL RECORD SCHEMAS
# ===========================================

class PayrollRecordData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    payroll_run_id: UUID
    employee_id: UUID
    month: int
    year: int
    status: PayrollRecordStatus = PayrollRecordStatus.CALCULATED
    error_message: Optional[str] = None

    employee_name: str
    uan: Optional[str] = None
    esic_number: Optional[str] = None
    pan: Optional[str] = None
    tax_regime: Optional[TaxRegime] = None

    working_days: int = 0
    paid_days: int = 0
    lop_days: int = 0

    basic: int = 0
    hra: int = 0
    special_allowance: int = 0
    lta: int = 0
    medical_allowance: int = 0
    conveyance_allowance: int = 0
    other_allowances: int = 0
    gross_before_lop: int = 0
    lop_deduction: int = 0
    gross_earnings: int = 0

    pf_base: int = 0
    employee_pf: int = 0
    employer_epf: int = 0
    employer_eps: int = 0
    employer_edli: int = 0
    employer_pf_admin: int = 0

    esi_applicable: bool = False
    employee_esi: int = 0
    employer_esi: int = 0

    professional_tax: int = 0
    tds: int = 0

    reimbursements: int = 0
    loan_deductions: int = 0
    total_deductions: int = 0
    net_pay: int = 0
    employer_cost: int = 0

    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    @property
    def employer_pf_total(self) -> int:
        return self.employer_epf + self.employer_eps + self.employer_edli + self.employer_pf_admin

    @property
    def is_immutable(self) -> bool:
        return self.status in (PayrollRecordStatus.VERIFIED, PayrollRecordStatus.PAID)


class VerifyRecordRequest(BaseModel):
    verified_by: str = Field(..., min_length=1, max_length=100)
