"""
Payroll Engine - Loan Schemas

Loan requests, ledger rows, and the insufficient-net-pay policy that decides
whether an EMI is deducted or skipped in a given month.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from app.models.loan import LoanDeductionStatus, LoanStatus, LoanType


# ===========================================
# LOAN SCHEMAS
# ===========================================

class LoanCreate(BaseModel):
    """Create loan request."""
    employee_id: UUID
    loan_type: LoanType = LoanType.PERSONAL
    principal: int = Field(..., gt=0, description="Principal in paise")
    annual_interest_rate: Decimal = Field(Decimal("0"), ge=0, le=50)
    tenure_months: int = Field(..., ge=1, le=360)
    start_date: date
    approved_by: Optional[str] = None


class LoanData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    employee_id: UUID
    loan_type: LoanType = LoanType.PERSONAL
    principal: int
    annual_interest_rate: Decimal = Decimal("0")
    tenure_months: int
    emi_amount: int
    total_interest: int = 0
    total_repayment: int
    remaining_balance: int
    start_date: date
    end_date: date
    status: LoanStatus = LoanStatus.PENDING
    disbursed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    closure_reason: Optional[str] = None
    approved_by: Optional[str] = None


class LoanDeductionData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    loan_id: UUID
    employee_id: UUID
    month: int
    year: int
    installment_number: int
    emi_amount: int
    principal_component: int
    interest_component: int
    balance_after: int
    status: LoanDeductionStatus = LoanDeductionStatus.SCHEDULED
    payroll_run_id: Optional[UUID] = None


class LoanDeductionUpdate(BaseModel):
    """Status change for one scheduled EMI, written together with a payroll record."""
    deduction_id: UUID
    loan_id: UUID
    status: LoanDeductionStatus
    payroll_run_id: Optional[UUID] = None


class LoanCloseRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# ===========================================
# INSUFFICIENT NET PAY POLICY
# ===========================================

class AlwaysDeduct(BaseModel):
    """Deduct every scheduled EMI, even if net pay goes negative."""
    kind: Literal["always_deduct"] = "always_deduct"


class SkipIfNegative(BaseModel):
    """Skip an EMI that would push net pay below zero."""
    kind: Literal["skip_if_negative"] = "skip_if_negative"


class MinimumNetPay(BaseModel):
    """Skip an EMI that would leave less than a fixed amount."""
    kind: Literal["minimum_net_pay"] = "minimum_net_pay"
    floor_paise: int = Field(..., ge=0)


class MinimumNetRatio(BaseModel):
    """Skip an EMI that would leave less than a share of gross pay."""
    kind: Literal["minimum_net_ratio"] = "minimum_net_ratio"
    ratio: Decimal = Field(..., ge=0, le=1)


LoanSkipPolicy = Annotated[
    Union[AlwaysDeduct, SkipIfNegative, MinimumNetPay, MinimumNetRatio],
    Field(discriminator="kind"),
]

loan_skip_policy_adapter = TypeAdapter(LoanSkipPolicy)
