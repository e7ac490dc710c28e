"""
Payroll Engine - Reimbursement Schemas
"""

from datetime import date, datetime
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from app.models.reimbursement import ClaimStatus


class ReimbursementClaimCreate(BaseModel):
    """Submit claim request."""
    employee_id: UUID
    expense_date: date
    amount: int = Field(..., gt=0, description="Amount in paise")
    description: str = Field(..., min_length=1, max_length=500)


class ReimbursementClaimData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    employee_id: UUID
    expense_date: date
    amount: int
    description: str
    status: ClaimStatus = ClaimStatus.SUBMITTED
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    payroll_run_id: Optional[UUID] = None

    @property
    def synced(self) -> bool:
        return self.payroll_run_id is not None


class ReimbursementUpdate(BaseModel):
    """Links a claim to a run, or releases it with ``payroll_run_id=None``."""
    claim_id: UUID
    payroll_run_id: Optional[UUID] = None


class ApproveClaimRequest(BaseModel):
    approved_by: str = Field(..., min_length=1, max_length=100)


class RejectClaimRequest(BaseModel):
    rejected_by: str = Field(..., min_length=1, max_length=100)
    reason: str = Field(..., min_length=1, max_length=1000)
