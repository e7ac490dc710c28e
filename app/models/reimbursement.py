"""
Payroll Engine - Reimbursement Claim Model

Approved expense claims are paid out with the next payroll run. A claim is
synced once a payroll record picks it up; ``payroll_run_id`` points at that
run until the run is reverted.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, Date, DateTime, ForeignKey, String, Text, Enum as SQLEnum, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel


class ClaimStatus(str, Enum):
    """Reimbursement claim status."""
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReimbursementClaim(BaseModel):
    """
    Expense claim reimbursed through payroll.
    """

    __tablename__ = "reimbursement_claims"

    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    expense_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="Paise")
    description: Mapped[str] = mapped_column(String(500), nullable=False)

    status: Mapped[ClaimStatus] = mapped_column(
        SQLEnum(ClaimStatus),
        default=ClaimStatus.SUBMITTED,
        nullable=False,
        index=True,
    )
    approved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Set while a non-reverted run pays the claim
    payroll_run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("payroll_runs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<ReimbursementClaim(id={self.id}, amount={self.amount}, status={self.status})>"
