"""
Payroll Engine - Statutory Deadline Models

Tracks payment and return due dates for PF, ESI, PT and TDS.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger, Boolean, Date, DateTime, Integer, String, Text,
    Enum as SQLEnum, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel


class DeadlineType(str, Enum):
    PF_PAYMENT = "pf_payment"
    PF_RETURN = "pf_return"
    ESI_PAYMENT = "esi_payment"
    TDS_DEPOSIT = "tds_deposit"
    TDS_RETURN_24Q = "tds_return_24q"
    PT_PAYMENT = "pt_payment"
    FORM_16 = "form_16"


class DeadlineStatus(str, Enum):
    PENDING = "pending"
    FILED = "filed"
    OVERDUE = "overdue"


class StatutoryDeadline(BaseModel):
    """One deadline instance per (type, period month, period year)."""

    __tablename__ = "statutory_deadlines"

    deadline_type: Mapped[DeadlineType] = mapped_column(SQLEnum(DeadlineType), nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False, comment="Period the filing covers")
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    description: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[DeadlineStatus] = mapped_column(
        SQLEnum(DeadlineStatus),
        default=DeadlineStatus.PENDING,
        nullable=False,
        index=True,
    )

    # Each alert fires once
    alert_7_day_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    alert_3_day_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    alert_1_day_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    overdue_alert_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    filed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    filed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    filing_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    amount_paid: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint('deadline_type', 'month', 'year', name='uq_statutory_deadline_period'),
    )
