"""
Payroll Engine - Statutory Schemas

Deadlines, alerts, filing export results and Form 16 data.
"""

from datetime import date, datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from app.models.statutory import DeadlineStatus, DeadlineType
from app.services.tax_calculators.tds_service import TaxRegime


class AlertThreshold(str, Enum):
    SEVEN_DAY = "7_day"
    THREE_DAY = "3_day"
    ONE_DAY = "1_day"
    OVERDUE = "overdue"


class DeadlineSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class StatutoryDeadlineData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    deadline_type: DeadlineType
    month: int
    year: int
    due_date: date
    description: str
    status: DeadlineStatus = DeadlineStatus.PENDING
    alert_7_day_sent: bool = False
    alert_3_day_sent: bool = False
    alert_1_day_sent: bool = False
    overdue_alert_sent: bool = False
    filed_at: Optional[datetime] = None
    filed_by: Optional[str] = None
    filing_reference: Optional[str] = None
    amount_paid: Optional[int] = None
    notes: Optional[str] = None


class DeadlineAlert(BaseModel):
    deadline_id: UUID
    deadline_type: DeadlineType
    due_date: date
    days_remaining: int
    threshold: AlertThreshold
    severity: DeadlineSeverity
    description: str


class AlertCheckResult(BaseModel):
    checked: int = 0
    alerts_sent: int = 0
    overdue_marked: int = 0


class UpcomingDeadline(BaseModel):
    deadline: StatutoryDeadlineData
    days_remaining: int
    severity: DeadlineSeverity


class MarkFiledRequest(BaseModel):
    filed_by: str = Field(..., min_length=1, max_length=100)
    filing_reference: Optional[str] = Field(None, max_length=100)
    amount_paid: Optional[int] = Field(None, ge=0, description="Amount in paise")
    notes: Optional[str] = None


class ExportResult(BaseModel):
    """A filing payload plus what was left out of it."""
    filename: str
    content: str
    included_count: int
    excluded_count: int
    excluded_employee_ids: List[UUID] = Field(default_factory=list)
    missing_identifier: str


class Form16PartA(BaseModel):
    """Deductor and deductee details."""
    tan: str
    deductor_name: str
    employee_name: str
    pan: Optional[str] = None
    financial_year: str
    assessment_year: str
    period_from: date
    period_to: date


class Form16Quarter(BaseModel):
    quarter: int
    amount_paid: int = Field(..., description="Gross salary in paise")
    tds_deducted: int = Field(..., description="Paise")


class Form16PartB(BaseModel):
    """Salary and tax computation. All amounts in paise."""
    tax_regime: TaxRegime
    gross_salary: int
    standard_deduction: int
    professional_tax: int
    income_chargeable: int
    tax_on_income: int
    rebate_applied: bool
    cess: int
    total_tax_payable: int
    tds_deducted: int
    balance_payable: int


class Form16Data(BaseModel):
    """Annual TDS certificate data for one employee."""
    employee_id: UUID
    fy_start_year: int
    months_paid: int
    part_a: Form16PartA
    part_b: Form16PartB
    quarters: List[Form16Quarter]
