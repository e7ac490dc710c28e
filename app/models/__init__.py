"""
Payroll Engine - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from app.models.base import BaseModel, TimestampMixin
from app.models.payroll import (
    Gender,
    Employee,
    SalaryStructure,
    AttendanceSummary,
    AttendanceLock,
    ProfessionalTaxSlab,
    PayrollRun,
    PayrollRunStatus,
    PayrollRunStage,
    PayrollRecord,
    PayrollRecordStatus,
)
from app.models.loan import (
    EmployeeLoan,
    LoanDeduction,
    LoanType,
    LoanStatus,
    LoanDeductionStatus,
)
from app.models.statutory import (
    StatutoryDeadline,
    DeadlineType,
    DeadlineStatus,
)
from app.models.reimbursement import (
    ReimbursementClaim,
    ClaimStatus,
)

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "Gender",
    "Employee",
    "SalaryStructure",
    "AttendanceSummary",
    "AttendanceLock",
    "ProfessionalTaxSlab",
    "PayrollRun",
    "PayrollRunStatus",
    "PayrollRunStage",
    "PayrollRecord",
    "PayrollRecordStatus",
    "EmployeeLoan",
    "LoanDeduction",
    "LoanType",
    "LoanStatus",
    "LoanDeductionStatus",
    "StatutoryDeadline",
    "DeadlineType",
    "DeadlineStatus",
    "ReimbursementClaim",
    "ClaimStatus",
]
