"""
Payroll Engine - Ports

Abstract contracts the payroll core depends on. The SQLAlchemy adapter lives
in payroll_repository; tests use an in-memory implementation.

Implementations raise TransientStorageError for failures worth retrying.
"""

import logging
from abc import ABC, abstractmethod
from datetime import date
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

from app.schemas.loan import LoanData, LoanDeductionData, LoanDeductionUpdate
from app.schemas.payroll import (
    AttendanceLockData,
    AttendanceSummaryData,
    EmployeeProfile,
    PayrollRecordData,
    PayrollRunData,
    PayrollRunPatch,
    SalaryStructureData,
)
from app.schemas.reimbursement import ReimbursementClaimData, ReimbursementUpdate
from app.schemas.statutory import DeadlineAlert, StatutoryDeadlineData
from app.services.tax_calculators.pt_service import PTSlab

logger = logging.getLogger(__name__)


class PayrollRepository(ABC):
    """Everything a payroll run reads and writes."""

    # ===========================================
    # SOURCE DATA
    # ===========================================

    @abstractmethod
    async def list_payroll_employees(self, period_start: date, period_end: date) -> List[EmployeeProfile]:
        """Active employees employed at any point in the period."""

    @abstractmethod
    async def get_employee(self, employee_id: UUID) -> Optional[EmployeeProfile]:
        ...

    @abstractmethod
    async def get_salary_structure(self, employee_id: UUID, as_of: date) -> Optional[SalaryStructureData]:
        ...

    @abstractmethod
    async def get_attendance_summary(self, employee_id: UUID, month: int, year: int) -> Optional[AttendanceSummaryData]:
        ...

    @abstractmethod
    async def get_professional_tax_slabs(self, state_code: str) -> List[PTSlab]:
        ...

    @abstractmethod
    async def get_tds_withheld(self, employee_id: UUID, month: int, year: int) -> int:
        """TDS on earlier months of the same financial year, from non-reverted runs."""

    @abstractmethod
    async def was_esi_covered(self, employee_id: UUID, month: int, year: int) -> bool:
        """Whether ESI applied in an earlier month of the same contribution period."""

    @abstractmethod
    async def get_active_loans(self, employee_id: UUID) -> List[LoanData]:
        """ACTIVE loans, oldest first."""

    @abstractmethod
    async def get_loan_deduction(self, loan_id: UUID, month: int, year: int) -> Optional[LoanDeductionData]:
        ...

    @abstractmethod
    async def get_loan(self, loan_id: UUID) -> Optional[LoanData]:
        ...

    @abstractmethod
    async def get_run_loan_deductions(self, employee_id: UUID, run_id: UUID) -> List[LoanDeductionData]:
        """The employee's EMIs settled by ``run_id``, whatever their loan's status."""

    @abstractmethod
    async def get_approved_reimbursements(
        self, employee_id: UUID, month: int, year: int, run_id: UUID
    ) -> List[ReimbursementClaimData]:
        """
        APPROVED claims dated on or before the end of month/year that are
        either unsynced or already synced to ``run_id``, oldest first.
        """

    @abstractmethod
    async def get_attendance_lock(self, month: int, year: int) -> Optional[AttendanceLockData]:
        ...

    # ===========================================
    # RUNS
    # ===========================================

    @abstractmethod
    async def find_active_run(self, month: int, year: int) -> Optional[PayrollRunData]:
        """The run for the period that has not been reverted, if any."""

    @abstractmethod
    async def create_payroll_run(self, run: PayrollRunData) -> PayrollRunData:
        ...

    @abstractmethod
    async def get_payroll_run(self, run_id: UUID) -> Optional[PayrollRunData]:
        ...

    @abstractmethod
    async def update_payroll_run(self, run_id: UUID, patch: PayrollRunPatch) -> PayrollRunData:
        ...

    @abstractmethod
    async def revert_payroll_run(self, run_id: UUID, patch: PayrollRunPatch) -> PayrollRunData:
        """
        Delete the run's records, return its loan deductions to SCHEDULED,
        release its reimbursement claims and apply ``patch``, all in one
        transaction.
        """

    # ===========================================
    # RECORDS
    # ===========================================

    @abstractmethod
    async def upsert_payroll_record(
        self,
        record: PayrollRecordData,
        loan_updates: Sequence[LoanDeductionUpdate] = (),
        reimbursement_updates: Sequence[ReimbursementUpdate] = (),
    ) -> PayrollRecordData:
        """
        Insert or replace the record for (run, employee), apply the loan
        deduction updates and refresh the loans they touch, and link or
        release the reimbursement claims. All of it is written or none is.
        """

    @abstractmethod
    async def get_payroll_record(self, record_id: UUID) -> Optional[PayrollRecordData]:
        ...

    @abstractmethod
    async def find_payroll_record(self, run_id: UUID, employee_id: UUID) -> Optional[PayrollRecordData]:
        ...

    @abstractmethod
    async def list_payroll_records(self, run_id: UUID) -> List[PayrollRecordData]:
        ...


class LoanRepository(ABC):
    @abstractmethod
    async def create_loan(self, loan: LoanData, deductions: Sequence[LoanDeductionData]) -> LoanData:
        ...

    @abstractmethod
    async def get_loan(self, loan_id: UUID) -> Optional[LoanData]:
        ...

    @abstractmethod
    async def save_loan(self, loan: LoanData) -> LoanData:
        ...

    @abstractmethod
    async def list_loan_deductions(self, loan_id: UUID) -> List[LoanDeductionData]:
        ...

    @abstractmethod
    async def save_loan_deductions(self, deductions: Sequence[LoanDeductionData]) -> None:
        ...


class AttendanceLockRepository(ABC):
    @abstractmethod
    async def get_attendance_lock(self, month: int, year: int) -> Optional[AttendanceLockData]:
        ...

    @abstractmethod
    async def get_attendance_lock_by_id(self, lock_id: UUID) -> Optional[AttendanceLockData]:
        ...

    @abstractmethod
    async def save_attendance_lock(self, lock: AttendanceLockData) -> AttendanceLockData:
        ...

    @abstractmethod
    async def find_active_run(self, month: int, year: int) -> Optional[PayrollRunData]:
        ...


class SalaryStructureRepository(ABC):
    @abstractmethod
    async def list_salary_structures(self, employee_id: UUID) -> List[SalaryStructureData]:
        ...

    @abstractmethod
    async def add_salary_structure(
        self,
        structure: SalaryStructureData,
        superseded: Optional[SalaryStructureData] = None,
    ) -> SalaryStructureData:
        """Insert ``structure`` and, in the same transaction, save ``superseded``."""


class DeadlineRepository(ABC):
    @abstractmethod
    async def upsert_deadline(self, deadline: StatutoryDeadlineData) -> Tuple[StatutoryDeadlineData, bool]:
        """
        Insert the deadline unless one exists for (type, month, year).
        Returns the stored row and whether it was created.
        """

    @abstractmethod
    async def get_deadline(self, deadline_id: UUID) -> Optional[StatutoryDeadlineData]:
        ...

    @abstractmethod
    async def save_deadline(self, deadline: StatutoryDeadlineData) -> StatutoryDeadlineData:
        ...

    @abstractmethod
    async def list_open_deadlines(self) -> List[StatutoryDeadlineData]:
        """PENDING and OVERDUE deadlines ordered by due date."""


class ReimbursementRepository(ABC):
    @abstractmethod
    async def add_reimbursement_claim(self, claim: ReimbursementClaimData) -> ReimbursementClaimData:
        ...

    @abstractmethod
    async def get_reimbursement_claim(self, claim_id: UUID) -> Optional[ReimbursementClaimData]:
        ...

    @abstractmethod
    async def save_reimbursement_claim(self, claim: ReimbursementClaimData) -> ReimbursementClaimData:
        ...

    @abstractmethod
    async def list_reimbursement_claims(self, employee_id: UUID) -> List[ReimbursementClaimData]:
        """The employee's claims, oldest expense first."""


class NotificationPort(ABC):
    """Outbound notifications. Delivery is someone else's job."""

    @abstractmethod
    async def send_deadline_alert(self, alert: DeadlineAlert) -> None:
        ...

    @abstractmethod
    async def payroll_run_finished(self, run: PayrollRunData) -> None:
        ...


class LoggingNotifier(NotificationPort):
    """Notifier that only writes to the log."""

    async def send_deadline_alert(self, alert: DeadlineAlert) -> None:
        logger.warning(
            f"Statutory deadline {alert.deadline_type.value} due {alert.due_date} "
            f"({alert.threshold.value}, {alert.days_remaining} days): {alert.description}"
        )

    async def payroll_run_finished(self, run: PayrollRunData) -> None:
        logger.info(
            f"Payroll run {run.id} for {run.month:02d}/{run.year} finished as {run.status.value}: "
            f"{run.success_count} succeeded, {run.error_count} failed"
        )
