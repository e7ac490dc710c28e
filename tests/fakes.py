"""
Payroll Engine - In-Memory Test Doubles

Dict-backed implementation of every payroll port, plus helpers for seeding
employees. Values are copied on the way in and out so tests cannot mutate
stored state by accident.
"""

import asyncio
import calendar
from collections import Counter
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Sequence, Set, Tuple
from uuid import UUID, uuid4

from app.models.loan import LoanDeductionStatus, LoanStatus
from app.models.payroll import Gender, PayrollRecordStatus, PayrollRunStatus
from app.models.reimbursement import ClaimStatus
from app.models.statutory import DeadlineStatus
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
from app.services.loan_service import apply_repayment_state
from app.services.payroll_ports import (
    AttendanceLockRepository,
    DeadlineRepository,
    LoanRepository,
    NotificationPort,
    PayrollRepository,
    ReimbursementRepository,
    SalaryStructureRepository,
)
from app.services.tax_calculators.esi_service import contribution_period
from app.services.tax_calculators.pt_service import DEFAULT_PT_SLABS, PTSlab
from app.services.tax_calculators.tds_service import TaxRegime, fy_start_year
from app.utils.error_handling import NotFoundException, TransientStorageError


class InMemoryPayrollRepository(
    PayrollRepository,
    LoanRepository,
    AttendanceLockRepository,
    SalaryStructureRepository,
    DeadlineRepository,
    ReimbursementRepository,
):
    def __init__(self):
        self.employees: Dict[UUID, EmployeeProfile] = {}
        self.structures: Dict[UUID, SalaryStructureData] = {}
        self.attendance: Dict[Tuple[UUID, int, int], AttendanceSummaryData] = {}
        self.locks: Dict[UUID, AttendanceLockData] = {}
        self.pt_slabs: List[PTSlab] = list(DEFAULT_PT_SLABS)
        self.runs: Dict[UUID, PayrollRunData] = {}
        self.records: Dict[UUID, PayrollRecordData] = {}
        self.loans: Dict[UUID, LoanData] = {}
        self.deductions: Dict[UUID, LoanDeductionData] = {}
        self.deadlines: Dict[UUID, StatutoryDeadlineData] = {}
        self.claims: Dict[UUID, ReimbursementClaimData] = {}

        # method name -> number of upcoming calls that raise TransientStorageError
        self.failures: Counter = Counter()
        # employees whose CALCULATED record can never be saved
        self.unsavable_employees: Set[UUID] = set()
        self.calls: Counter = Counter()

    async def _enter(self, method: str) -> None:
        self.calls[method] += 1
        # Yield so concurrent units really interleave
        await asyncio.sleep(0)
        if self.failures[method] > 0:
            self.failures[method] -= 1
            raise TransientStorageError(f"{method} unavailable")

    # ===========================================
    # SOURCE DATA
    # ===========================================

    async def list_payroll_employees(self, period_start: date, period_end: date) -> List[EmployeeProfile]:
        await self._enter("list_payroll_employees")
        employees = [
            e for e in self.employees.values()
            if e.is_active
            and e.date_of_joining <= period_end
            and (e.date_of_exit is None or e.date_of_exit >= period_start)
        ]
        return [e.model_copy() for e in sorted(employees, key=lambda e: e.employee_code)]

    async def get_employee(self, employee_id: UUID) -> Optional[EmployeeProfile]:
        await self._enter("get_employee")
        employee = self.employees.get(employee_id)
        return employee.model_copy() if employee else None

    async def get_salary_structure(self, employee_id: UUID, as_of: date) -> Optional[SalaryStructureData]:
        await self._enter("get_salary_structure")
        matches = [
            s for s in self.structures.values()
            if s.employee_id == employee_id and s.is_effective_on(as_of)
        ]
        if not matches:
            return None
        return max(matches, key=lambda s: s.effective_from).model_copy()

    async def get_attendance_summary(self, employee_id: UUID, month: int, year: int) -> Optional[AttendanceSummaryData]:
        await self._enter("get_attendance_summary")
        summary = self.attendance.get((employee_id, month, year))
        return summary.model_copy() if summary else None

    async def get_professional_tax_slabs(self, state_code: str) -> List[PTSlab]:
        await self._enter("get_professional_tax_slabs")
        return [s for s in self.pt_slabs if s.state_code == state_code]

    def _prior_records(self, employee_id: UUID, month: int, year: int, since: date) -> List[PayrollRecordData]:
        earlier = []
        for record in self.records.values():
            run = self.runs.get(record.payroll_run_id)
            if record.employee_id != employee_id or run is None:
                continue
            if record.status == PayrollRecordStatus.ERROR or run.status == PayrollRunStatus.REVERTED:
                continue
            if (since.year, since.month) <= (record.year, record.month) < (year, month):
                earlier.append(record)
        return earlier

    async def get_tds_withheld(self, employee_id: UUID, month: int, year: int) -> int:
        await self._enter("get_tds_withheld")
        start = date(fy_start_year(month, year), 4, 1)
        return sum(r.tds for r in self._prior_records(employee_id, month, year, start))

    async def was_esi_covered(self, employee_id: UUID, month: int, year: int) -> bool:
        await self._enter("was_esi_covered")
        start, _ = contribution_period(month, year)
        return any(r.esi_applicable for r in self._prior_records(employee_id, month, year, start))

    async def get_active_loans(self, employee_id: UUID) -> List[LoanData]:
        await self._enter("get_active_loans")
        loans = [
            loan for loan in self.loans.values()
            if loan.employee_id == employee_id and loan.status == LoanStatus.ACTIVE
        ]
        return [loan.model_copy() for loan in sorted(loans, key=lambda loan: loan.start_date)]

    async def get_loan_deduction(self, loan_id: UUID, month: int, year: int) -> Optional[LoanDeductionData]:
        await self._enter("get_loan_deduction")
        for deduction in self.deductions.values():
            if deduction.loan_id == loan_id and deduction.month == month and deduction.year == year:
                return deduction.model_copy()
        return None

    async def get_run_loan_deductions(self, employee_id: UUID, run_id: UUID) -> List[LoanDeductionData]:
        await self._enter("get_run_loan_deductions")
        return [
            d.model_copy() for d in self.deductions.values()
            if d.employee_id == employee_id and d.payroll_run_id == run_id
        ]

    async def get_approved_reimbursements(
        self, employee_id: UUID, month: int, year: int, run_id: UUID
    ) -> List[ReimbursementClaimData]:
        await self._enter("get_approved_reimbursements")
        period_end = date(year, month, calendar.monthrange(year, month)[1])
        claims = [
            c for c in self.claims.values()
            if c.employee_id == employee_id
            and c.status == ClaimStatus.APPROVED
            and c.expense_date <= period_end
            and c.payroll_run_id in (None, run_id)
        ]
        return [c.model_copy() for c in sorted(claims, key=lambda c: c.expense_date)]

    # ===========================================
    # ATTENDANCE LOCKS
    # ===========================================

    async def get_attendance_lock(self, month: int, year: int) -> Optional[AttendanceLockData]:
        await self._enter("get_attendance_lock")
        for lock in self.locks.values():
            if lock.month == month and lock.year == year:
                return lock.model_copy()
        return None

    async def get_attendance_lock_by_id(self, lock_id: UUID) -> Optional[AttendanceLockData]:
        lock = self.locks.get(lock_id)
        return lock.model_copy() if lock else None

    async def save_attendance_lock(self, lock: AttendanceLockData) -> AttendanceLockData:
        self.locks[lock.id] = lock.model_copy()
        return lock.model_copy()

    # ===========================================
    # SALARY STRUCTURES
    # ===========================================

    async def list_salary_structures(self, employee_id: UUID) -> List[SalaryStructureData]:
        return [s.model_copy() for s in self.structures.values() if s.employee_id == employee_id]

    async def add_salary_structure(
        self,
        structure: SalaryStructureData,
        superseded: Optional[SalaryStructureData] = None,
    ) -> SalaryStructureData:
        if superseded is not None:
            self.structures[superseded.id] = superseded.model_copy()
        self.structures[structure.id] = structure.model_copy()
        return structure.model_copy()

    # ===========================================
    # RUNS
    # ===========================================

    async def find_active_run(self, month: int, year: int) -> Optional[PayrollRunData]:
        await self._enter("find_active_run")
        for run in self.runs.values():
            if run.month == month and run.year == year and run.status != PayrollRunStatus.REVERTED:
                return run.model_copy(deep=True)
        return None

    async def create_payroll_run(self, run: PayrollRunData) -> PayrollRunData:
        await self._enter("create_payroll_run")
        self.runs[run.id] = run.model_copy(deep=True)
        return run.model_copy(deep=True)

    async def get_payroll_run(self, run_id: UUID) -> Optional[PayrollRunData]:
        await self._enter("get_payroll_run")
        run = self.runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def update_payroll_run(self, run_id: UUID, patch: PayrollRunPatch) -> PayrollRunData:
        await self._enter("update_payroll_run")
        run = self.runs.get(run_id)
        if run is None:
            raise NotFoundException("Payroll run", run_id)
        updated = PayrollRunData.model_validate({**run.model_dump(), **patch.model_dump(exclude_unset=True)})
        self.runs[run_id] = updated
        return updated.model_copy(deep=True)

    async def revert_payroll_run(self, run_id: UUID, patch: PayrollRunPatch) -> PayrollRunData:
        touched = set()
        for deduction_id, deduction in list(self.deductions.items()):
            if deduction.payroll_run_id == run_id:
                self.deductions[deduction_id] = deduction.model_copy(update={
                    "status": LoanDeductionStatus.SCHEDULED,
                    "payroll_run_id": None,
                })
                touched.add(deduction.loan_id)
        for claim_id, claim in list(self.claims.items()):
            if claim.payroll_run_id == run_id:
                self.claims[claim_id] = claim.model_copy(update={"payroll_run_id": None})
        for record_id in [r.id for r in self.records.values() if r.payroll_run_id == run_id]:
            del self.records[record_id]
        for loan_id in touched:
            self._refresh_loan(loan_id)
        return await self.update_payroll_run(run_id, patch)

    # ===========================================
    # RECORDS
    # ===========================================

    async def upsert_payroll_record(
        self,
        record: PayrollRecordData,
        loan_updates: Sequence[LoanDeductionUpdate] = (),
        reimbursement_updates: Sequence[ReimbursementUpdate] = (),
    ) -> PayrollRecordData:
        await self._enter("upsert_payroll_record")
        if record.employee_id in self.unsavable_employees and record.status != PayrollRecordStatus.ERROR:
            raise TransientStorageError("record table unavailable")

        existing = self._find_record(record.payroll_run_id, record.employee_id)
        if existing is not None:
            record = record.model_copy(update={"id": existing.id})
        self.records[record.id] = record.model_copy()

        touched = set()
        for update in loan_updates:
            deduction = self.deductions[update.deduction_id]
            self.deductions[deduction.id] = deduction.model_copy(update={
                "status": update.status,
                "payroll_run_id": update.payroll_run_id,
            })
            touched.add(update.loan_id)
        for update in reimbursement_updates:
            claim = self.claims[update.claim_id]
            self.claims[claim.id] = claim.model_copy(update={"payroll_run_id": update.payroll_run_id})
        for loan_id in touched:
            self._refresh_loan(loan_id)
        return record.model_copy()

    def _find_record(self, run_id: UUID, employee_id: UUID) -> Optional[PayrollRecordData]:
        for record in self.records.values():
            if record.payroll_run_id == run_id and record.employee_id == employee_id:
                return record
        return None

    async def get_payroll_record(self, record_id: UUID) -> Optional[PayrollRecordData]:
        record = self.records.get(record_id)
        return record.model_copy() if record else None

    async def find_payroll_record(self, run_id: UUID, employee_id: UUID) -> Optional[PayrollRecordData]:
        record = self._find_record(run_id, employee_id)
        return record.model_copy() if record else None

    async def list_payroll_records(self, run_id: UUID) -> List[PayrollRecordData]:
        await self._enter("list_payroll_records")
        records = [r for r in self.records.values() if r.payroll_run_id == run_id]
        return [r.model_copy() for r in sorted(records, key=lambda r: r.employee_name)]

    # ===========================================
    # LOANS
    # ===========================================

    async def create_loan(self, loan: LoanData, deductions: Sequence[LoanDeductionData]) -> LoanData:
        self.loans[loan.id] = loan.model_copy()
        for deduction in deductions:
            self.deductions[deduction.id] = deduction.model_copy()
        return loan.model_copy()

    async def get_loan(self, loan_id: UUID) -> Optional[LoanData]:
        loan = self.loans.get(loan_id)
        return loan.model_copy() if loan else None

    async def save_loan(self, loan: LoanData) -> LoanData:
        self.loans[loan.id] = loan.model_copy()
        return loan.model_copy()

    async def list_loan_deductions(self, loan_id: UUID) -> List[LoanDeductionData]:
        deductions = [d for d in self.deductions.values() if d.loan_id == loan_id]
        return [d.model_copy() for d in sorted(deductions, key=lambda d: d.installment_number)]

    async def save_loan_deductions(self, deductions: Sequence[LoanDeductionData]) -> None:
        for deduction in deductions:
            self.deductions[deduction.id] = deduction.model_copy()

    def _refresh_loan(self, loan_id: UUID) -> None:
        deductions = [d for d in self.deductions.values() if d.loan_id == loan_id]
        self.loans[loan_id] = apply_repayment_state(self.loans[loan_id], deductions)

    # ===========================================
    # REIMBURSEMENT CLAIMS
    # ===========================================

    async def add_reimbursement_claim(self, claim: ReimbursementClaimData) -> ReimbursementClaimData:
        self.claims[claim.id] = claim.model_copy()
        return claim.model_copy()

    async def get_reimbursement_claim(self, claim_id: UUID) -> Optional[ReimbursementClaimData]:
        claim = self.claims.get(claim_id)
        return claim.model_copy() if claim else None

    async def save_reimbursement_claim(self, claim: ReimbursementClaimData) -> ReimbursementClaimData:
        self.claims[claim.id] = claim.model_copy()
        return claim.model_copy()

    async def list_reimbursement_claims(self, employee_id: UUID) -> List[ReimbursementClaimData]:
        claims = [c for c in self.claims.values() if c.employee_id == employee_id]
        return [c.model_copy() for c in sorted(claims, key=lambda c: c.expense_date)]

    # ===========================================
    # STATUTORY DEADLINES
    # ===========================================

    async def upsert_deadline(self, deadline: StatutoryDeadlineData) -> Tuple[StatutoryDeadlineData, bool]:
        for existing in self.deadlines.values():
            if (existing.deadline_type, existing.month, existing.year) == (
                deadline.deadline_type, deadline.month, deadline.year
            ):
                return existing.model_copy(), False
        self.deadlines[deadline.id] = deadline.model_copy()
        return deadline.model_copy(), True

    async def get_deadline(self, deadline_id: UUID) -> Optional[StatutoryDeadlineData]:
        deadline = self.deadlines.get(deadline_id)
        return deadline.model_copy() if deadline else None

    async def save_deadline(self, deadline: StatutoryDeadlineData) -> StatutoryDeadlineData:
        self.deadlines[deadline.id] = deadline.model_copy()
        return deadline.model_copy()

    async def list_open_deadlines(self) -> List[StatutoryDeadlineData]:
        open_deadlines = [d for d in self.deadlines.values() if d.status in (DeadlineStatus.PENDING, DeadlineStatus.OVERDUE)]
        return [d.model_copy() for d in sorted(open_deadlines, key=lambda d: d.due_date)]

    # ===========================================
    # SEEDING
    # ===========================================

    def add_employee(
        self,
        code: str,
        basic: int,
        hra: int = 0,
        special_allowance: int = 0,
        month: int = 6,
        year: int = 2024,
        working_days: int = 30,
        lop_days: int = 0,
        work_state: Optional[str] = None,
        gender: Optional[Gender] = Gender.MALE,
        tax_regime: TaxRegime = TaxRegime.NEW,
        uan: Optional[str] = "100000000001",
        esic_number: Optional[str] = "3100000001",
        pan: Optional[str] = "ABCDE1234F",
        with_structure: bool = True,
        with_attendance: bool = True,
    ) -> EmployeeProfile:
        """Employee with a structure from Jan 2020 and attendance for one month."""
        employee = EmployeeProfile(
            id=uuid4(),
            employee_code=code,
            full_name=f"Employee {code}",
            gender=gender,
            work_state=work_state,
            uan=uan,
            esic_number=esic_number,
            pan=pan,
            date_of_joining=date(2020, 1, 1),
        )
        self.employees[employee.id] = employee
        if with_structure:
            structure = SalaryStructureData(
                employee_id=employee.id,
                effective_from=date(2020, 1, 1),
                basic=basic,
                hra=hra,
                special_allowance=special_allowance,
                tax_regime=tax_regime,
            )
            self.structures[structure.id] = structure
        if with_attendance:
            self.add_attendance(employee.id, month, year, working_days, lop_days)
        return employee

    def add_attendance(self, employee_id: UUID, month: int, year: int, working_days: int = 30, lop_days: int = 0) -> None:
        self.attendance[(employee_id, month, year)] = AttendanceSummaryData(
            employee_id=employee_id,
            month=month,
            year=year,
            working_days=working_days,
            paid_days=working_days - lop_days,
            lop_days=lop_days,
        )

    def add_claim(
        self,
        employee_id: UUID,
        amount: int,
        expense_date: date = date(2024, 6, 10),
        status: ClaimStatus = ClaimStatus.APPROVED,
    ) -> ReimbursementClaimData:
        claim = ReimbursementClaimData(
            employee_id=employee_id,
            expense_date=expense_date,
            amount=amount,
            description="Client visit travel",
            status=status,
        )
        self.claims[claim.id] = claim
        return claim

    def lock_period(self, month: int, year: int) -> AttendanceLockData:
        lock = AttendanceLockData(
            month=month,
            year=year,
            locked_by="hr.manager",
            locked_at=datetime.now(timezone.utc),
        )
        self.locks[lock.id] = lock
        return lock

    def records_for(self, run_id: UUID) -> List[PayrollRecordData]:
        return [r for r in self.records.values() if r.payroll_run_id == run_id]


class RecordingNotifier(NotificationPort):
    """Keeps every notification for assertions."""

    def __init__(self):
        self.alerts: List[DeadlineAlert] = []
        self.finished_runs: List[PayrollRunData] = []

    async def send_deadline_alert(self, alert: DeadlineAlert) -> None:
        self.alerts.append(alert)

    async def payroll_run_finished(self, run: PayrollRunData) -> None:
        self.finished_runs.append(run)
