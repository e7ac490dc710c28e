"""
Payroll Engine - SQLAlchemy Repository

Implements the payroll ports on top of SQLAlchemy async sessions. Each call
opens its own session from the factory, so concurrent payroll units never
share one. Connection-level failures surface as TransientStorageError so
the orchestrator can retry them.
"""

import calendar
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple, Type
from uuid import UUID

from pydantic import BaseModel as Schema
from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.base import BaseModel
from app.models.loan import EmployeeLoan, LoanDeduction, LoanDeductionStatus, LoanStatus
from app.models.payroll import (
    AttendanceLock,
    AttendanceSummary,
    Employee,
    Gender,
    PayrollRecord,
    PayrollRecordStatus,
    PayrollRun,
    PayrollRunStatus,
    ProfessionalTaxSlab,
    SalaryStructure,
)
from app.models.reimbursement import ClaimStatus, ReimbursementClaim
from app.models.statutory import DeadlineStatus, StatutoryDeadline
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
from app.schemas.statutory import StatutoryDeadlineData
from app.services.loan_service import apply_repayment_state
from app.services.payroll_ports import (
    AttendanceLockRepository,
    DeadlineRepository,
    LoanRepository,
    PayrollRepository,
    ReimbursementRepository,
    SalaryStructureRepository,
)
from app.services.tax_calculators.esi_service import contribution_period
from app.services.tax_calculators.pt_service import DEFAULT_PT_SLABS, PTSlab
from app.services.tax_calculators.tds_service import fy_start_year
from app.utils.error_handling import NotFoundException, TransientStorageError

logger = logging.getLogger(__name__)


def _is_transient(exc: DBAPIError) -> bool:
    return isinstance(exc, (OperationalError, InterfaceError)) or exc.connection_invalidated


def _assign(obj: BaseModel, data: Schema, exclude: Iterable[str] = ()) -> BaseModel:
    """Copy schema fields onto an ORM row. The JSON errors column is stored in JSON form."""
    values = data.model_dump()
    if "errors" in values:
        values["errors"] = data.model_dump(mode="json", include={"errors"})["errors"]
    for key, value in values.items():
        if key in exclude:
            continue
        setattr(obj, key, value)
    return obj


def _months_before(start: date, month: int, year: int) -> List[Tuple[int, int]]:
    """(month, year) pairs from ``start`` up to, but excluding, month/year."""
    months = []
    m, y = start.month, start.year
    while (y, m) < (year, month):
        months.append((m, y))
        m, y = (1, y + 1) if m == 12 else (m + 1, y)
    return months


def _period_filter(months: Sequence[Tuple[int, int]]):
    return or_(*[and_(PayrollRecord.month == m, PayrollRecord.year == y) for m, y in months])


class SqlAlchemyPayrollRepository(
    PayrollRepository,
    LoanRepository,
    AttendanceLockRepository,
    SalaryStructureRepository,
    DeadlineRepository,
    ReimbursementRepository,
):
    """All payroll ports over one database."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as db:
            try:
                yield db
            except DBAPIError as exc:
                await db.rollback()
                if _is_transient(exc):
                    logger.warning(f"Transient database error: {exc.__class__.__name__}")
                    raise TransientStorageError(str(exc.orig or exc), original_error=exc) from exc
                raise

    async def _require(self, db: AsyncSession, model: Type[BaseModel], row_id: UUID, label: str):
        row = await db.get(model, row_id)
        if row is None:
            raise NotFoundException(label, row_id)
        return row

    # ===========================================
    # SOURCE DATA
    # ===========================================

    async def list_payroll_employees(self, period_start: date, period_end: date) -> List[EmployeeProfile]:
        async with self._session() as db:
            result = await db.execute(
                select(Employee)
                .where(
                    Employee.is_active == True,  # noqa: E712
                    Employee.date_of_joining <= period_end,
                    or_(Employee.date_of_exit.is_(None), Employee.date_of_exit >= period_start),
                )
                .order_by(Employee.employee_code)
            )
            return [EmployeeProfile.model_validate(e) for e in result.scalars().all()]

    async def get_employee(self, employee_id: UUID) -> Optional[EmployeeProfile]:
        async with self._session() as db:
            employee = await db.get(Employee, employee_id)
            return EmployeeProfile.model_validate(employee) if employee else None

    async def add_employee(self, employee: EmployeeProfile) -> EmployeeProfile:
        async with self._session() as db:
            row = _assign(Employee(), employee)
            db.add(row)
            await db.commit()
            return EmployeeProfile.model_validate(row)

    async def get_salary_structure(self, employee_id: UUID, as_of: date) -> Optional[SalaryStructureData]:
        async with self._session() as db:
            result = await db.execute(
                select(SalaryStructure)
                .where(
                    SalaryStructure.employee_id == employee_id,
                    SalaryStructure.effective_from <= as_of,
                    or_(SalaryStructure.effective_to.is_(None), SalaryStructure.effective_to >= as_of),
                )
                .order_by(SalaryStructure.effective_from.desc())
                .limit(1)
            )
            structure = result.scalar_one_or_none()
            return SalaryStructureData.model_validate(structure) if structure else None

    async def get_attendance_summary(self, employee_id: UUID, month: int, year: int) -> Optional[AttendanceSummaryData]:
        async with self._session() as db:
            result = await db.execute(
                select(AttendanceSummary).where(
                    AttendanceSummary.employee_id == employee_id,
                    AttendanceSummary.month == month,
                    AttendanceSummary.year == year,
                )
            )
            summary = result.scalar_one_or_none()
            return AttendanceSummaryData.model_validate(summary) if summary else None

    async def save_attendance_summary(self, summary: AttendanceSummaryData) -> AttendanceSummaryData:
        async with self._session() as db:
            result = await db.execute(
                select(AttendanceSummary).where(
                    AttendanceSummary.employee_id == summary.employee_id,
                    AttendanceSummary.month == summary.month,
                    AttendanceSummary.year == summary.year,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = AttendanceSummary()
                db.add(row)
            _assign(row, summary)
            await db.commit()
            return AttendanceSummaryData.model_validate(row)

    async def get_professional_tax_slabs(self, state_code: str) -> List[PTSlab]:
        async with self._session() as db:
            result = await db.execute(
                select(ProfessionalTaxSlab)
                .where(
                    ProfessionalTaxSlab.state_code == state_code.upper(),
                    ProfessionalTaxSlab.is_active == True,  # noqa: E712
                )
                .order_by(ProfessionalTaxSlab.salary_from)
            )
            return [
                PTSlab(
                    state_code=s.state_code,
                    salary_from=s.salary_from,
                    salary_to=s.salary_to,
                    tax_amount=s.tax_amount,
                    month=s.month,
                    gender=s.gender.value if s.gender else None,
                )
                for s in result.scalars().all()
            ]

    async def seed_professional_tax_slabs(self, slabs: Sequence[PTSlab] = DEFAULT_PT_SLABS) -> int:
        """Insert the slab table for states that have none yet."""
        async with self._session() as db:
            result = await db.execute(select(ProfessionalTaxSlab.state_code).distinct())
            seeded_states = set(result.scalars().all())
            added = 0
            for slab in slabs:
                if slab.state_code in seeded_states:
                    continue
                db.add(ProfessionalTaxSlab(
                    state_code=slab.state_code,
                    salary_from=slab.salary_from,
                    salary_to=slab.salary_to,
                    tax_amount=slab.tax_amount,
                    month=slab.month,
                    gender=Gender(slab.gender) if slab.gender else None,
                ))
                added += 1
            await db.commit()
            logger.info(f"Seeded {added} professional tax slabs")
            return added

    async def get_tds_withheld(self, employee_id: UUID, month: int, year: int) -> int:
        start = date(fy_start_year(month, year), 4, 1)
        months = _months_before(start, month, year)
        if not months:
            return 0
        async with self._session() as db:
            result = await db.execute(
                select(func.coalesce(func.sum(PayrollRecord.tds), 0))
                .join(PayrollRun, PayrollRun.id == PayrollRecord.payroll_run_id)
                .where(
                    PayrollRecord.employee_id == employee_id,
                    PayrollRecord.status != PayrollRecordStatus.ERROR,
                    PayrollRun.status != PayrollRunStatus.REVERTED,
                    _period_filter(months),
                )
            )
            return int(result.scalar() or 0)

    async def was_esi_covered(self, employee_id: UUID, month: int, year: int) -> bool:
        start, _ = contribution_period(month, year)
        months = _months_before(start, month, year)
        if not months:
            return False
        async with self._session() as db:
            result = await db.execute(
                select(func.count())
                .select_from(PayrollRecord)
                .join(PayrollRun, PayrollRun.id == PayrollRecord.payroll_run_id)
                .where(
                    PayrollRecord.employee_id == employee_id,
                    PayrollRecord.esi_applicable == True,  # noqa: E712
                    PayrollRecord.status != PayrollRecordStatus.ERROR,
                    PayrollRun.status != PayrollRunStatus.REVERTED,
                    _period_filter(months),
                )
            )
            return (result.scalar() or 0) > 0

    async def get_active_loans(self, employee_id: UUID) -> List[LoanData]:
        async with self._session() as db:
            result = await db.execute(
                select(EmployeeLoan)
                .where(
                    EmployeeLoan.employee_id == employee_id,
                    EmployeeLoan.status == LoanStatus.ACTIVE,
                )
                .order_by(EmployeeLoan.start_date, EmployeeLoan.created_at)
            )
            return [LoanData.model_validate(loan) for loan in result.scalars().all()]

    async def get_loan_deduction(self, loan_id: UUID, month: int, year: int) -> Optional[LoanDeductionData]:
        async with self._session() as db:
            result = await db.execute(
                select(LoanDeduction).where(
                    LoanDeduction.loan_id == loan_id,
                    LoanDeduction.month == month,
                    LoanDeduction.year == year,
                )
            )
            deduction = result.scalar_one_or_none()
            return LoanDeductionData.model_validate(deduction) if deduction else None

    async def get_run_loan_deductions(self, employee_id: UUID, run_id: UUID) -> List[LoanDeductionData]:
        async with self._session() as db:
            result = await db.execute(
                select(LoanDeduction)
                .where(
                    LoanDeduction.employee_id == employee_id,
                    LoanDeduction.payroll_run_id == run_id,
                )
                .order_by(LoanDeduction.created_at)
            )
            return [LoanDeductionData.model_validate(d) for d in result.scalars().all()]

    async def get_approved_reimbursements(
        self, employee_id: UUID, month: int, year: int, run_id: UUID
    ) -> List[ReimbursementClaimData]:
        period_end = date(year, month, calendar.monthrange(year, month)[1])
        async with self._session() as db:
            result = await db.execute(
                select(ReimbursementClaim)
                .where(
                    ReimbursementClaim.employee_id == employee_id,
                    ReimbursementClaim.status == ClaimStatus.APPROVED,
                    ReimbursementClaim.expense_date <= period_end,
                    or_(
                        ReimbursementClaim.payroll_run_id.is_(None),
                        ReimbursementClaim.payroll_run_id == run_id,
                    ),
                )
                .order_by(ReimbursementClaim.expense_date, ReimbursementClaim.created_at)
            )
            return [ReimbursementClaimData.model_validate(c) for c in result.scalars().all()]

    # ===========================================
    # ATTENDANCE LOCKS
    # ===========================================

    async def get_attendance_lock(self, month: int, year: int) -> Optional[AttendanceLockData]:
        async with self._session() as db:
            result = await db.execute(
                select(AttendanceLock).where(AttendanceLock.month == month, AttendanceLock.year == year)
            )
            lock = result.scalar_one_or_none()
            return AttendanceLockData.model_validate(lock) if lock else None

    async def get_attendance_lock_by_id(self, lock_id: UUID) -> Optional[AttendanceLockData]:
        async with self._session() as db:
            lock = await db.get(AttendanceLock, lock_id)
            return AttendanceLockData.model_validate(lock) if lock else None

    async def save_attendance_lock(self, lock: AttendanceLockData) -> AttendanceLockData:
        async with self._session() as db:
            row = await db.get(AttendanceLock, lock.id)
            if row is None:
                row = AttendanceLock()
                db.add(row)
            _assign(row, lock)
            await db.commit()
            return AttendanceLockData.model_validate(row)

    # ===========================================
    # SALARY STRUCTURES
    # ===========================================

    async def list_salary_structures(self, employee_id: UUID) -> List[SalaryStructureData]:
        async with self._session() as db:
            result = await db.execute(
                select(SalaryStructure)
                .where(SalaryStructure.employee_id == employee_id)
                .order_by(SalaryStructure.effective_from)
            )
            return [SalaryStructureData.model_validate(s) for s in result.scalars().all()]

    async def add_salary_structure(
        self,
        structure: SalaryStructureData,
        superseded: Optional[SalaryStructureData] = None,
    ) -> SalaryStructureData:
        async with self._session() as db:
            if superseded is not None:
                previous = await self._require(db, SalaryStructure, superseded.id, "Salary structure")
                previous.effective_to = superseded.effective_to
            row = _assign(SalaryStructure(), structure)
            db.add(row)
            await db.commit()
            return SalaryStructureData.model_validate(row)

    # ===========================================
    # RUNS
    # ===========================================

    async def find_active_run(self, month: int, year: int) -> Optional[PayrollRunData]:
        async with self._session() as db:
            result = await db.execute(
                select(PayrollRun)
                .where(
                    PayrollRun.month == month,
                    PayrollRun.year == year,
                    PayrollRun.status != PayrollRunStatus.REVERTED,
                )
                .order_by(PayrollRun.created_at.desc())
                .limit(1)
            )
            run = result.scalar_one_or_none()
            return PayrollRunData.model_validate(run) if run else None

    async def create_payroll_run(self, run: PayrollRunData) -> PayrollRunData:
        async with self._session() as db:
            row = _assign(PayrollRun(), run)
            db.add(row)
            await db.commit()
            return PayrollRunData.model_validate(row)

    async def get_payroll_run(self, run_id: UUID) -> Optional[PayrollRunData]:
        async with self._session() as db:
            run = await db.get(PayrollRun, run_id)
            return PayrollRunData.model_validate(run) if run else None

    async def update_payroll_run(self, run_id: UUID, patch: PayrollRunPatch) -> PayrollRunData:
        async with self._session() as db:
            run = await self._require(db, PayrollRun, run_id, "Payroll run")
            self._apply_patch(run, patch)
            await db.commit()
            return PayrollRunData.model_validate(run)

    async def revert_payroll_run(self, run_id: UUID, patch: PayrollRunPatch) -> PayrollRunData:
        async with self._session() as db:
            run = await self._require(db, PayrollRun, run_id, "Payroll run")

            result = await db.execute(select(LoanDeduction).where(LoanDeduction.payroll_run_id == run_id))
            deductions = result.scalars().all()
            loan_ids = {d.loan_id for d in deductions}
            for deduction in deductions:
                deduction.status = LoanDeductionStatus.SCHEDULED
                deduction.payroll_run_id = None

            claims = await db.execute(select(ReimbursementClaim).where(ReimbursementClaim.payroll_run_id == run_id))
            for claim in claims.scalars().all():
                claim.payroll_run_id = None

            await db.execute(delete(PayrollRecord).where(PayrollRecord.payroll_run_id == run_id))
            await db.flush()
            for loan_id in loan_ids:
                await self._refresh_loan(db, loan_id)

            self._apply_patch(run, patch)
            await db.commit()
            return PayrollRunData.model_validate(run)

    @staticmethod
    def _apply_patch(run: PayrollRun, patch: PayrollRunPatch) -> None:
        values: Dict[str, Any] = patch.model_dump(exclude_unset=True)
        if "errors" in patch.model_fields_set:
            values["errors"] = patch.model_dump(mode="json", include={"errors"})["errors"]
        for key, value in values.items():
            setattr(run, key, value)

    # ===========================================
    # RECORDS
    # ===========================================

    async def upsert_payroll_record(
        self,
        record: PayrollRecordData,
        loan_updates: Sequence[LoanDeductionUpdate] = (),
        reimbursement_updates: Sequence[ReimbursementUpdate] = (),
    ) -> PayrollRecordData:
        async with self._session() as db:
            result = await db.execute(
                select(PayrollRecord).where(
                    PayrollRecord.payroll_run_id == record.payroll_run_id,
                    PayrollRecord.employee_id == record.employee_id,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = PayrollRecord()
                db.add(row)
                _assign(row, record)
            else:
                # The row keeps its identity across recalculations
                _assign(row, record, exclude=("id",))

            touched_loans = set()
            for update in loan_updates:
                deduction = await self._require(db, LoanDeduction, update.deduction_id, "Loan deduction")
                deduction.status = update.status
                deduction.payroll_run_id = update.payroll_run_id
                touched_loans.add(update.loan_id)
            for update in reimbursement_updates:
                claim = await self._require(db, ReimbursementClaim, update.claim_id, "Reimbursement claim")
                claim.payroll_run_id = update.payroll_run_id
            await db.flush()
            for loan_id in touched_loans:
                await self._refresh_loan(db, loan_id)

            await db.commit()
            return PayrollRecordData.model_validate(row)

    async def get_payroll_record(self, record_id: UUID) -> Optional[PayrollRecordData]:
        async with self._session() as db:
            record = await db.get(PayrollRecord, record_id)
            return PayrollRecordData.model_validate(record) if record else None

    async def find_payroll_record(self, run_id: UUID, employee_id: UUID) -> Optional[PayrollRecordData]:
        async with self._session() as db:
            result = await db.execute(
                select(PayrollRecord).where(
                    PayrollRecord.payroll_run_id == run_id,
                    PayrollRecord.employee_id == employee_id,
                )
            )
            record = result.scalar_one_or_none()
            return PayrollRecordData.model_validate(record) if record else None

    async def list_payroll_records(self, run_id: UUID) -> List[PayrollRecordData]:
        async with self._session() as db:
            result = await db.execute(
                select(PayrollRecord)
                .where(PayrollRecord.payroll_run_id == run_id)
                .order_by(PayrollRecord.employee_name)
            )
            return [PayrollRecordData.model_validate(r) for r in result.scalars().all()]

    # ===========================================
    # LOANS
    # ===========================================

    async def create_loan(self, loan: LoanData, deductions: Sequence[LoanDeductionData]) -> LoanData:
        async with self._session() as db:
            row = _assign(EmployeeLoan(), loan)
            db.add(row)
            await db.flush()
            for deduction in deductions:
                db.add(_assign(LoanDeduction(), deduction))
            await db.commit()
            return LoanData.model_validate(row)

    async def get_loan(self, loan_id: UUID) -> Optional[LoanData]:
        async with self._session() as db:
            loan = await db.get(EmployeeLoan, loan_id)
            return LoanData.model_validate(loan) if loan else None

    async def save_loan(self, loan: LoanData) -> LoanData:
        async with self._session() as db:
            row = await self._require(db, EmployeeLoan, loan.id, "Loan")
            _assign(row, loan)
            await db.commit()
            return LoanData.model_validate(row)

    async def list_loan_deductions(self, loan_id: UUID) -> List[LoanDeductionData]:
        async with self._session() as db:
            return await self._loan_deductions(db, loan_id)

    async def save_loan_deductions(self, deductions: Sequence[LoanDeductionData]) -> None:
        async with self._session() as db:
            for deduction in deductions:
                row = await self._require(db, LoanDeduction, deduction.id, "Loan deduction")
                _assign(row, deduction)
            await db.commit()

    async def _loan_deductions(self, db: AsyncSession, loan_id: UUID) -> List[LoanDeductionData]:
        result = await db.execute(
            select(LoanDeduction)
            .where(LoanDeduction.loan_id == loan_id)
            .order_by(LoanDeduction.installment_number)
        )
        return [LoanDeductionData.model_validate(d) for d in result.scalars().all()]

    async def _refresh_loan(self, db: AsyncSession, loan_id: UUID) -> None:
        """Bring the loan's balance and status in line with its ledger."""
        row = await self._require(db, EmployeeLoan, loan_id, "Loan")
        refreshed = apply_repayment_state(LoanData.model_validate(row), await self._loan_deductions(db, loan_id))
        _assign(row, refreshed)

    # ===========================================
    # REIMBURSEMENT CLAIMS
    # ===========================================

    async def add_reimbursement_claim(self, claim: ReimbursementClaimData) -> ReimbursementClaimData:
        async with self._session() as db:
            row = _assign(ReimbursementClaim(), claim)
            db.add(row)
            await db.commit()
            return ReimbursementClaimData.model_validate(row)

    async def get_reimbursement_claim(self, claim_id: UUID) -> Optional[ReimbursementClaimData]:
        async with self._session() as db:
            claim = await db.get(ReimbursementClaim, claim_id)
            return ReimbursementClaimData.model_validate(claim) if claim else None

    async def save_reimbursement_claim(self, claim: ReimbursementClaimData) -> ReimbursementClaimData:
        async with self._session() as db:
            row = await self._require(db, ReimbursementClaim, claim.id, "Reimbursement claim")
            _assign(row, claim)
            await db.commit()
            return ReimbursementClaimData.model_validate(row)

    async def list_reimbursement_claims(self, employee_id: UUID) -> List[ReimbursementClaimData]:
        async with self._session() as db:
            result = await db.execute(
                select(ReimbursementClaim)
                .where(ReimbursementClaim.employee_id == employee_id)
                .order_by(ReimbursementClaim.expense_date, ReimbursementClaim.created_at)
            )
            return [ReimbursementClaimData.model_validate(c) for c in result.scalars().all()]

    # ===========================================
    # STATUTORY DEADLINES
    # ===========================================

    async def upsert_deadline(self, deadline: StatutoryDeadlineData) -> Tuple[StatutoryDeadlineData, bool]:
        async with self._session() as db:
            result = await db.execute(
                select(StatutoryDeadline).where(
                    StatutoryDeadline.deadline_type == deadline.deadline_type,
                    StatutoryDeadline.month == deadline.month,
                    StatutoryDeadline.year == deadline.year,
                )
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                return StatutoryDeadlineData.model_validate(existing), False
            row = _assign(StatutoryDeadline(), deadline)
            db.add(row)
            await db.commit()
            return StatutoryDeadlineData.model_validate(row), True

    async def get_deadline(self, deadline_id: UUID) -> Optional[StatutoryDeadlineData]:
        async with self._session() as db:
            deadline = await db.get(StatutoryDeadline, deadline_id)
            return StatutoryDeadlineData.model_validate(deadline) if deadline else None

    async def save_deadline(self, deadline: StatutoryDeadlineData) -> StatutoryDeadlineData:
        async with self._session() as db:
            row = await self._require(db, StatutoryDeadline, deadline.id, "Statutory deadline")
            _assign(row, deadline)
            await db.commit()
            return StatutoryDeadlineData.model_validate(row)

    async def list_open_deadlines(self) -> List[StatutoryDeadlineData]:
        async with self._session() as db:
            result = await db.execute(
                select(StatutoryDeadline)
                .where(StatutoryDeadline.status.in_([DeadlineStatus.PENDING, DeadlineStatus.OVERDUE]))
                .order_by(StatutoryDeadline.due_date)
            )
            return [StatutoryDeadlineData.model_validate(d) for d in result.scalars().all()]
