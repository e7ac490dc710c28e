"""
Payroll Engine - Payroll Run Service

Drives a payroll run through its lifecycle:

    PENDING -> PROCESSING -> COMPLETED
    PENDING | PROCESSING -> FAILED (run-level error or external cancel)
    COMPLETED | FAILED -> REVERTED

Within PROCESSING the run moves through the CALCULATION, STATUTORY and
FINALIZATION stages. Each employee is an isolated unit: a failure becomes an
ERROR record and the run carries on. Units may run concurrently; the run's
counters are only ever written by one coroutine at a time.
"""

import asyncio
import calendar
import logging
from datetime import date, datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar
from uuid import UUID

from pydantic import ValidationError

from app.models.loan import LoanDeductionStatus
from app.models.payroll import PayrollRecordStatus, PayrollRunStage, PayrollRunStatus
from app.schemas.loan import (
    LoanData,
    LoanDeductionData,
    LoanDeductionUpdate,
    LoanSkipPolicy,
    SkipIfNegative,
    loan_skip_policy_adapter,
)
from app.schemas.payroll import (
    EmployeeProfile,
    PayrollRecordData,
    PayrollRunData,
    PayrollRunPatch,
    PayrollRunSummary,
    RunErrorEntry,
    SalaryStructureData,
)
from app.schemas.reimbursement import ReimbursementUpdate
from app.services.payroll_calculator import (
    EmployeePayroll,
    EmployeePayrollCalculator,
    SalaryStructureViolation,
    StatutoryParameters,
)
from app.services.payroll_ports import LoggingNotifier, NotificationPort, PayrollRepository
from app.services.tax_calculators.pt_service import PTSlab
from app.utils.error_handling import (
    AppException,
    AttendanceNotLockedError,
    DuplicateRunError,
    ErrorCode,
    InvalidPeriodException,
    InvalidStateTransitionError,
    NotFoundException,
    PayrollValidationError,
    PerEmployeeCalculationError,
    RecordImmutableError,
    RunIntegrityError,
)
from app.utils.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_PAYROLL_YEAR = 2000
MAX_PAYROLL_YEAR = 2100


def period_bounds(month: int, year: int) -> Tuple[date, date]:
    """First and last day of the payroll month."""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def validate_period(month: int, year: int) -> None:
    if not isinstance(month, int) or not isinstance(year, int):
        raise InvalidPeriodException(month, year)
    if not 1 <= month <= 12 or not MIN_PAYROLL_YEAR <= year <= MAX_PAYROLL_YEAR:
        raise InvalidPeriodException(month, year)


def parse_skip_policy(raw: str) -> LoanSkipPolicy:
    """Parse the configured skip policy JSON into its tagged variant."""
    try:
        return loan_skip_policy_adapter.validate_json(raw)
    except ValidationError as exc:
        raise PayrollValidationError(
            f"Invalid loan skip policy: {raw}",
            field="loan_skip_policy",
            code=ErrorCode.INVALID_POLICY,
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


class _RunProgress:
    """
    Counters for one run. Every update goes through ``record`` under a lock,
    and the persisted copy is written while the lock is held.
    """

    def __init__(self, run_id: UUID, total: int, persist: Callable[[PayrollRunPatch], Awaitable[None]]):
        self.run_id = run_id
        self.total = total
        self.processed = 0
        self.success = 0
        self.error = 0
        self.errors: List[RunErrorEntry] = []
        self._persist = persist
        self._lock = asyncio.Lock()

    async def record(self, employee_id: UUID, error_message: Optional[str]) -> None:
        async with self._lock:
            self.processed += 1
            if error_message is None:
                self.success += 1
            else:
                self.error += 1
                self.errors.append(RunErrorEntry(employee_id=employee_id, message=error_message))
            await self._persist(self.patch())

    def patch(self) -> PayrollRunPatch:
        return PayrollRunPatch(
            processed_count=self.processed,
            success_count=self.success,
            error_count=self.error,
            errors=list(self.errors),
        )


class _UnitContext:
    """Read-only data shared by the units of one run."""

    def __init__(self, run: PayrollRunData):
        self.run = run
        self.period_start, self.period_end = period_bounds(run.month, run.year)
        self.pt_slabs: Dict[str, List[PTSlab]] = {}
        self.cancelled = False


class PayrollRunService:
    """
    Orchestrates payroll runs over a PayrollRepository.

    Nothing here touches a database or global settings directly; the caller
    wires in the repository, notifier and parameters.
    """

    def __init__(
        self,
        repository: PayrollRepository,
        notifier: Optional[NotificationPort] = None,
        parameters: Optional[StatutoryParameters] = None,
        skip_policy: Optional[LoanSkipPolicy] = None,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = 1,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.repository = repository
        self.notifier = notifier or LoggingNotifier()
        self.calculator = EmployeePayrollCalculator(parameters)
        self.skip_policy = skip_policy or SkipIfNegative()
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = max(1, concurrency)
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        repository: PayrollRepository,
        settings,
        notifier: Optional[NotificationPort] = None,
    ) -> "PayrollRunService":
        return cls(
            repository,
            notifier=notifier,
            parameters=StatutoryParameters.from_settings(settings),
            skip_policy=parse_skip_policy(settings.loan_skip_policy),
            retry_policy=RetryPolicy(
                attempts=settings.storage_retry_attempts,
                base_delay=settings.storage_retry_base_delay,
                max_delay=settings.storage_retry_max_delay,
            ),
            concurrency=settings.payroll_worker_concurrency,
        )

    async def _io(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        return await call_with_retry(operation, self.retry_policy, description, sleep=self._sleep)

    # ===========================================
    # RUN LIFECYCLE
    # ===========================================

    async def start_run(self, month: int, year: int, initiated_by: Optional[str] = None) -> PayrollRunData:
        """
        Create a PENDING run for the period.

        Raises:
            InvalidPeriodException: month/year out of range
            AttendanceNotLockedError: no effective attendance lock for the period
            DuplicateRunError: a non-reverted run already exists
        """
        validate_period(month, year)

        lock = await self.repository.get_attendance_lock(month, year)
        if lock is None or not lock.is_locked:
            raise AttendanceNotLockedError(month, year)

        existing = await self.repository.find_active_run(month, year)
        if existing is not None:
            raise DuplicateRunError(month, year, existing.id)

        run = await self.repository.create_payroll_run(PayrollRunData(
            month=month,
            year=year,
            status=PayrollRunStatus.PENDING,
            current_stage=PayrollRunStage.VALIDATION,
            initiated_by=initiated_by,
        ))
        logger.info(f"Created payroll run {run.id} for {month:02d}/{year}")
        return run

    async def process_run(self, run_id: UUID) -> PayrollRunSummary:
        """Calculate every employee, aggregate totals and complete the run."""
        run = await self.get_run(run_id)
        if run.status != PayrollRunStatus.PENDING:
            raise InvalidStateTransitionError("Payroll run", run.status.value, PayrollRunStatus.PROCESSING.value)

        # Precondition may have changed since the run was created
        lock = await self.repository.get_attendance_lock(run.month, run.year)
        if lock is None or not lock.is_locked:
            raise AttendanceNotLockedError(run.month, run.year)

        run = await self.repository.update_payroll_run(run.id, PayrollRunPatch(
            status=PayrollRunStatus.PROCESSING,
            current_stage=PayrollRunStage.CALCULATION,
            started_at=datetime.now(timezone.utc),
        ))
        ctx = _UnitContext(run)

        # Past this point the run is PROCESSING; any escaping error marks it FAILED
        step = "Could not load employees"
        try:
            employees = await self._io(
                lambda: self.repository.list_payroll_employees(ctx.period_start, ctx.period_end),
                "Listing employees",
            )

            step = "Processing failed"
            run = await self.repository.update_payroll_run(run.id, PayrollRunPatch(total_employees=len(employees)))
            logger.info(f"Processing payroll run {run.id} for {run.month:02d}/{run.year}: {len(employees)} employees")

            progress = _RunProgress(run.id, len(employees), self._progress_writer(run.id))
            semaphore = asyncio.Semaphore(self.concurrency)

            async def unit(employee: EmployeeProfile) -> None:
                async with semaphore:
                    if ctx.cancelled or await self._is_cancelled(run.id):
                        ctx.cancelled = True
                        return
                    error = await self._process_employee(ctx, employee)
                    await progress.record(employee.id, error)

            # Join point: every unit has finished before the run moves on
            await asyncio.gather(*(unit(e) for e in employees))

            if ctx.cancelled or await self._is_cancelled(run.id):
                logger.warning(
                    f"Payroll run {run.id} was cancelled after {progress.processed}/{progress.total} employees"
                )
                run = await self.repository.update_payroll_run(run.id, progress.patch())
                await self.notifier.payroll_run_finished(run)
                return self._summary(run)

            step = "Finalization failed"
            run = await self._finalize(run, progress.patch())
        except Exception as exc:
            reason = exc.message if isinstance(exc, AppException) else str(exc) or type(exc).__name__
            await self._fail_run(run, f"{step}: {reason}")
            raise

        logger.info(
            f"Payroll run {run.id} completed: {run.success_count} succeeded, {run.error_count} failed"
        )
        await self.notifier.payroll_run_finished(run)
        return self._summary(run)

    async def run_payroll(self, month: int, year: int, initiated_by: Optional[str] = None) -> PayrollRunSummary:
        """Start and process a run in one call."""
        run = await self.start_run(month, year, initiated_by)
        return await self.process_run(run.id)

    async def cancel_run(self, run_id: UUID, reason: str = "Cancelled") -> PayrollRunData:
        """
        Flag a PENDING or PROCESSING run as FAILED. A run in progress stops
        before its next employee; records already written stay as they are.
        """
        run = await self.get_run(run_id)
        if run.status not in (PayrollRunStatus.PENDING, PayrollRunStatus.PROCESSING):
            raise InvalidStateTransitionError("Payroll run", run.status.value, PayrollRunStatus.FAILED.value)
        return await self.repository.update_payroll_run(run_id, PayrollRunPatch(
            status=PayrollRunStatus.FAILED,
            failure_reason=reason,
            completed_at=datetime.now(timezone.utc),
        ))

    async def revert_run(self, run_id: UUID) -> PayrollRunData:
        """
        Undo a finished run: delete its records, put its loan EMIs back on
        schedule and release its reimbursement claims. The period can then be
        run again.
        """
        run = await self.get_run(run_id)
        if run.status not in (PayrollRunStatus.COMPLETED, PayrollRunStatus.FAILED):
            raise InvalidStateTransitionError("Payroll run", run.status.value, PayrollRunStatus.REVERTED.value)

        records = await self.repository.list_payroll_records(run_id)
        paid = [r for r in records if r.status == PayrollRecordStatus.PAID]
        if paid:
            raise RunIntegrityError(
                f"Payroll run {run_id} has {len(paid)} paid records and cannot be reverted",
                details={"paid_record_ids": [str(r.id) for r in paid]},
            )

        run = await self.repository.revert_payroll_run(run_id, PayrollRunPatch(
            status=PayrollRunStatus.REVERTED,
            reverted_at=datetime.now(timezone.utc),
        ))
        logger.info(f"Reverted payroll run {run_id} ({len(records)} records removed)")
        return run

    async def recalculate_employee(self, run_id: UUID, employee_id: UUID) -> PayrollRecordData:
        """Recompute one employee's CALCULATED or ERROR record in a completed run."""
        run = await self.get_run(run_id)
        if run.status != PayrollRunStatus.COMPLETED:
            raise RunIntegrityError(
                f"Only records of a completed run can be recalculated; run is {run.status.value}"
            )
        existing = await self.repository.find_payroll_record(run_id, employee_id)
        if existing is not None and existing.is_immutable:
            raise RecordImmutableError(existing.id, existing.status.value)

        employee = await self.repository.get_employee(employee_id)
        if employee is None:
            raise NotFoundException("Employee", employee_id)

        await self._process_employee(_UnitContext(run), employee)
        await self._refresh_run_results(run)

        record = await self.repository.find_payroll_record(run_id, employee_id)
        return record

    async def verify_record(self, record_id: UUID, verified_by: str) -> PayrollRecordData:
        record = await self._get_record(record_id)
        if record.status != PayrollRecordStatus.CALCULATED:
            raise InvalidStateTransitionError(
                "Payroll record", record.status.value, PayrollRecordStatus.VERIFIED.value
            )
        run = await self.get_run(record.payroll_run_id)
        if run.status != PayrollRunStatus.COMPLETED:
            raise RunIntegrityError(f"Run {run.id} is {run.status.value}; only completed runs can be verified")
        return await self.repository.upsert_payroll_record(record.model_copy(update={
            "status": PayrollRecordStatus.VERIFIED,
            "verified_by": verified_by,
            "verified_at": datetime.now(timezone.utc),
        }))

    async def mark_record_paid(self, record_id: UUID) -> PayrollRecordData:
        record = await self._get_record(record_id)
        if record.status != PayrollRecordStatus.VERIFIED:
            raise InvalidStateTransitionError("Payroll record", record.status.value, PayrollRecordStatus.PAID.value)
        return await self.repository.upsert_payroll_record(record.model_copy(update={
            "status": PayrollRecordStatus.PAID,
            "paid_at": datetime.now(timezone.utc),
        }))

    async def get_run(self, run_id: UUID) -> PayrollRunData:
        run = await self.repository.get_payroll_run(run_id)
        if run is None:
            raise NotFoundException("Payroll run", run_id)
        return run

    async def get_run_summary(self, run_id: UUID) -> PayrollRunSummary:
        return self._summary(await self.get_run(run_id))

    # ===========================================
    # PER-EMPLOYEE UNIT
    # ===========================================

    async def _process_employee(self, ctx: _UnitContext, employee: EmployeeProfile) -> Optional[str]:
        """
        Calculate and persist one employee. Returns None on success or the
        error message that was recorded on the ERROR record.
        """
        try:
            result, structure, loan_updates, claim_updates = await self._calculate_employee(ctx, employee)
            record = self._build_record(ctx.run, employee, result, structure)
            await self._io(
                lambda: self.repository.upsert_payroll_record(record, loan_updates, claim_updates),
                f"Saving payroll record for {employee.employee_code}",
            )
            return None
        except (PerEmployeeCalculationError, SalaryStructureViolation, ValidationError) as exc:
            message = exc.message if isinstance(exc, AppException) else str(exc)
        except Exception as exc:
            logger.exception(f"Unexpected failure calculating employee {employee.employee_code}")
            message = f"Unexpected error: {exc}"

        logger.warning(f"Payroll for employee {employee.employee_code} in run {ctx.run.id} failed: {message}")
        error_record = PayrollRecordData(
            payroll_run_id=ctx.run.id,
            employee_id=employee.id,
            month=ctx.run.month,
            year=ctx.run.year,
            status=PayrollRecordStatus.ERROR,
            error_message=message,
            employee_name=employee.full_name,
            uan=employee.uan,
            esic_number=employee.esic_number,
            pan=employee.pan,
        )
        try:
            loan_releases, claim_releases = await self._release_run_links(ctx.run, employee)
            await self._io(
                lambda: self.repository.upsert_payroll_record(error_record, loan_releases, claim_releases),
                f"Saving error record for {employee.employee_code}",
            )
        except AppException as exc:
            logger.error(f"Could not persist error record for {employee.employee_code}: {exc.message}")
        return message

    async def _calculate_employee(self, ctx: _UnitContext, employee: EmployeeProfile):
        run = ctx.run
        code = employee.employee_code

        structure = await self._io(
            lambda: self.repository.get_salary_structure(employee.id, ctx.period_end),
            f"Loading salary structure for {code}",
        )
        if structure is None:
            raise PerEmployeeCalculationError(
                f"No salary structure effective on {ctx.period_end.isoformat()}", employee.id
            )

        attendance = await self._io(
            lambda: self.repository.get_attendance_summary(employee.id, run.month, run.year),
            f"Loading attendance for {code}",
        )
        if attendance is None:
            raise PerEmployeeCalculationError(
                f"No attendance summary for {run.month:02d}/{run.year}", employee.id
            )

        slabs: List[PTSlab] = []
        if employee.work_state:
            state = employee.work_state.upper()
            if state not in ctx.pt_slabs:
                ctx.pt_slabs[state] = await self._io(
                    lambda: self.repository.get_professional_tax_slabs(state),
                    f"Loading professional tax slabs for {state}",
                )
            slabs = ctx.pt_slabs[state]

        tds_withheld = await self._io(
            lambda: self.repository.get_tds_withheld(employee.id, run.month, run.year),
            f"Loading TDS withheld for {code}",
        )
        esi_covered = await self._io(
            lambda: self.repository.was_esi_covered(employee.id, run.month, run.year),
            f"Loading ESI coverage for {code}",
        )

        installments = await self._loan_installments(run, employee)
        claims = await self._io(
            lambda: self.repository.get_approved_reimbursements(employee.id, run.month, run.year, run.id),
            f"Loading reimbursements for {code}",
        )

        result = self.calculator.calculate(
            employee,
            structure,
            attendance,
            run.month,
            pt_slabs=slabs,
            tds_withheld=tds_withheld,
            esi_covered_in_period=esi_covered,
            loan_installments=installments,
            skip_policy=self.skip_policy,
            reimbursements=sum(c.amount for c in claims),
        )
        loan_updates = [
            LoanDeductionUpdate(
                deduction_id=d.deduction.id,
                loan_id=d.loan_id,
                status=d.status,
                payroll_run_id=run.id,
            )
            for d in result.loan_decisions
        ]
        claim_updates = [ReimbursementUpdate(claim_id=c.id, payroll_run_id=run.id) for c in claims]
        return result, structure, loan_updates, claim_updates

    async def _loan_installments(
        self, run: PayrollRunData, employee: EmployeeProfile
    ) -> List[Tuple[LoanData, LoanDeductionData]]:
        loans = await self._io(
            lambda: self.repository.get_active_loans(employee.id),
            f"Loading loans for {employee.employee_code}",
        )
        installments = []
        for loan in loans:
            deduction = await self._io(
                lambda: self.repository.get_loan_deduction(loan.id, run.month, run.year),
                f"Loading loan deduction for loan {loan.id}",
            )
            if deduction is None:
                continue
            # A recompute of this run may revisit EMIs it already settled
            if deduction.status == LoanDeductionStatus.SCHEDULED or deduction.payroll_run_id == run.id:
                installments.append((loan, deduction))

        # EMIs this run settled on loans that have since closed
        seen = {loan.id for loan, _ in installments}
        settled = await self._io(
            lambda: self.repository.get_run_loan_deductions(employee.id, run.id),
            f"Loading settled loan deductions for {employee.employee_code}",
        )
        for deduction in settled:
            if deduction.loan_id in seen:
                continue
            loan = await self._io(
                lambda: self.repository.get_loan(deduction.loan_id),
                f"Loading loan {deduction.loan_id}",
            )
            if loan is not None:
                installments.append((loan, deduction))
                seen.add(loan.id)

        # Oldest loan first, the order the skip policy sees them in
        installments.sort(key=lambda item: item[0].start_date)
        return installments

    async def _release_run_links(
        self, run: PayrollRunData, employee: EmployeeProfile
    ) -> Tuple[List[LoanDeductionUpdate], List[ReimbursementUpdate]]:
        """Updates that detach this employee's EMIs and claims from the run."""
        code = employee.employee_code
        deductions = await self._io(
            lambda: self.repository.get_run_loan_deductions(employee.id, run.id),
            f"Loading settled loan deductions for {code}",
        )
        claims = await self._io(
            lambda: self.repository.get_approved_reimbursements(employee.id, run.month, run.year, run.id),
            f"Loading reimbursements for {code}",
        )
        loan_releases = [
            LoanDeductionUpdate(
                deduction_id=d.id,
                loan_id=d.loan_id,
                status=LoanDeductionStatus.SCHEDULED,
                payroll_run_id=None,
            )
            for d in deductions
        ]
        claim_releases = [
            ReimbursementUpdate(claim_id=c.id, payroll_run_id=None)
            for c in claims if c.payroll_run_id == run.id
        ]
        return loan_releases, claim_releases

    @staticmethod
    def _build_record(
        run: PayrollRunData,
        employee: EmployeeProfile,
        result: EmployeePayroll,
        structure: SalaryStructureData,
    ) -> PayrollRecordData:
        return PayrollRecordData(
            payroll_run_id=run.id,
            employee_id=employee.id,
            month=run.month,
            year=run.year,
            status=PayrollRecordStatus.CALCULATED,
            employee_name=employee.full_name,
            uan=employee.uan,
            esic_number=employee.esic_number,
            pan=employee.pan,
            tax_regime=structure.tax_regime,
            working_days=result.working_days,
            paid_days=result.paid_days,
            lop_days=result.lop_days,
            basic=result.earned_basic,
            hra=structure.hra,
            special_allowance=structure.special_allowance,
            lta=structure.lta,
            medical_allowance=structure.medical_allowance,
            conveyance_allowance=structure.conveyance_allowance,
            other_allowances=structure.other_allowances,
            gross_before_lop=result.gross_before_lop,
            lop_deduction=result.lop_deduction,
            gross_earnings=result.gross_earnings,
            pf_base=result.pf.pf_base,
            employee_pf=result.pf.employee_pf,
            employer_epf=result.pf.employer_epf,
            employer_eps=result.pf.employer_eps,
            employer_edli=result.pf.employer_edli,
            employer_pf_admin=result.pf.employer_admin,
            esi_applicable=result.esi.applicable,
            employee_esi=result.esi.employee_esi,
            employer_esi=result.esi.employer_esi,
            professional_tax=result.professional_tax,
            tds=result.tds.monthly_tds,
            reimbursements=result.reimbursements,
            loan_deductions=result.loan_deductions,
            total_deductions=result.total_deductions,
            net_pay=result.net_pay,
            employer_cost=result.employer_cost,
        )

    # ===========================================
    # AGGREGATION
    # ===========================================

    async def _finalize(self, run: PayrollRunData, counts: PayrollRunPatch) -> PayrollRunData:
        await self.repository.update_payroll_run(run.id, PayrollRunPatch(current_stage=PayrollRunStage.STATUTORY))
        totals = await self._aggregate_totals(run.id)

        await self.repository.update_payroll_run(run.id, PayrollRunPatch(current_stage=PayrollRunStage.FINALIZATION))
        patch = PayrollRunPatch(
            **totals.model_dump(exclude_unset=True),
            **counts.model_dump(exclude_unset=True),
            status=PayrollRunStatus.COMPLETED,
            completed_at=datetime.now(timezone.utc),
        )
        return await self.repository.update_payroll_run(run.id, patch)

    async def _aggregate_totals(self, run_id: UUID) -> PayrollRunPatch:
        records = await self._io(lambda: self.repository.list_payroll_records(run_id), "Loading run records")
        paid = [r for r in records if r.status != PayrollRecordStatus.ERROR]
        return PayrollRunPatch(
            total_gross=sum(r.gross_earnings for r in paid),
            total_deductions=sum(r.total_deductions for r in paid),
            total_net_pay=sum(r.net_pay for r in paid),
            total_employer_cost=sum(r.employer_cost for r in paid),
            total_employee_pf=sum(r.employee_pf for r in paid),
            total_employer_pf=sum(r.employer_pf_total for r in paid),
            total_employee_esi=sum(r.employee_esi for r in paid),
            total_employer_esi=sum(r.employer_esi for r in paid),
            total_professional_tax=sum(r.professional_tax for r in paid),
            total_tds=sum(r.tds for r in paid),
            total_reimbursements=sum(r.reimbursements for r in paid),
        )

    async def _refresh_run_results(self, run: PayrollRunData) -> PayrollRunData:
        """Recount and re-total a completed run from its records."""
        records = await self.repository.list_payroll_records(run.id)
        errors = [
            RunErrorEntry(employee_id=r.employee_id, message=r.error_message or "")
            for r in records if r.status == PayrollRecordStatus.ERROR
        ]
        totals = await self._aggregate_totals(run.id)
        patch = PayrollRunPatch(
            **totals.model_dump(exclude_unset=True),
            processed_count=len(records),
            success_count=len(records) - len(errors),
            error_count=len(errors),
            errors=errors,
        )
        return await self.repository.update_payroll_run(run.id, patch)

    # ===========================================
    # HELPERS
    # ===========================================

    def _progress_writer(self, run_id: UUID) -> Callable[[PayrollRunPatch], Awaitable[None]]:
        async def write(patch: PayrollRunPatch) -> None:
            try:
                await self._io(
                    lambda: self.repository.update_payroll_run(run_id, patch),
                    "Saving run progress",
                )
            except AppException as exc:
                # The final update carries the same counters
                logger.warning(f"Could not save progress for run {run_id}: {exc.message}")
        return write

    async def _is_cancelled(self, run_id: UUID) -> bool:
        try:
            run = await self._io(lambda: self.repository.get_payroll_run(run_id), "Checking run status")
        except AppException as exc:
            logger.warning(f"Could not check status of run {run_id}: {exc.message}")
            return False
        return run is not None and run.status == PayrollRunStatus.FAILED

    async def _fail_run(self, run: PayrollRunData, reason: str) -> None:
        """Mark the run FAILED. Storage errors are logged so the caller's error propagates."""
        logger.error(f"Payroll run {run.id} failed: {reason}")
        try:
            failed = await self._io(
                lambda: self.repository.update_payroll_run(run.id, PayrollRunPatch(
                    status=PayrollRunStatus.FAILED,
                    failure_reason=reason,
                    completed_at=datetime.now(timezone.utc),
                )),
                "Marking run failed",
            )
        except Exception:
            logger.exception(f"Could not mark payroll run {run.id} as failed")
            return
        await self.notifier.payroll_run_finished(failed)

    async def _get_record(self, record_id: UUID) -> PayrollRecordData:
        record = await self.repository.get_payroll_record(record_id)
        if record is None:
            raise NotFoundException("Payroll record", record_id)
        return record

    @staticmethod
    def _summary(run: PayrollRunData) -> PayrollRunSummary:
        return PayrollRunSummary(
            run_id=run.id,
            month=run.month,
            year=run.year,
            status=run.status,
            total=run.total_employees,
            processed=run.processed_count,
            success=run.success_count,
            error=run.error_count,
        )
