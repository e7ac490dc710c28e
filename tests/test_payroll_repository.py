"""
Tests for the SQLAlchemy repository, driven through the services.

Uses an in-memory SQLite database; the run service processes one employee
at a time there.
"""

from datetime import date
from typing import Optional
from uuid import uuid4

import pytest
from sqlalchemy import delete

from app.models.loan import LoanDeductionStatus, LoanStatus
from app.models.payroll import Gender, PayrollRecordStatus, PayrollRunStatus, SalaryStructure
from app.models.reimbursement import ClaimStatus
from app.schemas.loan import LoanCreate
from app.schemas.payroll import (
    AttendanceSummaryData,
    EmployeeProfile,
    SalaryStructureCreate,
    SalaryStructureData,
)
from app.services.attendance_service import AttendanceLockService
from app.services.deadline_service import DeadlineService
from app.services.loan_service import LoanService
from app.schemas.reimbursement import ReimbursementClaimCreate
from app.services.payroll_service import PayrollRunService
from app.services.reimbursement_service import ReimbursementService
from app.services.salary_structure_service import SalaryStructureService
from app.utils.error_handling import ConflictException, PayrollValidationError


async def _seed_employee(
    repo,
    code: str,
    basic: int,
    months=((6, 2024),),
    work_state: Optional[str] = None,
) -> EmployeeProfile:
    employee = await repo.add_employee(EmployeeProfile(
        id=uuid4(),
        employee_code=code,
        full_name=f"Employee {code}",
        gender=Gender.MALE,
        work_state=work_state,
        uan="100000000001",
        esic_number="3100000001",
        pan="ABCDE1234F",
        date_of_joining=date(2020, 1, 1),
    ))
    await repo.add_salary_structure(SalaryStructureData(
        employee_id=employee.id,
        effective_from=date(2020, 1, 1),
        basic=basic,
    ))
    for month, year in months:
        await repo.save_attendance_summary(AttendanceSummaryData(
            employee_id=employee.id,
            month=month,
            year=year,
            working_days=30,
            paid_days=30,
        ))
    return employee


async def _run(repo, month: int = 6, year: int = 2024):
    await AttendanceLockService(repo).lock(month, year, "hr.manager")
    return await PayrollRunService(repo).run_payroll(month, year)


class TestPayrollRunOnDatabase:
    """End-to-end runs against SQLite."""

    @pytest.mark.asyncio
    async def test_run_persists_records_and_totals(self, sql_repository):
        employee = await _seed_employee(sql_repository, "E001", 1_200_000)

        summary = await _run(sql_repository)

        assert summary.status == PayrollRunStatus.COMPLETED
        assert summary.success == 1
        record = await sql_repository.find_payroll_record(summary.run_id, employee.id)
        assert record.status == PayrollRecordStatus.CALCULATED
        assert record.employee_pf == 144_000
        assert record.esi_applicable is True
        assert record.employee_esi == 9_000
        assert record.net_pay == 1_047_000

        run = await sql_repository.get_payroll_run(summary.run_id)
        assert run.total_gross == 1_200_000
        assert run.total_net_pay == 1_047_000
        assert run.completed_at is not None

    @pytest.mark.asyncio
    async def test_professional_tax_from_seeded_slabs(self, sql_repository):
        added = await sql_repository.seed_professional_tax_slabs()
        assert added > 0
        assert await sql_repository.seed_professional_tax_slabs() == 0

        employee = await _seed_employee(sql_repository, "E001", 2_500_000, work_state="KA")
        summary = await _run(sql_repository)

        record = await sql_repository.find_payroll_record(summary.run_id, employee.id)
        assert record.professional_tax == 20_000

    @pytest.mark.asyncio
    async def test_tds_withheld_carries_across_months(self, sql_repository):
        employee = await _seed_employee(sql_repository, "E001", 10_000_000, months=((4, 2024), (5, 2024)))

        april = await _run(sql_repository, 4, 2024)
        assert await sql_repository.get_tds_withheld(employee.id, 5, 2024) == 595_833

        may = await _run(sql_repository, 5, 2024)
        record = await sql_repository.find_payroll_record(may.run_id, employee.id)
        assert record.tds == 595_833
        assert await sql_repository.get_tds_withheld(employee.id, 6, 2024) == 1_191_666

        await PayrollRunService(sql_repository).revert_run(april.run_id)
        assert await sql_repository.get_tds_withheld(employee.id, 5, 2024) == 0

    @pytest.mark.asyncio
    async def test_revert_removes_records(self, sql_repository):
        await _seed_employee(sql_repository, "E001", 1_200_000)
        summary = await _run(sql_repository)

        reverted = await PayrollRunService(sql_repository).revert_run(summary.run_id)

        assert reverted.status == PayrollRunStatus.REVERTED
        assert reverted.reverted_at is not None
        assert await sql_repository.list_payroll_records(summary.run_id) == []
        assert await sql_repository.find_active_run(6, 2024) is None


class TestLoansOnDatabase:
    """Loan ledger written together with payroll records."""

    @pytest.mark.asyncio
    async def test_installment_deducted_then_restored_on_revert(self, sql_repository):
        employee = await _seed_employee(sql_repository, "E001", 1_200_000)
        loans = LoanService(sql_repository)
        loan = await loans.create_loan(LoanCreate(
            employee_id=employee.id,
            principal=100_000,
            tenure_months=1,
            start_date=date(2024, 6, 1),
        ))
        await loans.disburse(loan.id)

        summary = await _run(sql_repository)
        record = await sql_repository.find_payroll_record(summary.run_id, employee.id)
        assert record.loan_deductions == 100_000
        assert record.net_pay == 947_000

        closed = await loans.get_loan(loan.id)
        assert closed.status == LoanStatus.CLOSED
        assert closed.remaining_balance == 0

        await PayrollRunService(sql_repository).revert_run(summary.run_id)
        reopened = await loans.get_loan(loan.id)
        assert reopened.status == LoanStatus.ACTIVE
        assert reopened.remaining_balance == 100_000


    async def _loan(self, repo, employee, principal, tenure_months):
        loans = LoanService(repo)
        loan = await loans.create_loan(LoanCreate(
            employee_id=employee.id,
            principal=principal,
            tenure_months=tenure_months,
            start_date=date(2024, 6, 1),
        ))
        return await loans.disburse(loan.id)

    @pytest.mark.asyncio
    async def test_recalculate_keeps_emi_of_loan_closed_by_the_run(self, sql_repository):
        employee = await _seed_employee(sql_repository, "E001", 1_200_000)
        loan = await self._loan(sql_repository, employee, 100_000, 1)
        summary = await _run(sql_repository)

        record = await PayrollRunService(sql_repository).recalculate_employee(summary.run_id, employee.id)

        assert record.loan_deductions == 100_000
        assert record.net_pay == 947_000
        deduction = (await sql_repository.list_loan_deductions(loan.id))[0]
        assert deduction.status == LoanDeductionStatus.DEDUCTED
        assert deduction.payroll_run_id == summary.run_id
        closed = await sql_repository.get_loan(loan.id)
        assert closed.status == LoanStatus.CLOSED
        assert closed.remaining_balance == 0

    @pytest.mark.asyncio
    async def test_failed_recalculation_releases_the_emi(self, sql_repository, session_factory):
        employee = await _seed_employee(sql_repository, "E001", 1_200_000)
        loan = await self._loan(sql_repository, employee, 1_200_000, 12)
        summary = await _run(sql_repository)
        assert (await sql_repository.get_loan(loan.id)).remaining_balance == 1_100_000

        async with session_factory() as db:
            await db.execute(delete(SalaryStructure).where(SalaryStructure.employee_id == employee.id))
            await db.commit()
        record = await PayrollRunService(sql_repository).recalculate_employee(summary.run_id, employee.id)

        assert record.status == PayrollRecordStatus.ERROR
        june = next(d for d in await sql_repository.list_loan_deductions(loan.id) if d.month == 6)
        assert june.status == LoanDeductionStatus.SCHEDULED
        assert june.payroll_run_id is None
        restored = await sql_repository.get_loan(loan.id)
        assert restored.status == LoanStatus.ACTIVE
        assert restored.remaining_balance == 1_200_000


class TestReimbursementsOnDatabase:
    """Approved claims paid through payroll."""

    async def _approved(self, repo, employee, amount, expense_date=date(2024, 6, 12)):
        service = ReimbursementService(repo)
        claim = await service.submit_claim(ReimbursementClaimCreate(
            employee_id=employee.id,
            expense_date=expense_date,
            amount=amount,
            description="Client visit travel",
        ))
        return await service.approve_claim(claim.id, "finance.lead")

    @pytest.mark.asyncio
    async def test_claim_paid_with_run_and_released_on_revert(self, sql_repository):
        employee = await _seed_employee(sql_repository, "E001", 1_200_000)
        claim = await self._approved(sql_repository, employee, 50_000)
        later = await self._approved(sql_repository, employee, 30_000, expense_date=date(2024, 7, 3))

        summary = await _run(sql_repository)
        record = await sql_repository.find_payroll_record(summary.run_id, employee.id)
        assert record.reimbursements == 50_000
        assert record.net_pay == 1_097_000
        run = await sql_repository.get_payroll_run(summary.run_id)
        assert run.total_reimbursements == 50_000
        assert (await sql_repository.get_reimbursement_claim(claim.id)).payroll_run_id == summary.run_id
        assert (await sql_repository.get_reimbursement_claim(later.id)).payroll_run_id is None

        await PayrollRunService(sql_repository).revert_run(summary.run_id)
        released = await sql_repository.get_reimbursement_claim(claim.id)
        assert released.payroll_run_id is None
        assert released.status == ClaimStatus.APPROVED

    @pytest.mark.asyncio
    async def test_claims_listed_oldest_first(self, sql_repository):
        employee = await _seed_employee(sql_repository, "E001", 1_200_000)
        await self._approved(sql_repository, employee, 30_000, expense_date=date(2024, 6, 20))
        await self._approved(sql_repository, employee, 50_000, expense_date=date(2024, 6, 2))

        claims = await ReimbursementService(sql_repository).list_claims(employee.id)
        assert [c.amount for c in claims] == [50_000, 30_000]


class TestReferenceDataOnDatabase:
    """Locks, salary structures and deadlines."""

    @pytest.mark.asyncio
    async def test_attendance_lock_round_trip(self, sql_repository):
        service = AttendanceLockService(sql_repository)
        lock = await service.lock(6, 2024, "hr.manager")
        await service.request_unlock(lock.id, "hr.exec", "Correction")
        await service.approve_unlock(lock.id, "hr.head")

        assert await service.is_locked(6, 2024) is False
        relocked = await service.lock(6, 2024, "hr.manager")
        assert relocked.id == lock.id
        assert relocked.is_locked is True

    @pytest.mark.asyncio
    async def test_new_structure_supersedes_current(self, sql_repository):
        employee = await _seed_employee(sql_repository, "E001", 1_200_000)
        service = SalaryStructureService(sql_repository)

        await service.add_structure(SalaryStructureCreate(
            employee_id=employee.id,
            effective_from=date(2024, 7, 1),
            basic=1_500_000,
            hra=500_000,
        ))
        structures = await service.list_structures(employee.id)

        assert [s.effective_to for s in structures] == [date(2024, 6, 30), None]
        june = await sql_repository.get_salary_structure(employee.id, date(2024, 6, 30))
        july = await sql_repository.get_salary_structure(employee.id, date(2024, 7, 1))
        assert june.basic == 1_200_000
        assert july.basic == 1_500_000

        with pytest.raises(ConflictException):
            await service.add_structure(SalaryStructureCreate(
                employee_id=employee.id,
                effective_from=date(2024, 7, 1),
                basic=1_600_000,
            ))

    @pytest.mark.asyncio
    async def test_structure_rule_is_enforced_by_service(self, sql_repository):
        request = SalaryStructureCreate.model_construct(
            employee_id=uuid4(),
            effective_from=date(2024, 7, 1),
            effective_to=None,
            basic=100,
            hra=1_000,
            special_allowance=0,
            lta=0,
            medical_allowance=0,
            conveyance_allowance=0,
            other_allowances=0,
        )
        with pytest.raises(PayrollValidationError):
            await SalaryStructureService(sql_repository).add_structure(request)

    @pytest.mark.asyncio
    async def test_deadline_upsert_is_idempotent(self, sql_repository):
        service = DeadlineService(sql_repository)
        first = await service.generate_deadlines(6, 2024)
        second = await service.generate_deadlines(6, 2024)

        assert len(first) == 6
        assert sorted(d.id for d in first) == sorted(d.id for d in second)
        assert len(await sql_repository.list_open_deadlines()) == 6
