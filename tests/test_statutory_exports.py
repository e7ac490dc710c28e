"""
Tests for the ECR, ESI challan, Form 24Q and Form 16 exports.
"""

from datetime import date
from uuid import uuid4

import pytest

from app.models.payroll import PayrollRecordStatus, PayrollRunStatus
from app.schemas.payroll import EmployeeProfile, PayrollRecordData, PayrollRunData
from app.services.statutory_export_service import (
    FY_QUARTER_MONTHS,
    Establishment,
    StatutoryExportService,
    build_ecr,
    build_esi_challan,
    build_form16_data,
)
from app.services.tax_calculators.tds_service import TaxRegime
from app.utils.error_handling import NotFoundException, PayrollValidationError, RunIntegrityError


ESTABLISHMENT = Establishment(code="MHBAN0000000000", name="Acme Pvt Ltd", tan="MUMA00000A")


def _run(status: PayrollRunStatus = PayrollRunStatus.COMPLETED) -> PayrollRunData:
    return PayrollRunData(month=6, year=2024, status=status)


def _record(run: PayrollRunData, **overrides) -> PayrollRecordData:
    data = dict(
        payroll_run_id=run.id,
        employee_id=uuid4(),
        month=run.month,
        year=run.year,
        employee_name="Asha Rao",
        uan="100000000001",
        esic_number="3100000001",
        pan="ABCDE1234F",
        working_days=30,
        paid_days=29,
        lop_days=1,
        gross_earnings=2_000_000,
        pf_base=1_200_000,
        employee_pf=144_000,
        employer_epf=44_040,
        employer_eps=99_960,
        employer_edli=6_000,
        employer_pf_admin=6_120,
    )
    data.update(overrides)
    return PayrollRecordData(**data)


class TestECR:
    """EPFO Electronic Challan cum Return."""

    def test_header_and_member_line(self):
        run = _run()
        result = build_ecr(run, [_record(run)], ESTABLISHMENT)
        lines = result.content.splitlines()

        assert lines[0] == "MHBAN0000000000#~#Acme Pvt Ltd#~#06#~#2024#~#1#~#20000.00#~#1440.00#~#1500.00"
        assert lines[1] == (
            "100000000001#~#Asha Rao#~#20000.00#~#12000.00#~#12000.00#~#12000.00"
            "#~#1440.00#~#440.40#~#999.60#~#60.00#~#1#~#0.00"
        )
        assert len(lines[1].split("#~#")) == 12
        assert result.filename == "ECR_06_2024.txt"

    def test_missing_uan_is_excluded_and_reported(self):
        run = _run()
        missing = _record(run, uan="  ")
        failed = _record(run, status=PayrollRecordStatus.ERROR, error_message="No salary structure")
        result = build_ecr(run, [_record(run), missing, failed], ESTABLISHMENT)

        assert result.included_count == 1
        assert result.excluded_count == 1
        assert result.excluded_employee_ids == [missing.employee_id]
        assert result.missing_identifier == "uan"
        assert len(result.content.splitlines()) == 2

    def test_delimiter_in_name_is_scrubbed(self):
        run = _run()
        result = build_ecr(run, [_record(run, employee_name="Asha #~# Rao")], ESTABLISHMENT)
        assert result.content.splitlines()[1].split("#~#")[1] == "Asha Rao"

    def test_requires_completed_run(self):
        run = _run(PayrollRunStatus.PROCESSING)
        with pytest.raises(RunIntegrityError):
            build_ecr(run, [_record(run)], ESTABLISHMENT)


class TestESIChallan:
    """ESI monthly contribution CSV."""

    def test_challan_layout(self):
        run = _run()
        records = [
            _record(
                run,
                gross_earnings=1_800_000,
                esi_applicable=True,
                employee_esi=13_500,
                employer_esi=58_500,
                lop_days=2,
            ),
            _record(run, employee_name="Not Covered", gross_earnings=5_000_000),
        ]
        result = build_esi_challan(run, records)
        lines = result.content.splitlines()

        assert lines[0].startswith("ESIC Number,Employee Name,")
        assert lines[1:] == [
            "3100000001,Asha Rao,18000.00,135.00,585.00,720.00,28",
            "",
            "TOTAL,,18000.00,135.00,585.00,720.00,",
            "",
            "Month/Year,06/2024",
        ]
        assert result.included_count == 1
        assert result.excluded_count == 0

    def test_missing_esic_number_is_excluded(self):
        run = _run()
        record = _record(run, esic_number=None, esi_applicable=True, employee_esi=100, employer_esi=400)
        result = build_esi_challan(run, [record])
        assert result.included_count == 0
        assert result.excluded_employee_ids == [record.employee_id]
        assert "TOTAL,,0.00,0.00,0.00,0.00," in result.content


class TestForm24Q:
    """Quarterly salary TDS summary built from runs in the repository."""

    async def _run_quarter(self, repository, payroll_service):
        salaried = repository.add_employee("A", 10_000_000, month=4)
        late_pan = repository.add_employee("B", 1_000_000, month=4, pan=None)
        no_pan = repository.add_employee("C", 1_000_000, month=4, pan=None)
        for month in (4, 5, 6):
            for employee in (salaried, late_pan, no_pan):
                repository.add_attendance(employee.id, month, 2024)
            if month == 5:
                repository.employees[late_pan.id] = late_pan.model_copy(update={"pan": "bbbbb2222b"})
            repository.lock_period(month, 2024)
            await payroll_service.run_payroll(month, 2024)
        return salaried, late_pan, no_pan

    @pytest.mark.asyncio
    async def test_quarter_summary(self, repository, payroll_service):
        _, _, no_pan = await self._run_quarter(repository, payroll_service)
        service = StatutoryExportService(repository, ESTABLISHMENT)

        result = await service.export_form24q(1, 2024)
        lines = result.content.splitlines()

        assert lines[0] == "MUMA00000A#~#Acme Pvt Ltd#~#Q1#~#2024-25#~#2#~#320000.00#~#17874.99"
        assert lines[1] == "ABCDE1234F#~#Employee A#~#300000.00#~#17874.99#~#3"
        assert lines[2] == "BBBBB2222B#~#Employee B#~#20000.00#~#0.00#~#2"
        assert result.filename == "Form24Q_Q1_2024-25.txt"
        assert result.excluded_employee_ids == [no_pan.id]

    @pytest.mark.asyncio
    async def test_invalid_quarter(self, repository):
        with pytest.raises(PayrollValidationError):
            await StatutoryExportService(repository, ESTABLISHMENT).export_form24q(5, 2024)

    @pytest.mark.asyncio
    async def test_no_runs_in_quarter(self, repository):
        with pytest.raises(RunIntegrityError):
            await StatutoryExportService(repository, ESTABLISHMENT).export_form24q(2, 2024)

    @pytest.mark.asyncio
    async def test_unfinished_run_blocks_the_quarter(self, repository):
        run = PayrollRunData(month=7, year=2024, status=PayrollRunStatus.PROCESSING)
        repository.runs[run.id] = run
        with pytest.raises(RunIntegrityError):
            await StatutoryExportService(repository, ESTABLISHMENT).export_form24q(2, 2024)


class TestForm16:
    """Annual certificate data for one employee."""

    def _employee(self) -> EmployeeProfile:
        return EmployeeProfile(
            id=uuid4(),
            employee_code="A",
            full_name="Asha Rao",
            pan="abcde1234f",
            date_of_joining=date(2020, 1, 1),
        )

    def _year(self, employee, **overrides):
        run = _run()
        quarterly = []
        for quarter, months in FY_QUARTER_MONTHS.items():
            records = [
                _record(run, employee_id=employee.id, month=month, year=2024 + offset, **overrides)
                for month, offset in months
            ]
            quarterly.append((quarter, records))
        return quarterly

    def test_new_regime_year(self):
        employee = self._employee()
        quarterly = self._year(employee, gross_earnings=10_000_000, tds=500_000, tax_regime=TaxRegime.NEW)

        data = build_form16_data(employee, 2024, quarterly, ESTABLISHMENT)

        assert data.months_paid == 12
        assert data.part_a.tan == "MUMA00000A"
        assert data.part_a.pan == "ABCDE1234F"
        assert data.part_a.financial_year == "2024-25"
        assert data.part_a.assessment_year == "2025-26"
        assert data.part_a.period_from == date(2024, 4, 1)
        assert data.part_a.period_to == date(2025, 3, 31)

        part_b = data.part_b
        assert part_b.gross_salary == 120_000_000
        assert part_b.standard_deduction == 7_500_000
        assert part_b.professional_tax == 0
        assert part_b.income_chargeable == 112_500_000
        assert part_b.tax_on_income == 6_875_000
        assert part_b.rebate_applied is False
        assert part_b.cess == 275_000
        assert part_b.total_tax_payable == 7_150_000
        assert part_b.tds_deducted == 6_000_000
        assert part_b.balance_payable == 1_150_000

        assert [q.quarter for q in data.quarters] == [1, 2, 3, 4]
        assert all(q.amount_paid == 30_000_000 for q in data.quarters)
        assert all(q.tds_deducted == 1_500_000 for q in data.quarters)

    def test_old_regime_deducts_professional_tax(self):
        employee = self._employee()
        quarterly = self._year(
            employee, gross_earnings=10_000_000, professional_tax=20_000, tax_regime=TaxRegime.OLD
        )

        part_b = build_form16_data(employee, 2024, quarterly, ESTABLISHMENT).part_b

        assert part_b.standard_deduction == 5_000_000
        assert part_b.professional_tax == 240_000
        assert part_b.income_chargeable == 114_760_000
        assert part_b.tax_on_income == 15_678_000
        assert part_b.cess == 627_120
        assert part_b.total_tax_payable == 16_305_120

    def test_rebate_and_refund(self):
        employee = self._employee()
        quarterly = self._year(employee, gross_earnings=5_000_000, tds=10_000)

        part_b = build_form16_data(employee, 2024, quarterly, ESTABLISHMENT).part_b

        assert part_b.rebate_applied is True
        assert part_b.total_tax_payable == 0
        assert part_b.balance_payable == -120_000

    def test_error_records_are_left_out(self):
        employee = self._employee()
        quarterly = self._year(employee, gross_earnings=1_000_000)
        failed = _record(_run(), employee_id=employee.id, status=PayrollRecordStatus.ERROR, gross_earnings=9_999)
        quarterly[0] = (1, list(quarterly[0][1]) + [failed])

        data = build_form16_data(employee, 2024, quarterly, ESTABLISHMENT)

        assert data.months_paid == 12
        assert data.part_b.gross_salary == 12_000_000

    def test_no_records(self):
        employee = self._employee()
        with pytest.raises(NotFoundException):
            build_form16_data(employee, 2024, [(q, []) for q in FY_QUARTER_MONTHS], ESTABLISHMENT)

    @pytest.mark.asyncio
    async def test_from_completed_runs(self, repository, payroll_service):
        employee = repository.add_employee("A", 10_000_000, month=4)
        repository.lock_period(4, 2024)
        await payroll_service.run_payroll(4, 2024)
        repository.add_attendance(employee.id, 5, 2024)
        repository.lock_period(5, 2024)
        await payroll_service.run_payroll(5, 2024)

        data = await StatutoryExportService(repository, ESTABLISHMENT).export_form16(employee.id, 2024)

        assert data.months_paid == 2
        assert data.part_b.gross_salary == 20_000_000
        assert data.part_b.tds_deducted == 1_191_666
        assert data.quarters[0].amount_paid == 20_000_000
        assert data.quarters[1].amount_paid == 0
        assert data.part_a.employee_name == "Employee A"

    @pytest.mark.asyncio
    async def test_unknown_employee_or_empty_year(self, repository):
        service = StatutoryExportService(repository, ESTABLISHMENT)
        with pytest.raises(NotFoundException):
            await service.export_form16(uuid4(), 2024)

        employee = repository.add_employee("A", 1_000_000)
        with pytest.raises(NotFoundException):
            await service.export_form16(employee.id, 2023)


class TestExportService:
    """Run lookups."""

    @pytest.mark.asyncio
    async def test_unknown_run(self, repository):
        with pytest.raises(NotFoundException):
            await StatutoryExportService(repository, ESTABLISHMENT).export_ecr(uuid4())

    @pytest.mark.asyncio
    async def test_ecr_from_completed_run(self, repository, payroll_service):
        repository.add_employee("A", 1_200_000)
        repository.lock_period(6, 2024)
        summary = await payroll_service.run_payroll(6, 2024)

        result = await StatutoryExportService(repository, ESTABLISHMENT).export_ecr(summary.run_id)
        member = result.content.splitlines()[1].split("#~#")
        assert member[0] == "100000000001"
        assert member[6] == "1440.00"
        assert member[8] == "999.60"
