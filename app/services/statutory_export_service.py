"""
Payroll Engine - Statutory Filing Export Service

Builds government filing payloads from completed payroll runs:
- ECR (Electronic Challan cum Return) for EPFO, '#~#' delimited
- ESI monthly contribution challan, CSV
- Form 24Q salary TDS quarterly summary, '#~#' delimited
- Form 16 annual certificate data for one employee, as JSON

Employees missing the identifier a filing needs (UAN, ESIC number, PAN) are
left out of that filing and reported back, not treated as failures.
"""

import csv
import io
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

from app.models.payroll import PayrollRecordStatus, PayrollRunStatus
from app.schemas.payroll import EmployeeProfile, PayrollRecordData, PayrollRunData
from app.schemas.statutory import ExportResult, Form16Data, Form16PartA, Form16PartB, Form16Quarter
from app.services.money import format_rupees
from app.services.payroll_ports import PayrollRepository
from app.services.tax_calculators.tds_service import TaxRegime, TDSCalculator, TDSParameters
from app.utils.error_handling import NotFoundException, PayrollValidationError, RunIntegrityError

logger = logging.getLogger(__name__)

ECR_DELIMITER = "#~#"

EXPORTABLE_STATUSES = (
    PayrollRecordStatus.CALCULATED,
    PayrollRecordStatus.VERIFIED,
    PayrollRecordStatus.PAID,
)

ESI_CHALLAN_HEADER = [
    "ESIC Number",
    "Employee Name",
    "Gross Wages (Rs)",
    "Employee Contribution (Rs)",
    "Employer Contribution (Rs)",
    "Total Contribution (Rs)",
    "IP Days",
]

# Financial-year quarter -> (calendar month, offset from the FY start year)
FY_QUARTER_MONTHS = {
    1: [(4, 0), (5, 0), (6, 0)],
    2: [(7, 0), (8, 0), (9, 0)],
    3: [(10, 0), (11, 0), (12, 0)],
    4: [(1, 1), (2, 1), (3, 1)],
}


@dataclass(frozen=True)
class Establishment:
    code: str
    name: str
    tan: str = ""


def _clean(value: str) -> str:
    """Keep free text from breaking the delimited layout."""
    return " ".join((value or "").replace(ECR_DELIMITER, " ").split())


def _split_by_identifier(
    records: Sequence[PayrollRecordData], identifier: str
) -> Tuple[List[PayrollRecordData], List[PayrollRecordData]]:
    included, excluded = [], []
    for record in records:
        if record.status not in EXPORTABLE_STATUSES:
            continue
        if (getattr(record, identifier) or "").strip():
            included.append(record)
        else:
            excluded.append(record)
    return included, excluded


def require_completed(run: PayrollRunData) -> None:
    if run.status != PayrollRunStatus.COMPLETED:
        raise RunIntegrityError(
            f"Filings can only be exported from a completed run; run {run.id} is {run.status.value}",
            details={"run_id": str(run.id), "status": run.status.value},
        )


# ===========================================
# ECR
# ===========================================

def build_ecr(run: PayrollRunData, records: Sequence[PayrollRecordData], establishment: Establishment) -> ExportResult:
    """
    Header: code, name, MM, YYYY, employee count, total wages, total
    employee share, total employer share (EPF + EPS + EDLI).

    One line per member with twelve fields: UAN, name, gross wages, EPF
    wages, EPS wages, EDLI wages, employee share, employer EPF, employer EPS,
    employer EDLI, NCP days, refund of advances.
    """
    require_completed(run)
    included, excluded = _split_by_identifier(records, "uan")

    total_wages = sum(r.gross_earnings for r in included)
    total_employee = sum(r.employee_pf for r in included)
    total_employer = sum(r.employer_epf + r.employer_eps + r.employer_edli for r in included)

    lines = [ECR_DELIMITER.join([
        establishment.code,
        _clean(establishment.name),
        f"{run.month:02d}",
        str(run.year),
        str(len(included)),
        format_rupees(total_wages),
        format_rupees(total_employee),
        format_rupees(total_employer),
    ])]
    for r in included:
        lines.append(ECR_DELIMITER.join([
            r.uan.strip(),
            _clean(r.employee_name),
            format_rupees(r.gross_earnings),
            format_rupees(r.pf_base),
            format_rupees(r.pf_base),
            format_rupees(r.pf_base),
            format_rupees(r.employee_pf),
            format_rupees(r.employer_epf),
            format_rupees(r.employer_eps),
            format_rupees(r.employer_edli),
            str(r.lop_days),
            format_rupees(0),
        ]))

    return ExportResult(
        filename=f"ECR_{run.month:02d}_{run.year}.txt",
        content="\n".join(lines) + "\n",
        included_count=len(included),
        excluded_count=len(excluded),
        excluded_employee_ids=[r.employee_id for r in excluded],
        missing_identifier="uan",
    )


# ===========================================
# ESI CHALLAN
# ===========================================

def build_esi_challan(run: PayrollRunData, records: Sequence[PayrollRecordData]) -> ExportResult:
    require_completed(run)
    applicable = [r for r in records if r.esi_applicable]
    included, excluded = _split_by_identifier(applicable, "esic_number")

    output = io.StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(ESI_CHALLAN_HEADER)

    total_gross = total_employee = total_employer = 0
    for r in included:
        writer.writerow([
            r.esic_number.strip(),
            r.employee_name,
            format_rupees(r.gross_earnings),
            format_rupees(r.employee_esi),
            format_rupees(r.employer_esi),
            format_rupees(r.employee_esi + r.employer_esi),
            r.working_days - r.lop_days,
        ])
        total_gross += r.gross_earnings
        total_employee += r.employee_esi
        total_employer += r.employer_esi

    writer.writerow([])
    writer.writerow([
        "TOTAL",
        "",
        format_rupees(total_gross),
        format_rupees(total_employee),
        format_rupees(total_employer),
        format_rupees(total_employee + total_employer),
        "",
    ])
    writer.writerow([])
    writer.writerow(["Month/Year", f"{run.month:02d}/{run.year}"])

    return ExportResult(
        filename=f"ESI_Challan_{run.month:02d}_{run.year}.csv",
        content=output.getvalue(),
        included_count=len(included),
        excluded_count=len(excluded),
        excluded_employee_ids=[r.employee_id for r in excluded],
        missing_identifier="esic_number",
    )


# ===========================================
# FORM 24Q
# ===========================================

def build_form24q_summary(
    quarter: int,
    fy_start_year: int,
    runs_with_records: Sequence[Tuple[PayrollRunData, Sequence[PayrollRecordData]]],
    establishment: Establishment,
) -> ExportResult:
    """
    Quarterly salary TDS summary. Header: TAN, deductor name, quarter,
    financial year, deductee count, total salary paid, total TDS. One line
    per PAN: PAN, name, salary paid, TDS deducted, months paid.
    """
    per_employee: "OrderedDict[UUID, dict]" = OrderedDict()
    excluded_ids: "OrderedDict[UUID, None]" = OrderedDict()

    for run, records in runs_with_records:
        require_completed(run)
        included, excluded = _split_by_identifier(records, "pan")
        for r in excluded:
            excluded_ids[r.employee_id] = None
        for r in included:
            entry = per_employee.setdefault(r.employee_id, {
                "pan": r.pan.strip().upper(),
                "name": r.employee_name,
                "gross": 0,
                "tds": 0,
                "months": 0,
            })
            entry["gross"] += r.gross_earnings
            entry["tds"] += r.tds
            entry["months"] += 1

    # An employee filed under a PAN in any month is not a gap
    for employee_id in per_employee:
        excluded_ids.pop(employee_id, None)

    fy_label = f"{fy_start_year}-{(fy_start_year + 1) % 100:02d}"
    lines = [ECR_DELIMITER.join([
        establishment.tan,
        _clean(establishment.name),
        f"Q{quarter}",
        fy_label,
        str(len(per_employee)),
        format_rupees(sum(e["gross"] for e in per_employee.values())),
        format_rupees(sum(e["tds"] for e in per_employee.values())),
    ])]
    for entry in per_employee.values():
        lines.append(ECR_DELIMITER.join([
            entry["pan"],
            _clean(entry["name"]),
            format_rupees(entry["gross"]),
            format_rupees(entry["tds"]),
            str(entry["months"]),
        ]))

    return ExportResult(
        filename=f"Form24Q_Q{quarter}_{fy_label}.txt",
        content="\n".join(lines) + "\n",
        included_count=len(per_employee),
        excluded_count=len(excluded_ids),
        excluded_employee_ids=list(excluded_ids),
        missing_identifier="pan",
    )


# ===========================================
# FORM 16
# ===========================================

def build_form16_data(
    employee: EmployeeProfile,
    fy_start_year: int,
    quarterly_records: Sequence[Tuple[int, Sequence[PayrollRecordData]]],
    establishment: Establishment,
    parameters: Optional[TDSParameters] = None,
) -> Form16Data:
    """
    Annual salary and TDS figures for one employee's Form 16.

    Tax is recomputed on the year's actual gross under the regime of the
    latest record. Professional tax is only deductible under the old
    regime. A negative balance is a refund due to the employee.
    """
    parameters = parameters or TDSParameters()
    records = [r for _, rs in quarterly_records for r in rs if r.status in EXPORTABLE_STATUSES]
    if not records:
        raise NotFoundException(
            "Payroll record", message=f"No payroll records for employee {employee.id} in FY {fy_start_year}"
        )

    latest = max(records, key=lambda r: (r.year, r.month))
    regime = TaxRegime(latest.tax_regime or TaxRegime.NEW)
    rules = parameters.regimes[regime]

    gross = sum(r.gross_earnings for r in records)
    tds_deducted = sum(r.tds for r in records)
    professional_tax = sum(r.professional_tax for r in records)
    pt_deduction = professional_tax if regime == TaxRegime.OLD else 0

    tax = TDSCalculator(parameters).annual_tax(gross - pt_deduction, regime)
    quarters = []
    for quarter, rs in quarterly_records:
        filed = [r for r in rs if r.status in EXPORTABLE_STATUSES]
        quarters.append(Form16Quarter(
            quarter=quarter,
            amount_paid=sum(r.gross_earnings for r in filed),
            tds_deducted=sum(r.tds for r in filed),
        ))

    return Form16Data(
        employee_id=employee.id,
        fy_start_year=fy_start_year,
        months_paid=len(records),
        part_a=Form16PartA(
            tan=establishment.tan,
            deductor_name=establishment.name,
            employee_name=employee.full_name,
            pan=(employee.pan or "").strip().upper() or None,
            financial_year=f"{fy_start_year}-{(fy_start_year + 1) % 100:02d}",
            assessment_year=f"{fy_start_year + 1}-{(fy_start_year + 2) % 100:02d}",
            period_from=date(fy_start_year, 4, 1),
            period_to=date(fy_start_year + 1, 3, 31),
        ),
        part_b=Form16PartB(
            tax_regime=regime,
            gross_salary=gross,
            standard_deduction=rules.standard_deduction,
            professional_tax=pt_deduction,
            income_chargeable=tax.taxable_income,
            tax_on_income=tax.tax_before_cess,
            rebate_applied=tax.rebate_applied,
            cess=tax.cess,
            total_tax_payable=tax.annual_tax,
            tds_deducted=tds_deducted,
            balance_payable=tax.annual_tax - tds_deducted,
        ),
        quarters=quarters,
    )


class StatutoryExportService:
    """Loads run data through the repository and hands it to the builders."""

    def __init__(
        self,
        repository: PayrollRepository,
        establishment: Establishment,
        tds_parameters: Optional[TDSParameters] = None,
    ):
        self.repository = repository
        self.establishment = establishment
        self.tds_parameters = tds_parameters or TDSParameters()

    @classmethod
    def from_settings(cls, repository: PayrollRepository, settings) -> "StatutoryExportService":
        return cls(repository, Establishment(
            code=settings.establishment_code,
            name=settings.establishment_name,
            tan=settings.establishment_tan,
        ), TDSParameters(cess_rate=settings.tds_cess_rate))

    async def _load(self, run_id: UUID) -> Tuple[PayrollRunData, List[PayrollRecordData]]:
        run = await self.repository.get_payroll_run(run_id)
        if run is None:
            raise NotFoundException("Payroll run", run_id)
        require_completed(run)
        return run, await self.repository.list_payroll_records(run_id)

    async def export_ecr(self, run_id: UUID) -> ExportResult:
        run, records = await self._load(run_id)
        result = build_ecr(run, records, self.establishment)
        self._log(result)
        return result

    async def export_esi_challan(self, run_id: UUID) -> ExportResult:
        run, records = await self._load(run_id)
        result = build_esi_challan(run, records)
        self._log(result)
        return result

    async def export_form24q(self, quarter: int, fy_start_year: int) -> ExportResult:
        if quarter not in FY_QUARTER_MONTHS:
            raise PayrollValidationError(f"Quarter must be 1-4, got {quarter}", field="quarter")

        runs_with_records = []
        for month, offset in FY_QUARTER_MONTHS[quarter]:
            run = await self.repository.find_active_run(month, fy_start_year + offset)
            if run is None:
                continue
            require_completed(run)
            runs_with_records.append((run, await self.repository.list_payroll_records(run.id)))

        if not runs_with_records:
            raise RunIntegrityError(f"No completed payroll runs in Q{quarter} of FY {fy_start_year}")

        result = build_form24q_summary(quarter, fy_start_year, runs_with_records, self.establishment)
        self._log(result)
        return result

    async def export_form16(self, employee_id: UUID, fy_start_year: int) -> Form16Data:
        """Form 16 data from every completed run of the financial year."""
        employee = await self.repository.get_employee(employee_id)
        if employee is None:
            raise NotFoundException("Employee", employee_id)

        quarterly_records = []
        for quarter, months in FY_QUARTER_MONTHS.items():
            records = []
            for month, offset in months:
                run = await self.repository.find_active_run(month, fy_start_year + offset)
                if run is None:
                    continue
                require_completed(run)
                record = await self.repository.find_payroll_record(run.id, employee_id)
                if record is not None:
                    records.append(record)
            quarterly_records.append((quarter, records))

        data = build_form16_data(employee, fy_start_year, quarterly_records, self.establishment, self.tds_parameters)
        logger.info(
            f"Built Form 16 data for employee {employee_id}, FY {fy_start_year}: {data.months_paid} months"
        )
        return data

    @staticmethod
    def _log(result: ExportResult) -> None:
        logger.info(f"Built {result.filename}: {result.included_count} employees")
        if result.excluded_count:
            logger.warning(
                f"{result.filename}: {result.excluded_count} employees left out for missing {result.missing_identifier}"
            )
