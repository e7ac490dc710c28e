"""
Payroll Engine - Employee Payroll Calculator

Pure computation of one employee's month: LOP, PF, ESI, PT, TDS, loan EMIs
and net pay. No I/O; the orchestrator fetches the inputs and persists the
result.

- LOP deduction = round(gross / working days) x LOP days, capped at gross
- PF on earned basic (basic less its share of the LOP days)
- ESI, PT and TDS on gross after LOP
- Net pay = gross - (PF + ESI + PT + TDS) + reimbursements
  - EMIs accepted by the skip policy
- Reimbursements are paid on top of gross and are neither taxed nor costed
- Employer cost = gross + employer PF (with EDLI and admin) + employer ESI
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from app.models.loan import LoanDeductionStatus
from app.schemas.loan import (
    AlwaysDeduct,
    LoanData,
    LoanDeductionData,
    LoanSkipPolicy,
    MinimumNetPay,
    MinimumNetRatio,
    SkipIfNegative,
)
from app.schemas.payroll import AttendanceSummaryData, EmployeeProfile, SalaryStructureData
from app.services.money import Paise, apply_rate, divide
from app.services.tax_calculators.esi_service import ESICalculator, ESIContribution, ESIParameters
from app.services.tax_calculators.pf_service import PFCalculator, PFContribution, PFParameters
from app.services.tax_calculators.pt_service import PTCalculator, PTSlab
from app.services.tax_calculators.tds_service import TDSCalculator, TDSParameters, TDSResult


@dataclass(frozen=True)
class StatutoryParameters:
    """Everything the calculators need, passed in rather than read globally."""
    pf: PFParameters = PFParameters()
    esi: ESIParameters = ESIParameters()
    tds: TDSParameters = field(default_factory=TDSParameters)

    @classmethod
    def from_settings(cls, settings) -> "StatutoryParameters":
        return cls(
            pf=PFParameters(
                wage_ceiling=settings.pf_wage_ceiling,
                employee_rate=settings.pf_employee_rate,
                employer_rate=settings.pf_employer_rate,
                eps_rate=settings.pf_eps_rate,
                eps_cap=settings.pf_eps_cap,
                edli_rate=settings.pf_edli_rate,
                admin_rate=settings.pf_admin_rate,
            ),
            esi=ESIParameters(
                wage_ceiling=settings.esi_wage_ceiling,
                employee_rate=settings.esi_employee_rate,
                employer_rate=settings.esi_employer_rate,
            ),
            tds=TDSParameters(cess_rate=settings.tds_cess_rate),
        )


@dataclass(frozen=True)
class LoanDecision:
    loan_id: UUID
    deduction: LoanDeductionData
    status: LoanDeductionStatus

    @property
    def amount(self) -> Paise:
        return self.deduction.emi_amount if self.status == LoanDeductionStatus.DEDUCTED else 0


@dataclass(frozen=True)
class EmployeePayroll:
    """Result of one employee's calculation."""
    working_days: int
    paid_days: int
    lop_days: int
    gross_before_lop: Paise
    lop_deduction: Paise
    gross_earnings: Paise
    earned_basic: Paise
    pf: PFContribution
    esi: ESIContribution
    professional_tax: Paise
    tds: TDSResult
    loan_decisions: List[LoanDecision]
    reimbursements: Paise = 0

    @property
    def loan_deductions(self) -> Paise:
        return sum(d.amount for d in self.loan_decisions)

    @property
    def statutory_deductions(self) -> Paise:
        return self.pf.employee_pf + self.esi.employee_esi + self.professional_tax + self.tds.monthly_tds

    @property
    def total_deductions(self) -> Paise:
        return self.statutory_deductions + self.loan_deductions

    @property
    def net_pay(self) -> Paise:
        return self.gross_earnings + self.reimbursements - self.total_deductions

    @property
    def employer_cost(self) -> Paise:
        return self.gross_earnings + self.pf.employer_total + self.esi.employer_esi


class SalaryStructureViolation(ValueError):
    """The structure breaks the basic-pay rule or has no pay at all."""


def accepts_emi(policy: LoanSkipPolicy, emi: Paise, net_before_emi: Paise, gross: Paise) -> bool:
    """Whether ``policy`` lets an EMI through given the net pay left so far."""
    remaining = net_before_emi - emi
    if isinstance(policy, AlwaysDeduct):
        return True
    if isinstance(policy, SkipIfNegative):
        return remaining >= 0
    if isinstance(policy, MinimumNetPay):
        return remaining >= policy.floor_paise
    if isinstance(policy, MinimumNetRatio):
        return remaining >= apply_rate(gross, policy.ratio)
    raise TypeError(f"Unknown loan skip policy: {policy!r}")


def loss_of_pay(gross: Paise, working_days: int, lop_days: int) -> Paise:
    if lop_days <= 0:
        return 0
    per_day = divide(gross, working_days)
    return min(per_day * lop_days, gross)


def earned_amount(amount: Paise, paid_days: int, working_days: int) -> Paise:
    """``amount`` prorated over the working days actually paid."""
    if paid_days >= working_days:
        return amount
    return divide(Decimal(amount) * paid_days, working_days)


class EmployeePayrollCalculator:
    def __init__(self, parameters: Optional[StatutoryParameters] = None):
        self.parameters = parameters or StatutoryParameters()
        self.pf_calculator = PFCalculator(self.parameters.pf)
        self.esi_calculator = ESICalculator(self.parameters.esi)
        self.tds_calculator = TDSCalculator(self.parameters.tds)

    def calculate(
        self,
        employee: EmployeeProfile,
        structure: SalaryStructureData,
        attendance: AttendanceSummaryData,
        month: int,
        pt_slabs: Iterable[PTSlab] = (),
        tds_withheld: Paise = 0,
        esi_covered_in_period: bool = False,
        loan_installments: Sequence[Tuple[LoanData, LoanDeductionData]] = (),
        skip_policy: LoanSkipPolicy = SkipIfNegative(),
        reimbursements: Paise = 0,
    ) -> EmployeePayroll:
        """
        Calculate one employee's payroll for a month.

        Raises:
            SalaryStructureViolation: the structure fails the 50% basic rule
        """
        error = structure.compliance_error()
        if error:
            raise SalaryStructureViolation(error)

        working_days = attendance.working_days
        lop_days = attendance.lop_days
        paid_days = attendance.paid_days

        gross_before_lop = structure.gross
        lop = loss_of_pay(gross_before_lop, working_days, lop_days)
        gross = gross_before_lop - lop
        earned_basic = earned_amount(structure.basic, working_days - lop_days, working_days)

        pf = self.pf_calculator.calculate(earned_basic)
        esi = self.esi_calculator.calculate(gross, covered_in_period=esi_covered_in_period)
        pt = PTCalculator.calculate(
            employee.work_state,
            gross,
            month,
            pt_slabs,
            employee.gender.value if employee.gender else None,
        ).professional_tax
        tds = self.tds_calculator.calculate(gross, month, structure.tax_regime, tds_withheld)

        net = gross + reimbursements - (pf.employee_pf + esi.employee_esi + pt + tds.monthly_tds)
        decisions: List[LoanDecision] = []
        for loan, deduction in loan_installments:
            if accepts_emi(skip_policy, deduction.emi_amount, net, gross):
                status = LoanDeductionStatus.DEDUCTED
                net -= deduction.emi_amount
            else:
                status = LoanDeductionStatus.SKIPPED
            decisions.append(LoanDecision(loan_id=loan.id, deduction=deduction, status=status))

        return EmployeePayroll(
            working_days=working_days,
            paid_days=paid_days,
            lop_days=lop_days,
            gross_before_lop=gross_before_lop,
            lop_deduction=lop,
            gross_earnings=gross,
            earned_basic=earned_basic,
            pf=pf,
            esi=esi,
            professional_tax=pt,
            tds=tds,
            loan_decisions=decisions,
            reimbursements=reimbursements,
        )
