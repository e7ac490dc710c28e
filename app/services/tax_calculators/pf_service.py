"""
Payroll Engine - Provident Fund Calculator

EPF contribution on basic wages capped at the statutory wage ceiling:
- Employee: 12% of min(basic, ceiling)
- Employer: 12% of min(basic, ceiling), split into
  - EPS (pension) 8.33%, capped at Rs.1,250 a month
  - EPF (retirement) the rest of the 12%, so any EPS excess lands here
- Employer also pays EDLI (0.50%) and admin charges (0.51%) on top
"""

from dataclasses import dataclass
from decimal import Decimal

from app.services.money import Paise, apply_rate


@dataclass(frozen=True)
class PFParameters:
    """Statutory PF parameters. Amounts in paise."""
    wage_ceiling: Paise = 1_500_000
    employee_rate: Decimal = Decimal("0.12")
    employer_rate: Decimal = Decimal("0.12")
    eps_rate: Decimal = Decimal("0.0833")
    eps_cap: Paise = 125_000
    edli_rate: Decimal = Decimal("0.005")
    admin_rate: Decimal = Decimal("0.0051")


@dataclass(frozen=True)
class PFContribution:
    pf_base: Paise = 0
    employee_pf: Paise = 0
    employer_epf: Paise = 0
    employer_eps: Paise = 0
    employer_edli: Paise = 0
    employer_admin: Paise = 0
    eps_capped: bool = False

    @property
    def employer_pf(self) -> Paise:
        """Retirement plus pension; always equals the employer rate on the PF base."""
        return self.employer_epf + self.employer_eps

    @property
    def employer_total(self) -> Paise:
        return self.employer_epf + self.employer_eps + self.employer_edli + self.employer_admin


class PFCalculator:
    """Provident Fund calculator."""

    def __init__(self, parameters: PFParameters = PFParameters()):
        self.parameters = parameters

    def calculate(self, basic: Paise) -> PFContribution:
        """
        Calculate PF for one month's basic wages.

        Args:
            basic: Basic wages for the month, in paise

        Returns:
            PFContribution with every line rounded independently
        """
        p = self.parameters
        if basic <= 0:
            return PFContribution()

        pf_base = min(basic, p.wage_ceiling)
        employee_pf = apply_rate(pf_base, p.employee_rate)
        employer_share = apply_rate(pf_base, p.employer_rate)

        eps = apply_rate(pf_base, p.eps_rate)
        eps_capped = eps > p.eps_cap
        if eps_capped:
            eps = p.eps_cap

        return PFContribution(
            pf_base=pf_base,
            employee_pf=employee_pf,
            employer_epf=employer_share - eps,
            employer_eps=eps,
            employer_edli=apply_rate(pf_base, p.edli_rate),
            employer_admin=apply_rate(pf_base, p.admin_rate),
            eps_capped=eps_capped,
        )
