"""
Payroll Engine - Employee State Insurance Calculator

ESI applies while monthly gross wages stay at or below the eligibility
ceiling (Rs.21,000). Employee pays 0.75%, employer 3.25%.

Contribution periods run April-September and October-March; an employee who
is covered at the start of a period stays covered for the whole of it.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Tuple

from app.services.money import Paise, apply_rate


@dataclass(frozen=True)
class ESIParameters:
    wage_ceiling: Paise = 2_100_000
    employee_rate: Decimal = Decimal("0.0075")
    employer_rate: Decimal = Decimal("0.0325")


@dataclass(frozen=True)
class ESIContribution:
    applicable: bool = False
    employee_esi: Paise = 0
    employer_esi: Paise = 0

    @property
    def total(self) -> Paise:
        return self.employee_esi + self.employer_esi


class ESICalculator:
    """ESI calculator."""

    def __init__(self, parameters: ESIParameters = ESIParameters()):
        self.parameters = parameters

    def is_applicable(self, gross: Paise) -> bool:
        return 0 < gross <= self.parameters.wage_ceiling

    def calculate(self, gross: Paise, covered_in_period: bool = False) -> ESIContribution:
        """
        Args:
            gross: Gross wages for the month after LOP, in paise
            covered_in_period: Employee already contributed earlier in the
                same contribution period
        """
        if gross <= 0:
            return ESIContribution()
        if not (covered_in_period or self.is_applicable(gross)):
            return ESIContribution()
        return ESIContribution(
            applicable=True,
            employee_esi=apply_rate(gross, self.parameters.employee_rate),
            employer_esi=apply_rate(gross, self.parameters.employer_rate),
        )


def contribution_period(month: int, year: int) -> Tuple[date, date]:
    """Return the (start, end) dates of the ESI contribution period holding month/year."""
    if 4 <= month <= 9:
        return date(year, 4, 1), date(year, 9, 30)
    if month >= 10:
        return date(year, 10, 1), date(year + 1, 3, 31)
    return date(year - 1, 10, 1), date(year, 3, 31)
