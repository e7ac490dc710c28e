"""
Payroll Engine - Professional Tax Calculator

Professional Tax is levied by the states on monthly gross salary using
state-specific slabs. Slab selection:
- the salary must fall in [salary_from, salary_to); an open upper bound
  matches everything above salary_from
- a slab for the payroll month (e.g. Karnataka's February surcharge) beats
  the general slab
- a slab for the employee's gender beats a gender-agnostic one
- among the rest, the highest salary_from wins

No matching slab means the employee is exempt.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from app.services.money import Paise


# States and union territories that do not levy Professional Tax
PT_EXEMPT_STATES = frozenset({"DL", "HR", "HP", "JH", "KL", "PB", "RJ", "UP", "UT"})


@dataclass(frozen=True)
class PTSlab:
    """One Professional Tax slab. Amounts in paise."""
    state_code: str
    salary_from: Paise
    salary_to: Optional[Paise]
    tax_amount: Paise
    month: Optional[int] = None
    gender: Optional[str] = None

    def covers(self, gross: Paise) -> bool:
        if gross < self.salary_from:
            return False
        return self.salary_to is None or gross < self.salary_to

    def applies_to(self, month: int, gender: Optional[str]) -> bool:
        if self.month is not None and self.month != month:
            return False
        if self.gender is not None and self.gender != gender:
            return False
        return True


@dataclass(frozen=True)
class PTResult:
    professional_tax: Paise = 0
    exempt: bool = True
    slab: Optional[PTSlab] = None


# Reference slabs for Karnataka and Maharashtra
DEFAULT_PT_SLABS: List[PTSlab] = [
    PTSlab("KA", 2_500_000, None, 20_000),
    PTSlab("KA", 2_500_000, None, 30_000, month=2),
    PTSlab("MH", 750_100, 1_000_100, 17_500, gender="M"),
    PTSlab("MH", 1_000_100, None, 20_000, gender="M"),
    PTSlab("MH", 1_000_100, None, 30_000, month=2, gender="M"),
    PTSlab("MH", 2_500_100, None, 20_000, gender="F"),
    PTSlab("MH", 2_500_100, None, 30_000, month=2, gender="F"),
]


class PTCalculator:
    """Stateless Professional Tax slab lookup."""

    @staticmethod
    def select_slab(
        slabs: Iterable[PTSlab],
        gross: Paise,
        month: int,
        gender: Optional[str] = None,
    ) -> Optional[PTSlab]:
        candidates = [s for s in slabs if s.covers(gross) and s.applies_to(month, gender)]
        if not candidates:
            return None
        return max(
            candidates,
            key=lambda s: (s.month is not None, s.gender is not None, s.salary_from),
        )

    @classmethod
    def calculate(
        cls,
        state_code: Optional[str],
        gross: Paise,
        month: int,
        slabs: Iterable[PTSlab],
        gender: Optional[str] = None,
    ) -> PTResult:
        """
        Calculate Professional Tax for one month.

        Args:
            state_code: Two-letter state of employment
            gross: Gross salary for the month, in paise
            month: Calendar month 1-12
            slabs: Slabs to search; slabs for other states are ignored
            gender: "M", "F" or None

        Returns:
            PTResult; exempt with zero tax when nothing matches
        """
        if not state_code or gross <= 0:
            return PTResult()
        state_code = state_code.upper()
        if state_code in PT_EXEMPT_STATES:
            return PTResult()

        slab = cls.select_slab(
            (s for s in slabs if s.state_code == state_code), gross, month, gender
        )
        if slab is None:
            return PTResult()
        return PTResult(professional_tax=slab.tax_amount, exempt=False, slab=slab)
