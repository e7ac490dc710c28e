"""
Payroll Engine - Statutory Calculators Package

Pure statutory calculators for Indian payroll. Every amount is integer paise.

Modules:
- pf_service: Provident Fund (12% employee, EPF/EPS/EDLI/admin employer split)
- esi_service: Employee State Insurance (0.75% / 3.25% up to Rs.21,000 gross)
- pt_service: Professional Tax state slabs
- tds_service: Salary TDS under the old and new regimes
"""

from typing import Iterable, Optional

from app.services.money import Paise
from app.services.tax_calculators.pf_service import PFCalculator, PFContribution, PFParameters
from app.services.tax_calculators.esi_service import (
    ESICalculator,
    ESIContribution,
    ESIParameters,
    contribution_period,
)
from app.services.tax_calculators.pt_service import (
    DEFAULT_PT_SLABS,
    PT_EXEMPT_STATES,
    PTCalculator,
    PTResult,
    PTSlab,
)
from app.services.tax_calculators.tds_service import (
    TaxRegime,
    TDSCalculator,
    TDSParameters,
    TDSResult,
    fy_month,
    fy_start_year,
    remaining_fy_months,
)


# ===========================================
# CONVENIENCE FUNCTIONS
# ===========================================

def calculate_pf(basic: Paise) -> PFContribution:
    """
    Calculate PF with the default statutory parameters.

    Args:
        basic: Basic wages for the month, in paise

    Returns:
        PFContribution (all zero when basic <= 0)
    """
    return PFCalculator().calculate(basic)


def calculate_esi(gross: Paise) -> ESIContribution:
    return ESICalculator().calculate(gross)


def calculate_pt(
    state_code: str,
    gross: Paise,
    month: int,
    gender: Optional[str] = None,
    slabs: Iterable[PTSlab] = DEFAULT_PT_SLABS,
) -> Paise:
    return PTCalculator.calculate(state_code, gross, month, slabs, gender).professional_tax


def calculate_tds(
    monthly_gross: Paise,
    month: int,
    regime: TaxRegime = TaxRegime.NEW,
    tax_already_withheld: Paise = 0,
) -> Paise:
    """Monthly TDS with the default slab tables and 4% cess."""
    return TDSCalculator().calculate(monthly_gross, month, regime, tax_already_withheld).monthly_tds


__all__ = [
    "PFCalculator",
    "PFContribution",
    "PFParameters",
    "ESICalculator",
    "ESIContribution",
    "ESIParameters",
    "contribution_period",
    "PTCalculator",
    "PTResult",
    "PTSlab",
    "DEFAULT_PT_SLABS",
    "PT_EXEMPT_STATES",
    "TaxRegime",
    "TDSCalculator",
    "TDSParameters",
    "TDSResult",
    "fy_month",
    "fy_start_year",
    "remaining_fy_months",
    "calculate_pf",
    "calculate_esi",
    "calculate_pt",
    "calculate_tds",
]
