"""
Payroll Engine - Income Tax Withholding (TDS on salary)

Monthly TDS is the projected annual tax spread over the months left in the
financial year, net of tax already withheld:

1. Projected income = monthly gross x 12
2. Taxable income = projected income - standard deduction (regime specific)
3. Slab tax on taxable income (each slab line rounded)
4. Full rebate when projected income is within the regime's rebate limit
5. Health and education cess of 4% on the tax
6. Monthly TDS = (annual tax - withheld so far) / months remaining

New regime slabs (FY 2024-25 onwards):
- Rs.0 - 3,00,000: 0%
- Rs.3,00,001 - 7,00,000: 5%
- Rs.7,00,001 - 10,00,000: 10%
- Rs.10,00,001 - 12,00,000: 15%
- Rs.12,00,001 - 15,00,000: 20%
- Above Rs.15,00,000: 30%

Old regime slabs:
- Rs.0 - 2,50,000: 0%
- Rs.2,50,001 - 5,00,000: 5%
- Rs.5,00,001 - 10,00,000: 20%
- Above Rs.10,00,000: 30%
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from app.services.money import Paise, apply_rate, divide


class TaxRegime(str, Enum):
    OLD = "old"
    NEW = "new"


@dataclass(frozen=True)
class TDSTaxBand:
    """Tax band definition, bounds in paise."""
    lower: Paise
    upper: Optional[Paise]
    rate: Decimal

    def calculate_tax(self, taxable_income: Paise) -> Paise:
        if taxable_income <= self.lower:
            return 0
        if self.upper is None:
            taxable_in_band = taxable_income - self.lower
        else:
            taxable_in_band = min(taxable_income, self.upper) - self.lower
        if taxable_in_band <= 0:
            return 0
        return apply_rate(taxable_in_band, self.rate)


NEW_REGIME_BANDS = [
    TDSTaxBand(0, 30_000_000, Decimal("0")),
    TDSTaxBand(30_000_000, 70_000_000, Decimal("0.05")),
    TDSTaxBand(70_000_000, 100_000_000, Decimal("0.10")),
    TDSTaxBand(100_000_000, 120_000_000, Decimal("0.15")),
    TDSTaxBand(120_000_000, 150_000_000, Decimal("0.20")),
    TDSTaxBand(150_000_000, None, Decimal("0.30")),
]

OLD_REGIME_BANDS = [
    TDSTaxBand(0, 25_000_000, Decimal("0")),
    TDSTaxBand(25_000_000, 50_000_000, Decimal("0.05")),
    TDSTaxBand(50_000_000, 100_000_000, Decimal("0.20")),
    TDSTaxBand(100_000_000, None, Decimal("0.30")),
]


@dataclass(frozen=True)
class RegimeRules:
    bands: List[TDSTaxBand]
    standard_deduction: Paise
    rebate_limit: Paise


@dataclass(frozen=True)
class TDSParameters:
    cess_rate: Decimal = Decimal("0.04")
    regimes: dict = field(default_factory=lambda: {
        TaxRegime.NEW: RegimeRules(NEW_REGIME_BANDS, 7_500_000, 70_000_000),
        TaxRegime.OLD: RegimeRules(OLD_REGIME_BANDS, 5_000_000, 50_000_000),
    })


@dataclass(frozen=True)
class TDSResult:
    projected_annual_income: Paise
    taxable_income: Paise
    tax_before_cess: Paise
    rebate_applied: bool
    cess: Paise
    annual_tax: Paise
    remaining_months: int
    monthly_tds: Paise


def fy_month(month: int) -> int:
    """Financial-year month number: April is 1, March is 12."""
    if not 1 <= month <= 12:
        raise ValueError(f"month must be 1-12, got {month}")
    return month - 3 if month >= 4 else month + 9


def fy_start_year(month: int, year: int) -> int:
    """Calendar year in which the financial year holding month/year began."""
    return year if month >= 4 else year - 1


def remaining_fy_months(month: int) -> int:
    """Months left in the financial year, counting the current one."""
    return 13 - fy_month(month)


class TDSCalculator:
    """Salary TDS calculator for the old and new regimes."""

    def __init__(self, parameters: Optional[TDSParameters] = None):
        self.parameters = parameters or TDSParameters()

    def annual_tax(self, projected_income: Paise, regime: TaxRegime) -> TDSResult:
        rules = self.parameters.regimes[TaxRegime(regime)]
        taxable = max(0, projected_income - rules.standard_deduction)
        tax = sum(band.calculate_tax(taxable) for band in rules.bands)

        rebate_applied = projected_income <= rules.rebate_limit
        if rebate_applied:
            tax = 0

        cess = apply_rate(tax, self.parameters.cess_rate)
        return TDSResult(
            projected_annual_income=projected_income,
            taxable_income=taxable,
            tax_before_cess=tax,
            rebate_applied=rebate_applied,
            cess=cess,
            annual_tax=tax + cess,
            remaining_months=12,
            monthly_tds=0,
        )

    def calculate(
        self,
        monthly_gross: Paise,
        month: int,
        regime: TaxRegime = TaxRegime.NEW,
        tax_already_withheld: Paise = 0,
    ) -> TDSResult:
        """
        Calculate this month's TDS.

        Args:
            monthly_gross: Gross salary for the month after LOP, in paise
            month: Calendar month 1-12
            regime: Tax regime elected by the employee
            tax_already_withheld: TDS already deducted earlier in the FY

        Returns:
            TDSResult with the monthly amount to withhold
        """
        if monthly_gross <= 0:
            return TDSResult(0, 0, 0, False, 0, 0, remaining_fy_months(month), 0)

        annual = self.annual_tax(monthly_gross * 12, regime)
        remaining = remaining_fy_months(month)
        outstanding = max(0, annual.annual_tax - tax_already_withheld)
        return TDSResult(
            projected_annual_income=annual.projected_annual_income,
            taxable_income=annual.taxable_income,
            tax_before_cess=annual.tax_before_cess,
            rebate_applied=annual.rebate_applied,
            cess=annual.cess,
            annual_tax=annual.annual_tax,
            remaining_months=remaining,
            monthly_tds=divide(outstanding, remaining),
        )
