"""
Tax calculation step.

A single flat rate (Ontario HST by default) applied to purchase subtotals when
``MANUAL_TAX_ENABLED`` is set. Amounts are integer cents, rounded half-up.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List

from core.config import Settings


@dataclass
class TaxBreakdown:
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    rate: float
    name: str
    description: str

    @property
    def is_applicable(self) -> bool:
        return self.tax_cents > 0

    def to_metadata(self) -> Dict[str, str]:
        """Flattened for processor metadata (string values only)."""
        return {
            "subtotal_cents": str(self.subtotal_cents),
            "tax_cents": str(self.tax_cents),
            "tax_rate": str(self.rate),
            "tax_name": self.name,
            "tax_description": self.description,
            "total_cents": str(self.total_cents),
        }

    def to_dict(self) -> Dict[str, object]:
        return {
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "tax_rate": self.rate,
            "tax_name": self.name,
            "tax_description": self.description,
        }


class TaxCalculator:
    def __init__(
        self,
        enabled: bool = False,
        rate: float = 0.13,
        name: str = "HST",
        description: str = "Harmonized Sales Tax (Ontario)",
    ):
        self.enabled = enabled
        self.rate = rate
        self.name = name
        self.description = description

    @classmethod
    def from_settings(cls, settings: Settings) -> "TaxCalculator":
        return cls(
            enabled=settings.tax_enabled,
            rate=settings.tax_rate,
            name=settings.tax_name,
            description=settings.tax_description,
        )

    def validate(self) -> List[str]:
        errors = []
        if self.enabled:
            if not 0 < self.rate <= 1:
                errors.append(f"Tax rate must be between 0 and 1, got {self.rate}")
            if not self.name:
                errors.append("Tax name is required when tax is enabled")
        return errors

    def calculate(self, subtotal_cents: int) -> TaxBreakdown:
        if not self.enabled or subtotal_cents <= 0:
            return TaxBreakdown(
                subtotal_cents=subtotal_cents,
                tax_cents=0,
                total_cents=subtotal_cents,
                rate=0.0,
                name="",
                description="",
            )

        tax = (Decimal(subtotal_cents) * Decimal(str(self.rate))).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        tax_cents = int(tax)
        return TaxBreakdown(
            subtotal_cents=subtotal_cents,
            tax_cents=tax_cents,
            total_cents=subtotal_cents + tax_cents,
            rate=self.rate,
            name=self.name,
            description=self.description,
        )
