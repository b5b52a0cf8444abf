"""
Commission calculation for marketplace order items.

Rate priority:
1. Vendor-specific rate
2. Category rate
3. Platform default rate
"""
from dataclasses import dataclass
from typing import Dict, Optional
import logging

from . import config

logger = logging.getLogger(__name__)


@dataclass
class CommissionCalculation:
    subtotal: float
    rate: float
    commission_amount: float
    vendor_earnings: float
    source: str  # 'vendor', 'category' or 'default'

    def to_dict(self) -> Dict:
        return {
            "subtotal": self.subtotal,
            "rate": self.rate,
            "commission_amount": self.commission_amount,
            "vendor_earnings": self.vendor_earnings,
            "source": self.source,
        }


class StaticCommissionRates:
    """Rates supplied up front; any missing vendor or category falls through."""

    def __init__(
        self,
        default_rate: Optional[float] = None,
        vendor_rates: Optional[Dict[str, float]] = None,
        category_rates: Optional[Dict[str, float]] = None,
    ):
        self.default_rate = config.DEFAULT_COMMISSION_RATE if default_rate is None else default_rate
        self.vendor_rates = dict(vendor_rates or {})
        self.category_rates = dict(category_rates or {})

    def get_default_rate(self) -> float:
        return self.default_rate

    def get_vendor_rate(self, vendor_id: str) -> Optional[float]:
        return self.vendor_rates.get(vendor_id)

    def get_category_rate(self, category_id: str) -> Optional[float]:
        return self.category_rates.get(category_id)


def round_rate(rate: float) -> float:
    """Rates are stored with four decimal places."""
    return round(rate * 10000) / 10000


class CommissionCalculator:
    """
    Resolves the effective rate for a vendor/category and splits a subtotal
    into platform commission and vendor earnings
    """

    def __init__(self, rates=None):
        self.rates = rates or StaticCommissionRates()

    def resolve_rate(self, vendor_id: str, category_id: Optional[str] = None):
        rate = self.rates.get_default_rate()
        source = "default"

        category_rate = self.rates.get_category_rate(category_id) if category_id else None
        if category_rate is not None:
            rate, source = category_rate, "category"

        vendor_rate = self.rates.get_vendor_rate(vendor_id)
        if vendor_rate is not None:
            rate, source = vendor_rate, "vendor"

        if not 0 <= rate <= 1:
            raise ValueError(f"Commission rate must be between 0 and 1, got {rate}")
        return round_rate(rate), source

    def calculate_commission(
        self,
        subtotal: float,
        vendor_id: str,
        category_id: Optional[str] = None,
    ) -> CommissionCalculation:
        """
        Calculate commission for a given subtotal and vendor/category

        Args:
            subtotal: Amount the vendor's line contributes to the order
            vendor_id: Vendor identifier
            category_id: Product category, if known

        Returns:
            CommissionCalculation rounded to two decimal places
        """
        rate, source = self.resolve_rate(vendor_id, category_id)
        commission_amount = round(subtotal * rate, 2)
        vendor_earnings = round(subtotal - commission_amount, 2)

        logger.debug(
            "Commission for vendor %s: rate=%s (%s) amount=%s",
            vendor_id, rate, source, commission_amount,
        )
        return CommissionCalculation(
            subtotal=subtotal,
            rate=rate,
            commission_amount=commission_amount,
            vendor_earnings=vendor_earnings,
            source=source,
        )
