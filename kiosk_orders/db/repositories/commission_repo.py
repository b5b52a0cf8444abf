"""
Commission rate lookups backed by Supabase.

Tables:
- site_settings (key, value) with key 'default_commission_rate'
- vendors (user_id, commission_rate)
- categories (id, commission_rate)
"""
import logging
from typing import Optional

import requests

from ... import config
from .. import supabase_client

logger = logging.getLogger(__name__)


def _parse_rate(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class SupabaseCommissionRates:
    """Rate source for CommissionCalculator; lookups fail soft to 'no rate'."""

    def get_default_rate(self) -> float:
        if not supabase_client.is_enabled():
            return config.DEFAULT_COMMISSION_RATE
        try:
            row = supabase_client.select_one(
                "site_settings", params="key=eq.default_commission_rate", columns="value"
            )
        except requests.exceptions.RequestException as exc:
            logger.error("[commission_repo] Error getting default rate: %s", exc)
            return config.DEFAULT_COMMISSION_RATE
        rate = _parse_rate(row.get("value")) if row else None
        return config.DEFAULT_COMMISSION_RATE if rate is None else rate

    def get_vendor_rate(self, vendor_id: str) -> Optional[float]:
        return self._lookup("vendors", f"user_id=eq.{vendor_id}")

    def get_category_rate(self, category_id: str) -> Optional[float]:
        return self._lookup("categories", f"id=eq.{category_id}")

    def _lookup(self, table: str, params: str) -> Optional[float]:
        if not supabase_client.is_enabled():
            return None
        try:
            row = supabase_client.select_one(table, params=params, columns="commission_rate")
        except requests.exceptions.RequestException as exc:
            logger.error("[commission_repo] Error getting %s rate: %s", table, exc)
            return None
        return _parse_rate(row.get("commission_rate")) if row else None
