"""
Inventory adapters used when an order's stock has to be given back.

The Supabase adapter increments stock in a single statement through a
Postgres function exposed over PostgREST RPC:

    create or replace function increment_product_quantity(p_product_id text, p_amount integer)
    returns integer language sql as $$
        update products
           set quantity = coalesce(quantity, 0) + p_amount, updated_at = now()
         where id = p_product_id
        returning quantity;
    $$;

The function returns the new quantity, or null when no product row matches.
Decrementing stock happens at checkout, outside this package.
"""
import logging
import threading
from typing import Dict

from .. import supabase_client

logger = logging.getLogger(__name__)


class InMemoryInventory:
    """Product quantities held in a dict; used by tests and local runs."""

    def __init__(self, quantities: Dict[str, int] = None):
        self.quantities: Dict[str, int] = dict(quantities or {})
        self._lock = threading.Lock()

    def restore_quantity(self, product_id: str, quantity: int) -> bool:
        with self._lock:
            self.quantities[product_id] = self.quantities.get(product_id, 0) + int(quantity)
        logger.info("Restored %s units of product %s", quantity, product_id)
        return True

    def get_quantity(self, product_id: str) -> int:
        return self.quantities.get(product_id, 0)


class SupabaseInventory:
    """Restores stock on the Supabase 'products' table."""

    function = "increment_product_quantity"

    def restore_quantity(self, product_id: str, quantity: int) -> bool:
        """Increase stock for product_id by quantity in one atomic update.

        Returns False when writes are disabled or the product row is missing.
        Network failures propagate to the caller.
        """
        if not supabase_client.is_write_enabled():
            logger.debug("[inventory_repo] Restore skipped for %s; writes disabled", product_id)
            return False

        new_quantity = supabase_client.rpc(
            self.function, {"p_product_id": product_id, "p_amount": int(quantity)}
        )
        if new_quantity is None:
            logger.warning("[inventory_repo] No product row for %s; cannot restore stock", product_id)
            return False
        logger.info("[inventory_repo] Restored %s units of product %s (now %s)", quantity, product_id, new_quantity)
        return True
