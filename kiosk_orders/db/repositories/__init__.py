# Repository adapters for Supabase tables
from . import commission_repo
from . import inventory_repo

__all__ = ["commission_repo", "inventory_repo"]
