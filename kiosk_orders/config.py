"""
Runtime configuration for the order lifecycle service.

Values come from the environment; a .env file next to the package (or in the
working directory) is loaded automatically.
"""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

_this_dir = Path(__file__).resolve().parent
_package_env = _this_dir.parent / ".env"
if _package_env.exists():
    load_dotenv(_package_env)
else:
    load_dotenv()

logger = logging.getLogger(__name__)


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip().strip('"')


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").lower() == "true"


# Storage
REDIS_URL = _env_str("REDIS_URL")
ORDER_LOCK_TIMEOUT_SECONDS = int(os.getenv("ORDER_LOCK_TIMEOUT_SECONDS", "10"))

# Supabase (inventory + commission rates)
SUPABASE_URL = _env_str("SUPABASE_URL")
SUPABASE_ANON_KEY = _env_str("SUPABASE_ANON_KEY")
SUPABASE_SERVICE_ROLE_KEY = _env_str("SUPABASE_SERVICE_ROLE_KEY")
FEATURE_SUPABASE_READ = _env_flag("FEATURE_SUPABASE_READ")
FEATURE_SUPABASE_WRITE = _env_flag("FEATURE_SUPABASE_WRITE")

# Payments
PAYSTACK_WEBHOOK_SECRET = _env_str("PAYSTACK_WEBHOOK_SECRET")

# Notifications
NOTIFICATION_WEBHOOK_URL = _env_str("NOTIFICATION_WEBHOOK_URL")

# Business rules
DISPUTE_WINDOW_HOURS = int(os.getenv("DISPUTE_WINDOW_HOURS", "48"))
DEFAULT_COMMISSION_RATE = float(os.getenv("DEFAULT_COMMISSION_RATE", "0.08"))
DEFAULT_CURRENCY = _env_str("DEFAULT_CURRENCY", "GHS")

# HTTP service
ORDERS_SERVICE_PORT = int(os.getenv("ORDERS_SERVICE_PORT", "8011"))

logger.debug(
    "[config] Redis set: %s, Supabase set: %s, read: %s, write: %s",
    bool(REDIS_URL),
    bool(SUPABASE_URL),
    FEATURE_SUPABASE_READ,
    FEATURE_SUPABASE_WRITE,
)
