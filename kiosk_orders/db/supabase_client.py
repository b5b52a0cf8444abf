"""
Thin PostgREST client for the Supabase tables the order service touches:
products (stock restore through an RPC), vendors / categories / site_settings (commission
rates) and audit_logs.

Reads use the anon key; writes use the service-role key when configured.
HTTP and network errors are logged and re-raised as
requests.exceptions.RequestException.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Union

import requests

from .. import config

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10


def _read_key() -> str:
    return config.SUPABASE_ANON_KEY


def _write_key() -> str:
    return config.SUPABASE_SERVICE_ROLE_KEY or config.SUPABASE_ANON_KEY


def is_enabled() -> bool:
    """Reads allowed: feature flag on and URL + anon key present."""
    return config.FEATURE_SUPABASE_READ and bool(config.SUPABASE_URL) and bool(_read_key())


def is_write_enabled() -> bool:
    """Writes allowed: feature flag on and URL + a writable key present."""
    return config.FEATURE_SUPABASE_WRITE and bool(config.SUPABASE_URL) and bool(_write_key())


def _request(
    method: str,
    table: str,
    *,
    query: str = "",
    body: Any = None,
    write: bool = False,
    prefer: Optional[str] = None,
    timeout: int = DEFAULT_TIMEOUT,
) -> Any:
    api_key = _write_key() if write else _read_key()
    headers = {
        "apikey": api_key,
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    if prefer:
        headers["Prefer"] = prefer

    url = f"{config.SUPABASE_URL.rstrip('/')}/rest/v1/{table}"
    if query:
        url = f"{url}?{query}"

    try:
        resp = requests.request(method, url, headers=headers, json=body, timeout=timeout)
        resp.raise_for_status()
    except requests.exceptions.HTTPError as exc:
        status = getattr(exc.response, "status_code", "N/A")
        text = getattr(exc.response, "text", str(exc))[:400]
        logger.warning("[supabase_client] %s %s failed (%s): %s", method, table, status, text)
        raise
    except requests.exceptions.RequestException as exc:
        logger.warning("[supabase_client] %s %s request error: %s", method, table, exc)
        raise

    return resp.json() if resp.content else None


def select(table: str, params: Optional[str] = None, columns: str = "*") -> List[Dict[str, Any]]:
    """
    Rows of `table` matching a PostgREST filter string

    Args:
        table: Table name, e.g. 'vendors'
        params: Filter such as 'user_id=eq.vendor_a'
        columns: Comma separated column list
    """
    query = f"select={columns}"
    if params:
        query += "&" + params
    return _request("GET", table, query=query) or []


def select_one(table: str, params: Optional[str] = None, columns: str = "*") -> Optional[Dict[str, Any]]:
    rows = select(table, params=params, columns=columns)
    return rows[0] if rows else None


def upsert(
    table: str,
    rows: Union[Dict[str, Any], Sequence[Dict[str, Any]]],
    *,
    conflict_column: Optional[str] = None,
) -> Optional[List[Dict[str, Any]]]:
    """Insert or merge rows; a no-op returning None while writes are disabled."""
    if not is_write_enabled():
        logger.debug("[supabase_client] Upsert into %s skipped; writes disabled", table)
        return None

    payload = [rows] if isinstance(rows, dict) else list(rows)
    if not payload:
        return None

    return _request(
        "POST",
        table,
        query=f"on_conflict={conflict_column}" if conflict_column else "",
        body=payload,
        write=True,
        prefer="resolution=merge-duplicates,return=representation",
    )


def update(table: str, updates: Dict[str, Any], params: str) -> Optional[List[Dict[str, Any]]]:
    """PATCH the rows matching `params`; a no-op while writes are disabled."""
    if not is_write_enabled():
        logger.debug("[supabase_client] Update of %s skipped; writes disabled", table)
        return None
    return _request("PATCH", table, query=params, body=updates, write=True, prefer="return=representation")


def rpc(function: str, params: Dict[str, Any]) -> Any:
    """
    Call a Postgres function exposed by PostgREST at /rest/v1/rpc/<function>

    Used for writes that must happen in one statement; a no-op returning
    None while writes are disabled.
    """
    if not is_write_enabled():
        logger.debug("[supabase_client] RPC %s skipped; writes disabled", function)
        return None
    return _request("POST", f"rpc/{function}", body=params, write=True)
