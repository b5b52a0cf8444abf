"""
Transaction Trust Layer - audit trail for order lifecycle events

Every transition attempt, accepted or rejected, ends up here.
"""
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from .db import supabase_client

logger = logging.getLogger(__name__)


@dataclass
class AuditLogEntry:
    """
    Audit log entry for compliance and debugging
    """
    log_id: str
    timestamp: str
    action: str
    actor_id: str
    actor_role: str
    target_id: str
    target_type: str
    details: Dict[str, Any]
    severity: str

    def to_dict(self) -> Dict:
        return {
            "log_id": self.log_id,
            "timestamp": self.timestamp,
            "action": self.action,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "target_id": self.target_id,
            "target_type": self.target_type,
            "details": self.details,
            "severity": self.severity,
        }


class AuditLogger:
    """
    Audit logging for lifecycle actions

    Entries are kept in memory and, when Supabase writes are enabled,
    mirrored to the 'audit_logs' table on a best-effort basis.
    """

    def __init__(self, mirror_to_supabase: bool = True):
        self.audit_logs: List[AuditLogEntry] = []
        self.mirror_to_supabase = mirror_to_supabase
        self._lock = threading.Lock()

    def record(
        self,
        action: str,
        actor_id: str,
        actor_role: str,
        target_id: str,
        target_type: str,
        details: Dict[str, Any],
        severity: str = "info",
    ) -> str:
        """
        Create audit log entry

        Args:
            action: What happened (e.g. ORDER_STATUS_CHANGED)
            actor_id: Who did it
            actor_role: system, vendor, buyer or admin
            target_id: Affected resource id
            target_type: order, order_item, orders...
            details: Structured context
            severity: info, warning or critical

        Returns:
            Log entry ID
        """
        entry = AuditLogEntry(
            log_id=f"AUDIT_{uuid.uuid4().hex[:12]}",
            timestamp=datetime.now(timezone.utc).isoformat(),
            action=action,
            actor_id=actor_id,
            actor_role=actor_role,
            target_id=target_id,
            target_type=target_type,
            details=details,
            severity=severity,
        )

        with self._lock:
            self.audit_logs.append(entry)

        log_level = logging.WARNING if severity in ("warning", "critical") else logging.INFO
        logger.log(log_level, f"AUDIT: [{action}] {target_type}/{target_id} by {actor_role}:{actor_id}")

        if self.mirror_to_supabase and supabase_client.is_write_enabled():
            try:
                supabase_client.upsert("audit_logs", entry.to_dict(), conflict_column="log_id")
            except requests.exceptions.RequestException as exc:
                logger.warning(f"Failed to mirror audit entry {entry.log_id}: {exc}")

        return entry.log_id

    def query_logs(
        self,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 100
    ) -> list:
        """
        Query audit logs with filters

        Args:
            filters: Any of action, actor_id, actor_role, target_id, severity
            limit: Maximum number of results

        Returns:
            Matching entries as dictionaries, most recent last
        """
        with self._lock:
            results = list(self.audit_logs)

        for key, value in (filters or {}).items():
            results = [log for log in results if getattr(log, key, None) == value]

        return [log.to_dict() for log in results[-limit:]]


audit_logger = AuditLogger()
