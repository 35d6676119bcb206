from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from tenantguard.logging import get_logger
from tenantguard.storage.common import RecordStore
from tenantguard.storage.models import AuditEvent

logger = get_logger("audit")

# Events logged at warning level so alerting can key on severity.
SECURITY_EVENTS = frozenset(
    {
        "login_failed",
        "two_factor_failed",
        "security_alert",
        "tenant_isolation_violation",
        "tenant_data_leak",
    }
)


class AuditSink(Protocol):
    def log_event(self, name: str, context: Dict[str, Any]) -> None: ...


class StructlogAuditSink:
    """Writes audit events to the structured log stream only."""

    def __init__(self, log: Optional[Any] = None) -> None:
        self.logger = log or logger

    def log_event(self, name: str, context: Dict[str, Any]) -> None:
        log_fn = self.logger.warning if name in SECURITY_EVENTS else self.logger.info
        log_fn("audit_event", audit_event=name, **context)


class RecordAuditSink(StructlogAuditSink):
    """Persists audit events to the ``audit_logs`` table and logs them."""

    def __init__(self, records: RecordStore, log: Optional[Any] = None) -> None:
        super().__init__(log)
        self.records = records

    def log_event(self, name: str, context: Dict[str, Any]) -> None:
        super().log_event(name, context)
        self.records.table("audit_logs").insert(AuditEvent(name, dict(context)).to_row())
