"""
Audit sink.

Every administrative and reviewer operation leaves an ``audit_logs``
document. Recording is fire-and-forget: a failing write is logged and
never aborts the operation that triggered it.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .persistence import AUDIT_LOGS, DocumentStore


class AuditAction:
    """Audit action names."""
    IMPORT_ACCOUNTS = "IMPORT_ACCOUNTS"
    IMPORT_IDENTITIES = "IMPORT_IDENTITIES"
    IMPORT_APPLICATIONS = "IMPORT_APPLICATIONS"
    IMPORT_ENTITLEMENTS = "IMPORT_ENTITLEMENTS"
    IMPORT_SOD_POLICIES = "IMPORT_SOD_POLICIES"
    LAUNCH_REVIEW = "LAUNCH_REVIEW"
    REVIEW_ACTION = "REVIEW_ACTION"
    REMEDIATE = "REMEDIATE"
    REASSIGN = "REASSIGN"
    RECOVER_REASSIGNMENTS = "RECOVER_REASSIGNMENTS"
    CONFIRM_REVIEW = "CONFIRM_REVIEW"
    ARCHIVE_REVIEW = "ARCHIVE_REVIEW"


class AuditSink:
    """Writes audit events to the document store."""

    def __init__(
        self,
        store: DocumentStore,
        default_actor_id: str = "SYSTEM",
        default_actor_name: Optional[str] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.default_actor_id = default_actor_id
        self.default_actor_name = default_actor_name
        self.metrics = metrics
        self.logger = get_logger("access_review.audit")

    async def record(
        self,
        actor_id: Optional[str],
        action: str,
        details: Optional[Dict[str, Any]] = None,
        actor_name: Optional[str] = None,
    ) -> Optional[str]:
        """Record one event; returns the audit id, or ``None`` if the write failed."""
        actor_id = actor_id or self.default_actor_id
        audit_id = str(uuid.uuid4())
        body = {
            "id": audit_id,
            "actor_id": actor_id,
            "actor_name": actor_name or (self.default_actor_name if actor_id == self.default_actor_id else None),
            "action": action,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "details": details or {},
        }
        try:
            await self.store.create(AUDIT_LOGS, actor_id, audit_id, body)
        except Exception as e:
            self.logger.warning("Audit write failed", action=action, actor_id=actor_id, error=str(e))
            if self.metrics:
                self.metrics.record_error("AUDIT_WRITE_FAILED")
            return None

        if self.metrics:
            self.metrics.record_business_event(action.lower())
        return audit_id
