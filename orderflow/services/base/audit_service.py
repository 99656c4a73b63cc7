"""
Audit logging service.
"""

from typing import Any, Dict, Optional

from orderflow.services.base.base_service import BaseService
from orderflow.services.base.capabilities import AuditLogPort
from orderflow.services.base.notification_dispatcher import BackgroundDispatcher


class AuditService(BaseService):
    """
    Convenience wrapper around the audit log capability. Records are written
    in the background and never block the main flow.
    """

    def __init__(self, audit_log: AuditLogPort, dispatcher: BackgroundDispatcher):
        super().__init__()
        self.audit_log = audit_log
        self.dispatcher = dispatcher

    def log_action(
        self,
        actor_id: str,
        action: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        status: str = "success",
    ) -> None:
        details = {
            "entity_type": entity_type,
            "entity_id": entity_id,
            "status": status,
            **(context or {}),
        }
        self.dispatcher.submit(f"audit:{action}", self.audit_log.record, actor_id, action, details)
