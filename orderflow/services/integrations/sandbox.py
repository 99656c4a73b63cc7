"""
Sandbox collaborators used when no real gateway or delivery channel is wired.

They satisfy the capability protocols and make every call visible in the
logs, which is what local development and the demo API need.
"""

import threading
from typing import Any, Dict, Iterable, Optional
from uuid import uuid4

from orderflow.core.exceptions import PaymentGatewayError
from orderflow.core.logging import get_logger, get_structured_logger
from orderflow.services.base.capabilities import PaymentResult

logger = get_logger(__name__)


class SandboxPaymentGateway:
    """
    In-memory payment gateway.

    Calls succeed unless the operation is listed in ``failing_operations``
    (declined) or ``unreachable_operations`` (transport failure, raised).
    Results are remembered per idempotency key, so a repeated call returns
    the first answer instead of moving money twice.
    """

    def __init__(
        self,
        failing_operations: Optional[Iterable[str]] = None,
        unreachable_operations: Optional[Iterable[str]] = None,
    ):
        self.failing_operations = set(failing_operations or ())
        self.unreachable_operations = set(unreachable_operations or ())
        self._results: Dict[str, PaymentResult] = {}
        self._lock = threading.Lock()

    def _execute(self, operation: str, idempotency_key: str, amount: Optional[int], **context) -> PaymentResult:
        if operation in self.unreachable_operations:
            raise PaymentGatewayError(
                f"Sandbox gateway unreachable for {operation}",
                details={"operation": operation, "idempotency_key": idempotency_key},
            )

        with self._lock:
            cached = self._results.get(idempotency_key)
            if cached is not None:
                logger.info(
                    "Sandbox gateway replayed idempotent call",
                    extra={"operation": operation, "idempotency_key": idempotency_key},
                )
                return cached

            if operation in self.failing_operations:
                result = PaymentResult.failed("sandbox_declined", f"Sandbox configured to fail {operation}")
            else:
                result = PaymentResult.ok(reference_id=f"{operation}_{uuid4().hex[:12]}", amount=amount)
            self._results[idempotency_key] = result

        logger.info(
            f"Sandbox gateway {operation}",
            extra={
                "operation": operation,
                "idempotency_key": idempotency_key,
                "success": result.success,
                "amount": amount,
                **context,
            },
        )
        return result

    def authorize(self, payment_method_id: str, amount: int, currency: str, idempotency_key: str) -> PaymentResult:
        return self._execute("authorize", idempotency_key, amount, currency=currency)

    def capture(self, authorization_id: str, amount: int, idempotency_key: str) -> PaymentResult:
        return self._execute("capture", idempotency_key, amount, authorization_id=authorization_id)

    def void(self, authorization_id: str, idempotency_key: str) -> PaymentResult:
        return self._execute("void", idempotency_key, None, authorization_id=authorization_id)

    def refund(self, transaction_id: str, amount: int, idempotency_key: str) -> PaymentResult:
        return self._execute("refund", idempotency_key, amount, transaction_id=transaction_id)

    def charge(self, payment_method_id: str, amount: int, currency: str, idempotency_key: str) -> PaymentResult:
        return self._execute("charge", idempotency_key, amount, currency=currency)


class LoggingNotificationChannel:
    """Notification channel that only writes structured log events."""

    def __init__(self):
        self._log = get_structured_logger("orderflow.notifications")

    def notify(self, target: str, template_key: str, params: Dict[str, Any]) -> None:
        self._log.info("notification_sent", target=target, template_key=template_key, params=params)


class LoggingAuditLog:
    """Audit log that writes structured log events."""

    def __init__(self):
        self._log = get_structured_logger("orderflow.audit")

    def record(self, actor_id: str, action: str, details: Dict[str, Any]) -> None:
        self._log.info("audit_record", actor_id=actor_id, audit_action=action, details=details)
