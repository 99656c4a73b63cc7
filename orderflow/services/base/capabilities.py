"""
Capability interfaces consumed by the lifecycle core.

Each capability is owned by an external collaborator. The executor only
depends on these protocols, so fakes can be swapped in without changes.
"""

from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from orderflow.schemas.transition import EntitySnapshot


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of a single gateway call."""

    success: bool
    reference_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    amount: Optional[int] = None

    @classmethod
    def ok(cls, reference_id: Optional[str] = None, amount: Optional[int] = None) -> "PaymentResult":
        return cls(success=True, reference_id=reference_id, amount=amount)

    @classmethod
    def failed(cls, error_code: str, error_message: str) -> "PaymentResult":
        return cls(success=False, error_code=error_code, error_message=error_message)


@runtime_checkable
class PaymentPort(Protocol):
    """Payment gateway. Every call is single-shot from the core's perspective."""

    def authorize(self, payment_method_id: str, amount: int, currency: str, idempotency_key: str) -> PaymentResult: ...

    def capture(self, authorization_id: str, amount: int, idempotency_key: str) -> PaymentResult: ...

    def void(self, authorization_id: str, idempotency_key: str) -> PaymentResult: ...

    def refund(self, transaction_id: str, amount: int, idempotency_key: str) -> PaymentResult: ...

    def charge(self, payment_method_id: str, amount: int, currency: str, idempotency_key: str) -> PaymentResult: ...


@runtime_checkable
class PermissionPort(Protocol):
    def check(self, actor_id: str, actor_role: str, capability: str, context: Dict[str, Any]) -> bool: ...


@runtime_checkable
class NotificationPort(Protocol):
    def notify(self, target: str, template_key: str, params: Dict[str, Any]) -> None: ...


@runtime_checkable
class AuditLogPort(Protocol):
    def record(self, actor_id: str, action: str, details: Dict[str, Any]) -> None: ...


class EntityTransactionPort(Protocol):
    """Handle yielded by ``StoragePort.transaction`` for one atomic unit."""

    entity: EntitySnapshot

    def apply(self, patch: Dict[str, Any], history_entry: Optional[Dict[str, Any]] = None) -> EntitySnapshot: ...


@runtime_checkable
class StoragePort(Protocol):
    """
    Backing store for bookable entities.

    ``transaction`` must read the entity fresh inside the atomic unit and
    ``apply`` must be a conditional write on the version read there.
    """

    def get(self, kind: str, entity_id: str) -> Optional[EntitySnapshot]: ...

    def transaction(self, kind: str, entity_id: str) -> AbstractContextManager: ...

    def list_flagged(self, kind: Optional[str] = None, limit: int = 100) -> List[EntitySnapshot]: ...


__all__ = [
    "PaymentResult",
    "PaymentPort",
    "PermissionPort",
    "NotificationPort",
    "AuditLogPort",
    "EntityTransactionPort",
    "StoragePort",
]
