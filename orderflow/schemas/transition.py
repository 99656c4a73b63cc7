"""
Schemas for transition requests, entity snapshots and transition outcomes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator

from orderflow.models.base.enums import ActorRole, EntityKind, LifecycleAction
from orderflow.schemas.common.base import BaseSchema, BaseSnapshotSchema, TimestampMixin

__all__ = [
    "Actor",
    "EntityRef",
    "TransitionRequest",
    "TransitionBody",
    "HistoryEntrySchema",
    "EntitySnapshot",
    "PaymentOutcome",
    "SideEffectKind",
    "TransitionOutcome",
]

MAX_REASON_LENGTH = 500


class PaymentOutcome(str, Enum):
    """Outcome of the financial side effect attached to a transition."""

    NOT_REQUIRED = "not_required"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SideEffectKind(str, Enum):
    """Gateway operation performed by a transition."""

    NONE = "none"
    VOID = "void"
    REFUND = "refund"
    CAPTURE = "capture"
    CHARGE = "charge"


class Actor(BaseSchema):
    """Authenticated caller requesting a transition."""

    actor_id: str = Field(..., min_length=1, max_length=64)
    role: ActorRole


class EntityRef(BaseSchema):
    """Reference to a bookable entity."""

    kind: EntityKind
    entity_id: str = Field(..., min_length=1, max_length=64)


class TransitionRequest(BaseSchema):
    """Validated transition request; built before any read happens."""

    entity_ref: EntityRef
    action: LifecycleAction
    actor: Actor
    reason: Optional[str] = Field(default=None, max_length=MAX_REASON_LENGTH)
    params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("reason")
    @classmethod
    def empty_reason_is_none(cls, v):
        return v or None


class TransitionBody(BaseSchema):
    """HTTP body for a transition request."""

    action: LifecycleAction
    reason: Optional[str] = Field(default=None, max_length=MAX_REASON_LENGTH)
    params: Dict[str, Any] = Field(default_factory=dict)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class HistoryEntrySchema(BaseSnapshotSchema):
    sequence: int
    from_status: Optional[str] = None
    to_status: str
    action: str
    timestamp: datetime
    actor_id: str
    actor_role: str
    reason: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v):
        return _as_utc(v)


class EntitySnapshot(BaseSnapshotSchema, TimestampMixin):
    """
    Point-in-time copy of a bookable entity and its status history.

    Snapshots are never cached across steps; every read returns a new one.
    """

    id: str
    kind: EntityKind
    owner_id: str
    status: str
    payment_status: str
    authorization_id: Optional[str] = None
    transaction_id: Optional[str] = None
    refund_id: Optional[str] = None
    currency_code: str = "USD"
    amount_due: int = 0
    amount_paid: int = 0
    refunded_amount: int = 0
    processing_error: Optional[str] = None
    payment_error_code: Optional[str] = None
    payment_error_message: Optional[str] = None
    needs_manual_review: bool = False
    version: int
    history: List[HistoryEntrySchema] = Field(default_factory=list)

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, v):
        return _as_utc(v)

    def is_owned_by(self, actor_id: str) -> bool:
        return self.owner_id == actor_id

    @property
    def last_transition_at(self) -> Optional[datetime]:
        if not self.history:
            return None
        return self.history[-1].timestamp


class TransitionOutcome(BaseSchema):
    """
    Result payload of an executed (or idempotently skipped) transition.

    Callers must inspect ``payment_outcome`` and ``needs_manual_review``:
    a successful result can still carry a degraded financial outcome.
    """

    entity_id: str
    kind: EntityKind
    action: LifecycleAction
    previous_status: str
    new_status: str
    payment_status: str
    payment_outcome: PaymentOutcome = PaymentOutcome.NOT_REQUIRED
    side_effect: SideEffectKind = SideEffectKind.NONE
    is_idempotent_noop: bool = False
    needs_manual_review: bool = False
    processing_error: Optional[str] = None
    history_length: int = 0
