"""
Bookable entity models.

A single table holds orders, rental bookings and event bookings; ``kind``
selects the lifecycle definition that governs ``status``. Status history is
append-only and ordered by a per-entity sequence number.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderflow.models.base.base_model import BaseModel, TimestampModel, utcnow
from orderflow.models.base.enums import PaymentStatus


class BookableEntity(TimestampModel):
    """
    Order, rental booking or event booking.

    Attributes:
        kind: Entity kind (order/rental/event)
        owner_id: Customer who owns the entity (immutable)
        status: Current lifecycle status for the kind
        payment_status: Money movement status
        authorization_id: Gateway authorization handle (void/capture)
        transaction_id: Gateway charge/capture handle (refund)
        amount_due: Amount to collect, minor units
        amount_paid: Amount collected, minor units
        processing_error: Set when a side effect failed
        needs_manual_review: Operator escalation flag
        version: Optimistic concurrency counter
    """

    __tablename__ = "bookable_entities"

    kind: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(40), nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=PaymentStatus.PENDING.value,
    )

    authorization_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    refund_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    amount_due: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    amount_paid: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    refunded_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    processing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payment_error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    needs_manual_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    history: Mapped[List["StatusHistoryEntry"]] = relationship(
        "StatusHistoryEntry",
        back_populates="entity",
        order_by="StatusHistoryEntry.sequence",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_bookable_entities_review", "needs_manual_review", "kind"),
    )


class StatusHistoryEntry(BaseModel):
    """
    One applied transition. Rows are only ever inserted.
    """

    __tablename__ = "status_history_entries"

    entity_id: Mapped[str] = mapped_column(
        ForeignKey("bookable_entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    to_status: Mapped[str] = mapped_column(String(40), nullable=False)
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    entity: Mapped["BookableEntity"] = relationship("BookableEntity", back_populates="history")

    __table_args__ = (
        UniqueConstraint("entity_id", "sequence", name="uq_status_history_entity_sequence"),
    )
