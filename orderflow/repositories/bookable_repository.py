"""
Repository for bookable entities and their status history.

All writes go through ``transaction``: the entity is read inside the atomic
unit and ``apply`` performs a version-conditional UPDATE, so a concurrent
writer that committed in between turns into a ``ConcurrencyConflictError``
instead of a lost update.
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from orderflow.core.exceptions import (
    ConcurrencyConflictError,
    EntityNotFoundError,
    ValidationError,
)
from orderflow.core.logging import get_logger
from orderflow.models.base.base_model import utcnow
from orderflow.models.base.enums import EntityKind, PaymentStatus, status_values
from orderflow.models.bookable import BookableEntity, StatusHistoryEntry
from orderflow.schemas.transition import EntitySnapshot
from orderflow.services.base.transaction_manager import TransactionManager
from orderflow.services.lifecycle.state_machine import get_definition

logger = get_logger(__name__)

MUTABLE_FIELDS = frozenset(
    {
        "status",
        "payment_status",
        "authorization_id",
        "transaction_id",
        "refund_id",
        "amount_paid",
        "refunded_amount",
        "processing_error",
        "payment_error_code",
        "payment_error_message",
        "needs_manual_review",
    }
)

HISTORY_FIELDS = frozenset(
    {"from_status", "to_status", "action", "timestamp", "actor_id", "actor_role", "reason"}
)

_LOCK_ERROR_MARKERS = ("database is locked", "could not serialize", "deadlock detected")


def _to_snapshot(row: BookableEntity) -> EntitySnapshot:
    return EntitySnapshot.model_validate(row)


class EntityTransaction:
    """
    One atomic read-modify-write on a single entity.

    ``entity`` is the state read inside the transaction. ``apply`` may be
    called at most once.
    """

    def __init__(self, session: Session, row: BookableEntity):
        self._session = session
        self._row = row
        self.entity: EntitySnapshot = _to_snapshot(row)
        self.applied = False

    def apply(
        self,
        patch: Dict[str, Any],
        history_entry: Optional[Dict[str, Any]] = None,
    ) -> EntitySnapshot:
        if self.applied:
            raise RuntimeError("EntityTransaction.apply may only be called once")

        unknown = set(patch) - MUTABLE_FIELDS
        if unknown:
            raise ValidationError(
                "Patch touches immutable or unknown fields",
                field_errors={name: ["not writable"] for name in sorted(unknown)},
            )

        current = self.entity
        new_status = patch.get("status", current.status)
        if new_status not in status_values(current.kind):
            raise ValidationError(
                f"'{new_status}' is not a valid {current.kind.value} status",
                field_errors={"status": ["invalid for kind"]},
            )

        needs_review = patch.get("needs_manual_review", current.needs_manual_review)
        processing_error = patch.get("processing_error", current.processing_error)
        if needs_review and not processing_error:
            raise ValidationError(
                "An entity flagged for manual review must carry a processing error",
                field_errors={"processing_error": ["required when needs_manual_review is set"]},
            )

        expected_version = current.version
        values = dict(patch)
        values["version"] = expected_version + 1
        values["updated_at"] = utcnow()

        result = self._session.execute(
            update(BookableEntity)
            .where(
                BookableEntity.id == current.id,
                BookableEntity.version == expected_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflictError(current.id, expected_version)

        if history_entry is not None:
            unknown_history = set(history_entry) - HISTORY_FIELDS
            if unknown_history:
                raise ValidationError(
                    "History entry has unknown fields",
                    field_errors={name: ["unknown"] for name in sorted(unknown_history)},
                )
            self._session.add(
                StatusHistoryEntry(
                    entity_id=current.id,
                    sequence=len(current.history) + 1,
                    **history_entry,
                )
            )

        self._session.flush()
        self._session.expire(self._row)
        self.entity = _to_snapshot(self._row)
        self.applied = True

        logger.debug(
            "Entity updated",
            extra={
                "entity_id": current.id,
                "kind": current.kind.value,
                "from_version": expected_version,
                "to_version": self.entity.version,
                "status": self.entity.status,
                "payment_status": self.entity.payment_status,
            },
        )
        return self.entity


class BookableRepository:
    """
    SQLAlchemy implementation of the storage capability.

    Every public method opens its own session so no entity state is cached
    between calls.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, kind: str, entity_id: str) -> Optional[EntitySnapshot]:
        with self.session_factory() as session:
            row = session.execute(
                select(BookableEntity).where(
                    BookableEntity.id == entity_id,
                    BookableEntity.kind == EntityKind(kind).value,
                )
            ).scalar_one_or_none()
            if row is None:
                return None
            snapshot = _to_snapshot(row)
            session.commit()
            return snapshot

    def list_flagged(self, kind: Optional[str] = None, limit: int = 100) -> List[EntitySnapshot]:
        """Entities awaiting operator review, oldest update first."""
        query = select(BookableEntity).where(BookableEntity.needs_manual_review.is_(True))
        if kind is not None:
            query = query.where(BookableEntity.kind == EntityKind(kind).value)
        query = query.order_by(BookableEntity.updated_at).limit(limit)

        with self.session_factory() as session:
            rows = session.execute(query).scalars().all()
            snapshots = [_to_snapshot(row) for row in rows]
            session.commit()
            return snapshots

    def history_length(self, entity_id: str) -> int:
        with self.session_factory() as session:
            count = session.execute(
                select(func.count()).select_from(StatusHistoryEntry).where(
                    StatusHistoryEntry.entity_id == entity_id
                )
            ).scalar_one()
            session.commit()
            return count

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def create(
        self,
        kind: str,
        owner_id: str,
        *,
        status: Optional[str] = None,
        payment_status: str = PaymentStatus.PENDING.value,
        amount_due: int = 0,
        amount_paid: int = 0,
        authorization_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        currency_code: str = "USD",
        entity_id: Optional[str] = None,
    ) -> EntitySnapshot:
        """
        Seed an entity in its initial status.

        Creation flows live outside this service; this exists for sandbox
        wiring and tests.
        """
        definition = get_definition(kind)
        status = status or definition.initial_status
        if status not in definition.statuses:
            raise ValidationError(
                f"'{status}' is not a valid {definition.kind.value} status",
                field_errors={"status": ["invalid for kind"]},
            )
        if amount_due < 0 or amount_paid < 0:
            raise ValidationError(
                "Amounts must be non-negative minor units",
                field_errors={"amount": ["negative"]},
            )
        PaymentStatus(payment_status)

        row = BookableEntity(
            kind=definition.kind.value,
            owner_id=owner_id,
            status=status,
            payment_status=payment_status,
            amount_due=amount_due,
            amount_paid=amount_paid,
            authorization_id=authorization_id,
            transaction_id=transaction_id,
            currency_code=currency_code,
        )
        if entity_id is not None:
            row.id = entity_id

        with self.session_factory() as session:
            with TransactionManager(session).start():
                session.add(row)
                session.flush()
                snapshot = _to_snapshot(row)

        logger.info(
            "Entity created",
            extra={"entity_id": snapshot.id, "kind": snapshot.kind.value, "status": snapshot.status},
        )
        return snapshot

    @contextmanager
    def transaction(self, kind: str, entity_id: str) -> Iterator[EntityTransaction]:
        """
        Open an atomic unit on one entity.

        Commits when the block exits normally, rolls back otherwise. Lock
        timeouts, serialization failures and history sequence collisions
        surface as ``ConcurrencyConflictError``.
        """
        session = self.session_factory()
        try:
            with TransactionManager(session).start():
                row = session.execute(
                    select(BookableEntity)
                    .where(
                        BookableEntity.id == entity_id,
                        BookableEntity.kind == EntityKind(kind).value,
                    )
                    .with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    raise EntityNotFoundError(EntityKind(kind).value, entity_id)
                yield EntityTransaction(session, row)
        except IntegrityError as exc:
            raise ConcurrencyConflictError(
                entity_id, message="Status history was appended concurrently"
            ) from exc
        except OperationalError as exc:
            if any(marker in str(exc.orig).lower() for marker in _LOCK_ERROR_MARKERS):
                raise ConcurrencyConflictError(
                    entity_id, message="Entity is locked by a concurrent transition"
                ) from exc
            raise
        finally:
            session.close()
