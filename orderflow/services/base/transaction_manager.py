"""
Transaction manager utilities for service layer operations.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from orderflow.core.logging import get_logger


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TransactionContext:
    """Context information for a transaction."""

    transaction_id: str = field(default_factory=lambda: str(uuid4()))
    started_at: datetime = field(default_factory=_now)
    committed: bool = False
    rolled_back: bool = False
    completed_at: Optional[datetime] = None
    error: Optional[Exception] = None

    @property
    def duration_ms(self) -> Optional[float]:
        """Get transaction duration in milliseconds."""
        if self.completed_at:
            delta = self.completed_at - self.started_at
            return delta.total_seconds() * 1000
        return None

    @property
    def is_completed(self) -> bool:
        return self.committed or self.rolled_back


class TransactionManager:
    """
    Transaction management for one SQLAlchemy session:
    - commit on success, rollback and re-raise on error
    - timing and logging of each unit of work
    """

    def __init__(self, db_session: Session):
        self.db = db_session
        self._logger = get_logger(self.__class__.__name__)

    @contextmanager
    def start(self) -> Iterator[TransactionContext]:
        """
        Start a new transaction.

        Yields:
            TransactionContext instance

        Example:
            with transaction_manager.start() as ctx:
                # perform operations
                # automatic commit on success, rollback on exception
        """
        ctx = TransactionContext()
        self._logger.debug(
            f"Transaction started: {ctx.transaction_id}",
            extra={"transaction_id": ctx.transaction_id},
        )

        try:
            yield ctx
            if not ctx.is_completed:
                self._commit(ctx)
        except Exception as exc:
            ctx.error = exc
            if not ctx.rolled_back:
                self._rollback(ctx, exc)
            raise
        finally:
            ctx.completed_at = _now()
            self._logger.debug(
                f"Transaction completed: {ctx.transaction_id} "
                f"({'committed' if ctx.committed else 'rolled back'}) "
                f"in {ctx.duration_ms:.2f}ms",
                extra={
                    "transaction_id": ctx.transaction_id,
                    "committed": ctx.committed,
                    "rolled_back": ctx.rolled_back,
                    "duration_ms": ctx.duration_ms,
                },
            )

    def _commit(self, ctx: TransactionContext) -> None:
        try:
            self.db.commit()
            ctx.committed = True
        except SQLAlchemyError as e:
            self._logger.error(
                f"Commit failed for transaction {ctx.transaction_id}",
                exc_info=True,
                extra={"transaction_id": ctx.transaction_id, "exception_type": type(e).__name__},
            )
            self._rollback(ctx, e)
            raise

    def _rollback(self, ctx: TransactionContext, exc: Exception) -> None:
        try:
            self.db.rollback()
            ctx.rolled_back = True
            self._logger.debug(
                f"Transaction rolled back: {ctx.transaction_id}",
                extra={"transaction_id": ctx.transaction_id, "reason": type(exc).__name__},
            )
        except Exception as e:
            # rollback errors must not mask the original error
            self._logger.warning(f"Rollback failed: {type(e).__name__}")
