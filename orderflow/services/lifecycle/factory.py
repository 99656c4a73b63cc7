"""
Wiring for the lifecycle core.

Builds the executor and its collaborators from explicit values; nothing in
the core reads global settings.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from orderflow.core.config import Settings
from orderflow.core.exceptions import ConfigurationError
from orderflow.core.database import create_db_engine, create_session_factory, init_db
from orderflow.core.logging import get_logger
from orderflow.repositories.bookable_repository import BookableRepository
from orderflow.services.base.audit_service import AuditService
from orderflow.services.base.authorization_service import RolePermissionService
from orderflow.services.base.capabilities import (
    AuditLogPort,
    NotificationPort,
    PaymentPort,
    PermissionPort,
)
from orderflow.services.base.notification_dispatcher import BackgroundDispatcher, NotificationDispatcher
from orderflow.services.integrations.sandbox import (
    LoggingAuditLog,
    LoggingNotificationChannel,
    SandboxPaymentGateway,
)
from orderflow.services.lifecycle.compensation_handler import CompensationHandler
from orderflow.services.lifecycle.payment_side_effects import PaymentSideEffects
from orderflow.services.lifecycle.transition_executor import (
    ExecutorConfig,
    TransitionExecutor,
    utc_clock,
)

logger = get_logger(__name__)


@dataclass
class LifecycleContainer:
    """Everything a transport needs to serve transitions."""

    repository: BookableRepository
    executor: TransitionExecutor
    dispatcher: BackgroundDispatcher
    side_effects: PaymentSideEffects
    engine: Optional[Engine] = None

    def close(self) -> None:
        self.dispatcher.flush(timeout=5)
        self.dispatcher.shutdown()
        self.side_effects.shutdown()
        if self.engine is not None:
            self.engine.dispose()


def build_lifecycle(
    session_factory: sessionmaker,
    config: ExecutorConfig,
    gateway: PaymentPort,
    notification_channel: NotificationPort,
    audit_log: AuditLogPort,
    permissions: Optional[PermissionPort] = None,
    clock: Callable[[], datetime] = utc_clock,
    engine: Optional[Engine] = None,
) -> LifecycleContainer:
    repository = BookableRepository(session_factory)
    dispatcher = BackgroundDispatcher(max_workers=config.dispatch_max_workers)
    notifications = NotificationDispatcher(notification_channel, dispatcher)
    side_effects = PaymentSideEffects(
        gateway,
        call_timeout_seconds=config.payment_call_timeout_seconds,
        max_workers=config.payment_max_workers,
        currency=config.currency,
    )
    compensation = CompensationHandler(
        notifications,
        operator_channel=config.operator_channel,
        alert_template=config.alert_template,
        unrecorded_template=config.unrecorded_template,
    )
    executor = TransitionExecutor(
        storage=repository,
        permissions=permissions or RolePermissionService(config.role_grants),
        side_effects=side_effects,
        compensation=compensation,
        notifications=notifications,
        audit=AuditService(audit_log, dispatcher),
        config=config,
        clock=clock,
    )
    return LifecycleContainer(
        repository=repository,
        executor=executor,
        dispatcher=dispatcher,
        side_effects=side_effects,
        engine=engine,
    )


def build_default_container(settings: Settings) -> LifecycleContainer:
    """Sandbox wiring backed by the configured database."""
    if settings.payment.PAYMENT_GATEWAY_MODE != "sandbox":
        raise ConfigurationError(
            "Only the sandbox payment gateway ships with this service",
            details={"gateway_mode": settings.payment.PAYMENT_GATEWAY_MODE},
        )

    engine = create_db_engine(settings.database)
    init_db(engine)
    container = build_lifecycle(
        create_session_factory(engine),
        ExecutorConfig.from_settings(settings),
        gateway=SandboxPaymentGateway(
            failing_operations=settings.payment.SANDBOX_FAILING_OPERATIONS,
            unreachable_operations=settings.payment.SANDBOX_UNREACHABLE_OPERATIONS,
        ),
        notification_channel=LoggingNotificationChannel(),
        audit_log=LoggingAuditLog(),
        engine=engine,
    )
    logger.info(
        "Lifecycle container ready",
        extra={"gateway_mode": settings.payment.PAYMENT_GATEWAY_MODE, "dialect": engine.dialect.name},
    )
    return container
