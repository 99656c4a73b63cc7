"""
Shared fixtures: an isolated SQLite store per test and recording fakes for
every external capability.
"""

import threading
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from orderflow.core.config import DatabaseSettings
from orderflow.core.database import create_db_engine, create_session_factory, init_db
from orderflow.services.base.capabilities import PaymentResult
from orderflow.services.lifecycle.factory import build_lifecycle
from orderflow.services.lifecycle.transition_executor import ExecutorConfig, utc_clock


class FakePaymentGateway:
    """
    Gateway double.

    Results are queued per operation (default: success). A queued exception
    is raised instead of returned. A hook registered with ``on`` runs once,
    inside the gateway call, before the result is produced.
    """

    def __init__(self):
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.delay = 0.0
        self._results: Dict[str, list] = defaultdict(list)
        self._hooks: Dict[str, Callable[[], None]] = {}
        self._lock = threading.Lock()

    def queue(self, operation: str, *results) -> None:
        self._results[operation].extend(results)

    def on(self, operation: str, hook: Callable[[], None]) -> None:
        self._hooks[operation] = hook

    def calls_for(self, operation: str) -> List[Dict[str, Any]]:
        return [kwargs for op, kwargs in self.calls if op == operation]

    def _call(self, operation: str, **kwargs) -> PaymentResult:
        with self._lock:
            self.calls.append((operation, kwargs))
            queued = self._results[operation].pop(0) if self._results[operation] else None
            hook = self._hooks.pop(operation, None)
            call_number = len(self.calls)

        if hook is not None:
            hook()
        if self.delay:
            time.sleep(self.delay)
        if isinstance(queued, Exception):
            raise queued
        return queued or PaymentResult.ok(reference_id=f"{operation}_{call_number}", amount=kwargs.get("amount"))

    def authorize(self, payment_method_id, amount, currency, idempotency_key):
        return self._call("authorize", payment_method_id=payment_method_id, amount=amount,
                          currency=currency, idempotency_key=idempotency_key)

    def capture(self, authorization_id, amount, idempotency_key):
        return self._call("capture", authorization_id=authorization_id, amount=amount,
                          idempotency_key=idempotency_key)

    def void(self, authorization_id, idempotency_key):
        return self._call("void", authorization_id=authorization_id, idempotency_key=idempotency_key)

    def refund(self, transaction_id, amount, idempotency_key):
        return self._call("refund", transaction_id=transaction_id, amount=amount,
                          idempotency_key=idempotency_key)

    def charge(self, payment_method_id, amount, currency, idempotency_key):
        return self._call("charge", payment_method_id=payment_method_id, amount=amount,
                          currency=currency, idempotency_key=idempotency_key)


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []
        self.fail = fail
        self._lock = threading.Lock()

    def notify(self, target, template_key, params):
        if self.fail:
            raise RuntimeError("notification channel unavailable")
        with self._lock:
            self.sent.append((target, template_key, params))

    def to(self, target: str) -> List[Tuple[str, Dict[str, Any]]]:
        return [(template, params) for sent_to, template, params in self.sent if sent_to == target]


class RecordingAuditLog:
    def __init__(self):
        self.records: List[Tuple[str, str, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def record(self, actor_id, action, details):
        with self._lock:
            self.records.append((actor_id, action, details))


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(DatabaseSettings(DATABASE_URL=f"sqlite:///{tmp_path / 'orderflow.db'}"))
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)


@pytest.fixture
def audit_log():
    return RecordingAuditLog()


@pytest.fixture
def make_container(session_factory, gateway, notifier, audit_log):
    containers = []

    def _make(clock: Callable = utc_clock, notification_channel: Optional[Any] = None, **overrides):
        options = {"payment_call_timeout_seconds": 2.0, "payment_max_workers": 4}
        options.update(overrides)
        container = build_lifecycle(
            session_factory,
            ExecutorConfig(**options),
            gateway=gateway,
            notification_channel=notification_channel or notifier,
            audit_log=audit_log,
            clock=clock,
        )
        containers.append(container)
        return container

    yield _make
    for container in containers:
        container.close()


@pytest.fixture
def container(make_container):
    return make_container()


@pytest.fixture
def executor(container):
    return container.executor


@pytest.fixture
def repository(container):
    return container.repository


@pytest.fixture
def seed(repository):
    """Create an entity; orders default to Confirmed. Owner is cust_1."""

    def _seed(kind: str = "order", owner_id: str = "cust_1", **fields):
        if kind == "order":
            fields.setdefault("status", "Confirmed")
        return repository.create(kind, owner_id, **fields)

    return _seed
