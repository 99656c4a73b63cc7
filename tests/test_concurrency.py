"""
Races between transitions on the same entity.
"""
import threading
from concurrent.futures import ThreadPoolExecutor

from orderflow.models.base.enums import ActorRole
from orderflow.schemas.transition import Actor
from orderflow.services.base.service_result import ErrorCode

OWNER = Actor(actor_id="cust_1", role=ActorRole.CUSTOMER)
ADMIN = Actor(actor_id="admin_1", role=ActorRole.ADMIN)


class TestConcurrentTransitions:

    def test_cancel_landing_during_the_void_call(self, executor, repository, seed, gateway):
        """A second cancel commits while the first is waiting on the gateway."""
        order = seed(payment_status="Authorized", authorization_id="auth_1")
        ref = {"kind": "order", "entity_id": order.id}
        inner_results = []
        gateway.on("void", lambda: inner_results.append(executor.execute(ref, "cancel", ADMIN)))

        outer = executor.execute(ref, "cancel", OWNER)

        inner = inner_results[0]
        assert inner.is_success and not inner.data.is_idempotent_noop
        assert outer.is_success and outer.data.is_idempotent_noop
        stored = repository.get("order", order.id)
        assert stored.status == "Cancelled"
        assert stored.payment_status == "Voided"
        assert len(stored.history) == 1

    def test_simultaneous_cancellations_apply_once(self, executor, repository, seed):
        order = seed(payment_status="Authorized", authorization_id="auth_1")
        ref = {"kind": "order", "entity_id": order.id}
        barrier = threading.Barrier(2)

        def cancel():
            barrier.wait(timeout=5)
            return executor.execute(ref, "cancel", OWNER)

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = [future.result(timeout=30) for future in [pool.submit(cancel), pool.submit(cancel)]]

        applied = [r for r in results if r.is_success and not r.data.is_idempotent_noop]
        others = [r for r in results if not (r.is_success and not r.data.is_idempotent_noop)]
        assert len(applied) == 1
        assert len(others) == 1
        other = others[0]
        assert (other.is_success and other.data.is_idempotent_noop) or other.error.code == ErrorCode.CONFLICT
        assert len(repository.get("order", order.id).history) == 1

    def test_status_change_during_void_aborts_and_alerts(self, executor, container, repository, seed, gateway, notifier):
        order = seed(payment_status="Authorized", authorization_id="auth_1")
        ref = {"kind": "order", "entity_id": order.id}

        def kitchen_starts():
            with repository.transaction("order", order.id) as txn:
                txn.apply({"status": "Preparing"})

        gateway.on("void", kitchen_starts)

        result = executor.execute(ref, "cancel", OWNER)

        assert result.error.code == ErrorCode.CONFLICT
        stored = repository.get("order", order.id)
        assert stored.status == "Preparing"
        assert stored.payment_status == "Authorized"
        assert stored.history == []

        assert container.dispatcher.flush(timeout=5)
        template, params = notifier.to("ops:payments")[0]
        assert template == "payment_unrecorded_side_effect"
        assert params["entity_id"] == order.id
        assert params["side_effect"] == "void"
        assert params["payment_reference"] == "auth_1"

    def test_version_bump_during_void_is_a_conflict(self, executor, repository, seed, gateway):
        order = seed(payment_status="Authorized", authorization_id="auth_1")

        def touch():
            with repository.transaction("order", order.id) as txn:
                txn.apply({"payment_error_code": None})

        gateway.on("void", touch)

        result = executor.execute({"kind": "order", "entity_id": order.id}, "cancel", OWNER)

        assert result.error.code == ErrorCode.CONFLICT
        assert repository.get("order", order.id).status == "Confirmed"
