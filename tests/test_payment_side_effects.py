import threading
from datetime import datetime, timezone

import pytest

from orderflow.models.base.enums import EntityKind, LifecycleAction
from orderflow.schemas.transition import EntitySnapshot, PaymentOutcome, SideEffectKind
from orderflow.services.base.capabilities import PaymentResult
from orderflow.services.lifecycle.payment_side_effects import (
    GATEWAY_BUSY,
    GATEWAY_TIMEOUT,
    MISSING_PAYMENT_METHOD,
    PaymentSideEffects,
)
from orderflow.services.lifecycle.state_machine import get_definition

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def order(**fields):
    values = dict(
        id="o1",
        kind=EntityKind.ORDER,
        owner_id="cust_1",
        status="Confirmed",
        payment_status="Pending",
        version=1,
        created_at=NOW,
        updated_at=NOW,
    )
    values.update(fields)
    return EntitySnapshot(**values)


def rule(kind, action, status):
    definition = get_definition(kind)
    return next(r for r in definition.rules_for(action) if status in r.from_statuses)


CANCEL = rule("order", LifecycleAction.CANCEL, "Confirmed")
DELIVER = rule("order", LifecycleAction.DELIVER, "OutForDelivery")
EVENT_CONFIRM = rule("event", LifecycleAction.CONFIRM, "PendingCustomerConfirmation")


@pytest.fixture
def side_effects(gateway):
    effects = PaymentSideEffects(gateway, call_timeout_seconds=1.0, max_workers=2)
    yield effects
    effects.shutdown()


class TestPlanning:

    def test_release_of_authorization_is_a_void(self, side_effects):
        plan = side_effects.plan(order(payment_status="Authorized", authorization_id="auth_1"), CANCEL)

        assert plan.kind is SideEffectKind.VOID
        assert plan.reference == "auth_1"
        assert plan.missing_reference_code is None

    def test_release_of_payment_is_a_refund_of_amount_paid(self, side_effects):
        plan = side_effects.plan(
            order(payment_status="Captured", transaction_id="txn_1", amount_due=900, amount_paid=700), CANCEL
        )

        assert plan.kind is SideEffectKind.REFUND
        assert plan.amount == 700

    def test_release_after_failed_capture_voids_the_hold(self, side_effects):
        plan = side_effects.plan(order(payment_status="CaptureFailed", authorization_id="auth_1"), CANCEL)

        assert plan.kind is SideEffectKind.VOID
        assert plan.reference == "auth_1"

    def test_release_of_partial_refund_returns_the_remainder(self, side_effects):
        plan = side_effects.plan(
            order(payment_status="PartiallyRefunded", transaction_id="txn_1", amount_paid=900, refunded_amount=400),
            CANCEL,
        )

        assert plan.kind is SideEffectKind.REFUND
        assert plan.amount == 500

    @pytest.mark.parametrize("payment_status", ["Pending", "AuthorizationPending"])
    def test_release_before_any_hold_settles_as_cancelled(self, side_effects, payment_status):
        plan = side_effects.plan(order(payment_status=payment_status), CANCEL)

        assert not plan.requires_call
        assert plan.settled_status.value == "Cancelled"

    @pytest.mark.parametrize("payment_status", ["Voided", "Refunded", "VoidFailed", "RefundFailed", "Failed"])
    def test_release_of_settled_payment_does_nothing(self, side_effects, payment_status):
        plan = side_effects.plan(order(payment_status=payment_status), CANCEL)

        assert not plan.requires_call
        assert plan.settled_status is None

    def test_capture_of_zero_amount_settles_as_paid(self, side_effects):
        plan = side_effects.plan(
            order(status="OutForDelivery", payment_status="Authorized", authorization_id="a", amount_due=0), DELIVER
        )

        assert not plan.requires_call
        assert plan.settled_status.value == "Paid"

    def test_charge_needs_a_payment_method(self, side_effects):
        event = order(kind=EntityKind.EVENT, status="PendingCustomerConfirmation", amount_due=100)

        assert side_effects.plan(event, EVENT_CONFIRM).missing_reference_code == MISSING_PAYMENT_METHOD
        assert side_effects.plan(event, EVENT_CONFIRM, {"payment_method_id": "pm_1"}).reference == "pm_1"


class TestRunning:

    def test_no_call_plan_produces_settled_patch(self, side_effects, gateway):
        entity = order(payment_status="Pending")

        result = side_effects.run(entity, side_effects.plan(entity, CANCEL), "k1")

        assert result.outcome is PaymentOutcome.NOT_REQUIRED
        assert result.patch == {"payment_status": "Cancelled"}
        assert gateway.calls == []

    def test_timeout(self, gateway):
        effects = PaymentSideEffects(gateway, call_timeout_seconds=0.05, max_workers=1)
        gateway.delay = 0.3
        entity = order(payment_status="Authorized", authorization_id="auth_1")
        try:
            result = effects.run(entity, effects.plan(entity, CANCEL), "k1")
        finally:
            effects.shutdown()

        assert result.failed
        assert result.attempted
        assert result.error_code == GATEWAY_TIMEOUT
        assert result.patch["payment_status"] == "VoidFailed"
        assert "gateway_timeout" in result.describe()

    def test_call_waiting_for_a_worker_is_cancelled(self, gateway):
        effects = PaymentSideEffects(gateway, call_timeout_seconds=0.2, max_workers=1)
        started = threading.Event()
        gateway.on("void", started.set)
        gateway.delay = 0.6
        busy = order(id="o1", payment_status="Authorized", authorization_id="auth_a")
        queued = order(id="o2", payment_status="Authorized", authorization_id="auth_b")
        try:
            worker = threading.Thread(target=effects.run, args=(busy, effects.plan(busy, CANCEL), "k1"))
            worker.start()
            assert started.wait(timeout=5)
            result = effects.run(queued, effects.plan(queued, CANCEL), "k2")
            worker.join(timeout=5)
        finally:
            effects.shutdown()

        assert result.failed
        assert not result.attempted
        assert result.error_code == GATEWAY_BUSY
        assert result.patch["payment_status"] == "VoidFailed"
        assert [call["authorization_id"] for call in gateway.calls_for("void")] == ["auth_a"]

    def test_failure_keeps_gateway_code(self, side_effects, gateway):
        gateway.queue("void", PaymentResult.failed("expired_authorization", "Authorization expired"))
        entity = order(payment_status="Authorized", authorization_id="auth_1")

        result = side_effects.run(entity, side_effects.plan(entity, CANCEL), "k1")

        assert result.patch == {
            "payment_status": "VoidFailed",
            "payment_error_code": "expired_authorization",
            "payment_error_message": "Authorization expired",
        }
        assert result.payment_reference == "auth_1"

    def test_refund_adds_to_refunded_amount(self, side_effects, gateway):
        gateway.queue("refund", PaymentResult.ok(reference_id="re_1", amount=300))
        entity = order(payment_status="Paid", transaction_id="txn_1", amount_paid=300, refunded_amount=0)

        result = side_effects.run(entity, side_effects.plan(entity, CANCEL), "k1")

        assert result.outcome is PaymentOutcome.SUCCEEDED
        assert result.patch["refund_id"] == "re_1"
        assert result.patch["refunded_amount"] == 300
        assert gateway.calls_for("refund")[0]["idempotency_key"] == "k1"
