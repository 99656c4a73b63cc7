from datetime import datetime, timezone

import pytest

from orderflow.core.config import DatabaseSettings, PaymentSettings, Settings
from orderflow.core.exceptions import ConfigurationError, PaymentGatewayError
from orderflow.models.base.enums import EntityKind, LifecycleAction
from orderflow.schemas.transition import EntitySnapshot
from orderflow.services.integrations.sandbox import SandboxPaymentGateway
from orderflow.services.lifecycle.factory import build_default_container
from orderflow.services.lifecycle.payment_side_effects import GATEWAY_ERROR, PaymentSideEffects
from orderflow.services.lifecycle.state_machine import get_definition

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


class TestSandboxPaymentGateway:

    def test_repeated_key_replays_first_result(self):
        gateway = SandboxPaymentGateway()

        first = gateway.void("auth_1", idempotency_key="o1:cancel:1")
        second = gateway.void("auth_1", idempotency_key="o1:cancel:1")

        assert first.success
        assert first == second

    def test_failing_operation_declines(self):
        result = SandboxPaymentGateway(failing_operations=["refund"]).refund("txn_1", 100, idempotency_key="k")

        assert not result.success
        assert result.error_code == "sandbox_declined"

    def test_unreachable_operation_becomes_gateway_error(self):
        gateway = SandboxPaymentGateway(unreachable_operations=["void"])
        with pytest.raises(PaymentGatewayError):
            gateway.void("auth_1", idempotency_key="k")

        effects = PaymentSideEffects(gateway, call_timeout_seconds=1.0, max_workers=1)
        entity = EntitySnapshot(
            id="o1", kind=EntityKind.ORDER, owner_id="cust_1", status="Confirmed",
            payment_status="Authorized", authorization_id="auth_1", version=1,
            created_at=NOW, updated_at=NOW,
        )
        rule = get_definition("order").rules_for(LifecycleAction.CANCEL)[0]
        try:
            result = effects.run(entity, effects.plan(entity, rule), "k2")
        finally:
            effects.shutdown()

        assert result.error_code == GATEWAY_ERROR


class TestDefaultContainer:

    def test_only_sandbox_mode_is_supported(self):
        settings = Settings(payment=PaymentSettings(PAYMENT_GATEWAY_MODE="live"))

        with pytest.raises(ConfigurationError):
            build_default_container(settings)

    def test_sandbox_container_serves_transitions(self, tmp_path):
        settings = Settings(
            database=DatabaseSettings(DATABASE_URL=f"sqlite:///{tmp_path / 'sandbox.db'}"),
            payment=PaymentSettings(SANDBOX_FAILING_OPERATIONS=["void"]),
        )
        container = build_default_container(settings)
        try:
            order = container.repository.create(
                "order", "cust_1", status="Confirmed", payment_status="Authorized", authorization_id="auth_1"
            )
            result = container.executor.execute(
                {"kind": "order", "entity_id": order.id},
                "cancel",
                {"actor_id": "cust_1", "role": "customer"},
            )
        finally:
            container.close()

        assert result.is_success
        assert result.data.payment_status == "VoidFailed"
        assert result.data.needs_manual_review is True
