from datetime import datetime, timezone

import pytest

from orderflow.core.exceptions import ConfigurationError, ValidationError
from orderflow.models.base.enums import ActorRole, EntityKind, LifecycleAction, OrderStatus
from orderflow.schemas.transition import Actor, EntitySnapshot
from orderflow.services.lifecycle.state_machine import (
    INVALID_STATUS_REASON,
    LIFECYCLES,
    LifecycleDefinition,
    SideEffectPolicy,
    TransitionRule,
    get_definition,
)

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)
OWNER = Actor(actor_id="cust_1", role=ActorRole.CUSTOMER)
ADMIN = Actor(actor_id="admin_1", role=ActorRole.ADMIN)
SUPER_ADMIN = Actor(actor_id="root", role=ActorRole.SUPER_ADMIN)
STAFF = Actor(actor_id="staff_1", role=ActorRole.STAFF)


def snapshot(kind, status):
    return EntitySnapshot(
        id="e1",
        kind=kind,
        owner_id="cust_1",
        status=status,
        payment_status="Pending",
        version=1,
        created_at=NOW,
        updated_at=NOW,
    )


class TestLifecycleDefinitions:

    @pytest.mark.parametrize("kind", list(EntityKind))
    def test_every_kind_has_a_definition(self, kind):
        definition = get_definition(kind.value)
        assert definition.kind is kind
        assert definition.initial_status in definition.statuses
        assert not definition.is_terminal(definition.initial_status)

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            get_definition("spaceship")

    @pytest.mark.parametrize("definition", list(LIFECYCLES.values()), ids=lambda d: d.kind.value)
    def test_terminal_statuses_have_no_way_out(self, definition):
        for status in definition.terminal_statuses:
            assert definition.allowed_targets(status) == set()

    @pytest.mark.parametrize("definition", list(LIFECYCLES.values()), ids=lambda d: d.kind.value)
    def test_only_ruled_pairs_are_allowed(self, definition):
        for status in definition.statuses:
            for action in LifecycleAction:
                decision = definition.can_transition(snapshot(definition.kind, status), action, ADMIN)
                covered = any(status in rule.from_statuses for rule in definition.rules_for(action))
                if decision.allowed and not decision.is_idempotent_noop:
                    assert covered, f"{definition.kind.value}: {action.value} from {status}"

    def test_cycle_is_rejected(self):
        with pytest.raises(ConfigurationError):
            LifecycleDefinition(
                kind=EntityKind.ORDER,
                status_enum=OrderStatus,
                initial_status="Pending",
                terminal_statuses=frozenset({"Delivered"}),
                rules=[
                    TransitionRule(LifecycleAction.CONFIRM, frozenset({"Pending"}), "Confirmed"),
                    TransitionRule(LifecycleAction.CANCEL, frozenset({"Confirmed"}), "Pending"),
                ],
            )

    def test_rule_leaving_terminal_is_rejected(self):
        with pytest.raises(ConfigurationError):
            LifecycleDefinition(
                kind=EntityKind.ORDER,
                status_enum=OrderStatus,
                initial_status="Pending",
                terminal_statuses=frozenset({"Cancelled"}),
                rules=[TransitionRule(LifecycleAction.CONFIRM, frozenset({"Cancelled"}), "Confirmed")],
            )


class TestCanTransition:

    def test_owner_may_cancel_confirmed_order(self):
        decision = get_definition("order").can_transition(snapshot(EntityKind.ORDER, "Confirmed"), LifecycleAction.CANCEL, OWNER)

        assert decision.allowed
        assert decision.target_status == "Cancelled"
        assert decision.rule.side_effect is SideEffectPolicy.RELEASE

    def test_cancel_of_cancelled_order_is_noop(self):
        decision = get_definition("order").can_transition(snapshot(EntityKind.ORDER, "Cancelled"), LifecycleAction.CANCEL, OWNER)

        assert decision.allowed
        assert decision.is_idempotent_noop

    def test_late_cancel_is_admin_only(self):
        order = snapshot(EntityKind.ORDER, "OutForDelivery")
        definition = get_definition("order")

        assert not definition.can_transition(order, LifecycleAction.CANCEL, OWNER).allowed
        assert definition.can_transition(order, LifecycleAction.CANCEL, ADMIN).allowed
        assert definition.can_transition(order, LifecycleAction.CANCEL, SUPER_ADMIN).allowed

    def test_ineligible_role_is_not_a_noop(self):
        decision = get_definition("order").can_transition(snapshot(EntityKind.ORDER, "Cancelled"), LifecycleAction.CANCEL, STAFF)

        assert not decision.allowed
        assert not decision.is_idempotent_noop

    def test_unruled_pair_is_denied(self):
        decision = get_definition("rental").can_transition(snapshot(EntityKind.RENTAL, "Completed"), LifecycleAction.CONFIRM_PICKUP, ADMIN)

        assert not decision.allowed
        assert decision.reason == INVALID_STATUS_REASON

    def test_event_confirmation_is_owner_only(self):
        event = snapshot(EntityKind.EVENT, "PendingCustomerConfirmation")
        definition = get_definition("event")

        assert definition.can_transition(event, LifecycleAction.CONFIRM, OWNER).rule.side_effect is SideEffectPolicy.CHARGE
        assert not definition.can_transition(event, LifecycleAction.CONFIRM, ADMIN).allowed

    def test_rental_overdue_can_still_be_returned(self):
        decision = get_definition("rental").can_transition(snapshot(EntityKind.RENTAL, "Overdue"), LifecycleAction.CONFIRM_RETURN, STAFF)

        assert decision.allowed
        assert decision.target_status == "PendingReturn"
