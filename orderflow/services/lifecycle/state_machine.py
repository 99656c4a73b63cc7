"""
Lifecycle definitions for orders, rental bookings and event bookings.

Everything here is pure: a definition is built once at import time, checked
for consistency (targets exist, terminal statuses have no outgoing rules,
the status graph is acyclic) and then only answers questions.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Type

from orderflow.core.exceptions import ConfigurationError, ValidationError
from orderflow.models.base.enums import (
    ActorRole,
    EntityKind,
    EventBookingStatus,
    LifecycleAction,
    OrderStatus,
    RentalBookingStatus,
)
from orderflow.schemas.transition import Actor, EntitySnapshot

INVALID_STATUS_REASON = "invalid status for this action"


class SideEffectPolicy(str, Enum):
    """Financial side effect attached to a transition rule."""

    NONE = "none"
    # void an authorization or refund a capture
    RELEASE = "release"
    CAPTURE = "capture"
    CHARGE = "charge"

    @property
    def is_compensating(self) -> bool:
        return self is SideEffectPolicy.RELEASE


def _normalize_role(role: ActorRole) -> ActorRole:
    return ActorRole.ADMIN if role == ActorRole.SUPER_ADMIN else ActorRole(role)


@dataclass(frozen=True)
class TransitionRule:
    action: LifecycleAction
    from_statuses: FrozenSet[str]
    to_status: str
    roles: FrozenSet[ActorRole] = frozenset()
    owner_allowed: bool = False
    side_effect: SideEffectPolicy = SideEffectPolicy.NONE
    notify_template: Optional[str] = None

    def actor_eligible(self, entity: EntitySnapshot, actor: Actor) -> bool:
        if _normalize_role(actor.role) in self.roles:
            return True
        return self.owner_allowed and entity.is_owned_by(actor.actor_id)


@dataclass(frozen=True)
class TransitionDecision:
    allowed: bool
    reason: Optional[str] = None
    is_idempotent_noop: bool = False
    rule: Optional[TransitionRule] = None

    @property
    def target_status(self) -> Optional[str]:
        return self.rule.to_status if self.rule else None


@dataclass
class LifecycleDefinition:
    """States and transition rules for one entity kind."""

    kind: EntityKind
    status_enum: Type[Enum]
    initial_status: str
    terminal_statuses: FrozenSet[str]
    rules: List[TransitionRule]
    _by_action: Dict[LifecycleAction, List[TransitionRule]] = field(init=False, repr=False)

    def __post_init__(self):
        self._by_action = {}
        for rule in self.rules:
            self._by_action.setdefault(rule.action, []).append(rule)
        self._validate()

    @property
    def statuses(self) -> FrozenSet[str]:
        return frozenset(member.value for member in self.status_enum)

    @property
    def actions(self) -> FrozenSet[LifecycleAction]:
        return frozenset(self._by_action)

    def defines(self, action: LifecycleAction) -> bool:
        return action in self._by_action

    def rules_for(self, action: LifecycleAction) -> List[TransitionRule]:
        return list(self._by_action.get(action, []))

    def is_terminal(self, status: str) -> bool:
        return status in self.terminal_statuses

    def allowed_targets(self, status: str) -> Set[str]:
        return {rule.to_status for rule in self.rules if status in rule.from_statuses}

    def can_transition(
        self,
        entity: EntitySnapshot,
        action: LifecycleAction,
        actor: Actor,
    ) -> TransitionDecision:
        """
        Decide whether ``actor`` may apply ``action`` to ``entity`` now.

        A request whose target status is already the current status is an
        idempotent no-op for any actor eligible for the action. Every pair
        not covered by a rule is denied.
        """
        rules = self._by_action.get(action)
        if not rules:
            return TransitionDecision(
                allowed=False,
                reason=f"action '{action.value}' is not defined for {self.kind.value}",
            )

        status = entity.status
        matching = [rule for rule in rules if status in rule.from_statuses]
        for rule in matching:
            if rule.actor_eligible(entity, actor):
                return TransitionDecision(allowed=True, rule=rule)

        already_applied = [rule for rule in rules if rule.to_status == status]
        for rule in already_applied:
            if rule.actor_eligible(entity, actor):
                return TransitionDecision(allowed=True, is_idempotent_noop=True, rule=rule)

        if matching or already_applied:
            return TransitionDecision(
                allowed=False,
                reason=f"role '{actor.role.value}' may not {action.value} a {self.kind.value} in status {status}",
            )
        return TransitionDecision(allowed=False, reason=INVALID_STATUS_REASON)

    def _validate(self) -> None:
        statuses = self.statuses
        if self.initial_status not in statuses:
            raise ConfigurationError(f"Unknown initial status {self.initial_status}")
        if self.initial_status in self.terminal_statuses:
            raise ConfigurationError("Initial status cannot be terminal")

        graph: Dict[str, Set[str]] = {status: set() for status in statuses}
        for rule in self.rules:
            unknown = (set(rule.from_statuses) | {rule.to_status}) - statuses
            if unknown:
                raise ConfigurationError(
                    f"{self.kind.value}:{rule.action.value} references unknown statuses",
                    details={"statuses": sorted(unknown)},
                )
            leaving_terminal = set(rule.from_statuses) & self.terminal_statuses
            if leaving_terminal:
                raise ConfigurationError(
                    f"{self.kind.value}:{rule.action.value} leaves a terminal status",
                    details={"statuses": sorted(leaving_terminal)},
                )
            if rule.to_status in rule.from_statuses:
                raise ConfigurationError(f"{self.kind.value}:{rule.action.value} is a self-loop")
            for source in rule.from_statuses:
                graph[source].add(rule.to_status)

        _assert_acyclic(self.kind, graph)


def _assert_acyclic(kind: EntityKind, graph: Dict[str, Set[str]]) -> None:
    visiting: Set[str] = set()
    done: Set[str] = set()

    def visit(node: str) -> None:
        if node in done:
            return
        if node in visiting:
            raise ConfigurationError(f"{kind.value} lifecycle has a cycle through {node}")
        visiting.add(node)
        for nxt in graph[node]:
            visit(nxt)
        visiting.discard(node)
        done.add(node)

    for node in graph:
        visit(node)


def _rule(
    action: LifecycleAction,
    from_statuses: Iterable[Enum],
    to_status: Enum,
    roles: Iterable[ActorRole] = (),
    owner_allowed: bool = False,
    side_effect: SideEffectPolicy = SideEffectPolicy.NONE,
    notify_template: Optional[str] = None,
) -> TransitionRule:
    return TransitionRule(
        action=action,
        from_statuses=frozenset(status.value for status in from_statuses),
        to_status=to_status.value,
        roles=frozenset(roles),
        owner_allowed=owner_allowed,
        side_effect=side_effect,
        notify_template=notify_template,
    )


A = LifecycleAction
R = ActorRole

# -----------------------------------------------------------------------------
# Orders
# -----------------------------------------------------------------------------

_ORDER_TERMINAL = frozenset({OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value, OrderStatus.FAILED.value})
_ORDER_OPEN = [status for status in OrderStatus if status.value not in _ORDER_TERMINAL]

ORDER_LIFECYCLE = LifecycleDefinition(
    kind=EntityKind.ORDER,
    status_enum=OrderStatus,
    initial_status=OrderStatus.PENDING.value,
    terminal_statuses=_ORDER_TERMINAL,
    rules=[
        _rule(A.CONFIRM, [OrderStatus.PENDING], OrderStatus.CONFIRMED,
              roles=[R.STAFF, R.ADMIN], notify_template="order_confirmed"),
        _rule(A.START_PREPARING, [OrderStatus.CONFIRMED], OrderStatus.PREPARING,
              roles=[R.STAFF, R.ADMIN]),
        _rule(A.MARK_READY, [OrderStatus.PREPARING], OrderStatus.READY_FOR_PICKUP,
              roles=[R.STAFF, R.COURIER, R.ADMIN], notify_template="order_ready"),
        _rule(A.DISPATCH, [OrderStatus.READY_FOR_PICKUP], OrderStatus.OUT_FOR_DELIVERY,
              roles=[R.COURIER, R.ADMIN], notify_template="order_out_for_delivery"),
        _rule(A.DELIVER, [OrderStatus.READY_FOR_PICKUP, OrderStatus.OUT_FOR_DELIVERY], OrderStatus.DELIVERED,
              roles=[R.COURIER, R.STAFF, R.ADMIN], side_effect=SideEffectPolicy.CAPTURE,
              notify_template="order_delivered"),
        _rule(A.CANCEL, [OrderStatus.PENDING, OrderStatus.CONFIRMED], OrderStatus.CANCELLED,
              roles=[R.ADMIN], owner_allowed=True, side_effect=SideEffectPolicy.RELEASE,
              notify_template="order_cancelled"),
        # operator override once the kitchen has started
        _rule(A.CANCEL,
              [OrderStatus.PREPARING, OrderStatus.READY_FOR_PICKUP, OrderStatus.OUT_FOR_DELIVERY],
              OrderStatus.CANCELLED,
              roles=[R.ADMIN], side_effect=SideEffectPolicy.RELEASE, notify_template="order_cancelled"),
        _rule(A.FAIL, _ORDER_OPEN, OrderStatus.FAILED,
              roles=[R.ADMIN, R.SYSTEM], side_effect=SideEffectPolicy.RELEASE, notify_template="order_failed"),
    ],
)

# -----------------------------------------------------------------------------
# Rental bookings
# -----------------------------------------------------------------------------

RENTAL_LIFECYCLE = LifecycleDefinition(
    kind=EntityKind.RENTAL,
    status_enum=RentalBookingStatus,
    initial_status=RentalBookingStatus.PENDING_PICKUP.value,
    terminal_statuses=frozenset({RentalBookingStatus.COMPLETED.value, RentalBookingStatus.CANCELLED.value}),
    rules=[
        _rule(A.CONFIRM_PICKUP, [RentalBookingStatus.PENDING_PICKUP], RentalBookingStatus.ACTIVE,
              roles=[R.STAFF, R.ADMIN], notify_template="rental_picked_up"),
        _rule(A.MARK_OVERDUE, [RentalBookingStatus.ACTIVE], RentalBookingStatus.OVERDUE,
              roles=[R.ADMIN, R.SYSTEM], notify_template="rental_overdue"),
        _rule(A.CONFIRM_RETURN, [RentalBookingStatus.ACTIVE, RentalBookingStatus.OVERDUE],
              RentalBookingStatus.PENDING_RETURN, roles=[R.STAFF, R.ADMIN]),
        _rule(A.COMPLETE, [RentalBookingStatus.PENDING_RETURN], RentalBookingStatus.COMPLETED,
              roles=[R.STAFF, R.ADMIN], side_effect=SideEffectPolicy.CAPTURE,
              notify_template="rental_completed"),
        _rule(A.CANCEL, [RentalBookingStatus.PENDING_PICKUP], RentalBookingStatus.CANCELLED,
              roles=[R.ADMIN], owner_allowed=True, side_effect=SideEffectPolicy.RELEASE,
              notify_template="rental_cancelled"),
    ],
)

# -----------------------------------------------------------------------------
# Event bookings
# -----------------------------------------------------------------------------

EVENT_LIFECYCLE = LifecycleDefinition(
    kind=EntityKind.EVENT,
    status_enum=EventBookingStatus,
    initial_status=EventBookingStatus.PENDING_ADMIN_APPROVAL.value,
    terminal_statuses=frozenset(
        {
            EventBookingStatus.COMPLETED.value,
            EventBookingStatus.CANCELLED.value,
            EventBookingStatus.REJECTED.value,
        }
    ),
    rules=[
        _rule(A.APPROVE, [EventBookingStatus.PENDING_ADMIN_APPROVAL],
              EventBookingStatus.PENDING_CUSTOMER_CONFIRMATION,
              roles=[R.ADMIN], notify_template="event_awaiting_confirmation"),
        _rule(A.REJECT, [EventBookingStatus.PENDING_ADMIN_APPROVAL], EventBookingStatus.REJECTED,
              roles=[R.ADMIN], side_effect=SideEffectPolicy.RELEASE, notify_template="event_rejected"),
        _rule(A.CONFIRM, [EventBookingStatus.PENDING_CUSTOMER_CONFIRMATION], EventBookingStatus.CONFIRMED,
              owner_allowed=True, side_effect=SideEffectPolicy.CHARGE, notify_template="event_confirmed"),
        _rule(A.START_PREPARATION, [EventBookingStatus.CONFIRMED], EventBookingStatus.PREPARATION,
              roles=[R.STAFF, R.ADMIN]),
        _rule(A.START, [EventBookingStatus.PREPARATION], EventBookingStatus.ACTIVE,
              roles=[R.STAFF, R.ADMIN]),
        _rule(A.COMPLETE, [EventBookingStatus.ACTIVE], EventBookingStatus.COMPLETED,
              roles=[R.STAFF, R.ADMIN], notify_template="event_completed"),
        _rule(A.CANCEL,
              [
                  EventBookingStatus.PENDING_ADMIN_APPROVAL,
                  EventBookingStatus.PENDING_CUSTOMER_CONFIRMATION,
                  EventBookingStatus.CONFIRMED,
                  EventBookingStatus.PREPARATION,
              ],
              EventBookingStatus.CANCELLED,
              roles=[R.ADMIN], owner_allowed=True, side_effect=SideEffectPolicy.RELEASE,
              notify_template="event_cancelled"),
    ],
)

LIFECYCLES: Dict[EntityKind, LifecycleDefinition] = {
    EntityKind.ORDER: ORDER_LIFECYCLE,
    EntityKind.RENTAL: RENTAL_LIFECYCLE,
    EntityKind.EVENT: EVENT_LIFECYCLE,
}


def get_definition(kind) -> LifecycleDefinition:
    try:
        return LIFECYCLES[EntityKind(kind)]
    except ValueError:
        raise ValidationError(
            f"Unknown entity kind '{kind}'",
            field_errors={"kind": [f"must be one of {[k.value for k in EntityKind]}"]},
        )
