"""
Transition executor.

Runs one lifecycle transition end to end:

1. validate the request (before any read)
2. fresh read of the entity
3. permission check (own vs any capability)
4. state machine decision, short-circuiting idempotent retries
5. financial side effect, awaited with a timeout
6. atomic read-modify-write that re-checks the decision on fresh state
7. best-effort audit, customer notification and operator escalation

No exception escapes ``execute``; every failure comes back as a
``ServiceResult``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from orderflow.core.config import DEFAULT_ROLE_GRANTS, Settings
from orderflow.core.exceptions import ConcurrencyConflictError
from orderflow.models.base.enums import LifecycleAction
from orderflow.schemas.transition import (
    EntitySnapshot,
    PaymentOutcome,
    SideEffectKind,
    TransitionOutcome,
    TransitionRequest,
)
from orderflow.services.base.audit_service import AuditService
from orderflow.services.base.base_service import BaseService
from orderflow.services.base.capabilities import PermissionPort, StoragePort
from orderflow.services.base.notification_dispatcher import NotificationDispatcher
from orderflow.services.base.service_result import (
    ErrorCode,
    ErrorSeverity,
    ServiceError,
    ServiceResult,
)
from orderflow.services.lifecycle.compensation_handler import CompensationHandler
from orderflow.services.lifecycle.payment_side_effects import PaymentSideEffects, SideEffectResult
from orderflow.services.lifecycle.state_machine import (
    LifecycleDefinition,
    TransitionRule,
    get_definition,
)


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ExecutorConfig:
    """Explicit configuration for the lifecycle core."""

    operator_channel: str = "ops:payments"
    alert_template: str = "payment_manual_review"
    unrecorded_template: str = "payment_unrecorded_side_effect"
    customer_target_prefix: str = "user:"
    payment_call_timeout_seconds: float = 10.0
    payment_max_workers: int = 4
    currency: str = "USD"
    dispatch_max_workers: int = 2
    role_grants: Mapping[str, List[str]] = field(default_factory=lambda: dict(DEFAULT_ROLE_GRANTS))

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExecutorConfig":
        return cls(
            operator_channel=settings.lifecycle.OPERATOR_CHANNEL,
            alert_template=settings.lifecycle.OPERATOR_ALERT_TEMPLATE,
            unrecorded_template=settings.lifecycle.UNRECORDED_SIDE_EFFECT_TEMPLATE,
            payment_call_timeout_seconds=settings.payment.PAYMENT_CALL_TIMEOUT_SECONDS,
            payment_max_workers=settings.payment.PAYMENT_MAX_WORKERS,
            currency=settings.payment.CURRENCY,
            dispatch_max_workers=settings.lifecycle.DISPATCH_MAX_WORKERS,
            role_grants={role: list(grants) for role, grants in settings.lifecycle.ROLE_GRANTS.items()},
        )


class TransitionExecutor(BaseService):
    """
    Generic executor shared by every entity kind; per-kind behaviour lives in
    the lifecycle definitions.
    """

    def __init__(
        self,
        storage: StoragePort,
        permissions: PermissionPort,
        side_effects: PaymentSideEffects,
        compensation: CompensationHandler,
        notifications: NotificationDispatcher,
        audit: AuditService,
        config: ExecutorConfig,
        clock: Callable[[], datetime] = utc_clock,
    ):
        super().__init__()
        self.storage = storage
        self.permissions = permissions
        self.side_effects = side_effects
        self.compensation = compensation
        self.notifications = notifications
        self.audit = audit
        self.config = config
        self.clock = clock

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def execute(
        self,
        entity_ref: Any,
        action: Any,
        actor: Any,
        reason: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> ServiceResult[TransitionOutcome]:
        try:
            request = TransitionRequest.model_validate(
                {
                    "entity_ref": entity_ref,
                    "action": action,
                    "actor": actor,
                    "reason": reason,
                    "params": params or {},
                }
            )
        except PydanticValidationError as exc:
            errors = [
                {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
                for err in exc.errors()
            ]
            self._logger.info("Transition request rejected", extra={"errors": errors})
            return ServiceResult.validation_failure("Invalid transition request", details={"errors": errors})

        definition = get_definition(request.entity_ref.kind)
        if not definition.defines(request.action):
            return ServiceResult.validation_failure(
                f"Action '{request.action.value}' is not defined for {definition.kind.value}",
                field="action",
                details={"allowed_actions": sorted(a.value for a in definition.actions)},
            )

        try:
            return self._execute(request, definition)
        except Exception as exc:
            return self._handle_exception(
                exc,
                "execute transition",
                entity_ref=request.entity_ref.entity_id,
                additional_context={
                    "kind": request.entity_ref.kind.value,
                    "action": request.action.value,
                },
            )

    # -------------------------------------------------------------------------
    # Orchestration
    # -------------------------------------------------------------------------

    def _execute(
        self,
        request: TransitionRequest,
        definition: LifecycleDefinition,
    ) -> ServiceResult[TransitionOutcome]:
        ref = request.entity_ref
        actor = request.actor
        action = request.action
        log_context = {
            "entity_id": ref.entity_id,
            "kind": ref.kind.value,
            "action": action.value,
            "actor_id": actor.actor_id,
            "actor_role": actor.role.value,
        }

        entity = self.storage.get(ref.kind.value, ref.entity_id)
        if entity is None:
            return ServiceResult.not_found(ref.kind.value, ref.entity_id)
        log_context.update(status=entity.status, payment_status=entity.payment_status)

        capability = self._capability(definition, action, entity, actor.actor_id)
        allowed = self.permissions.check(
            actor.actor_id,
            actor.role.value,
            capability,
            {
                "owner_id": entity.owner_id,
                "entity_id": entity.id,
                "kind": ref.kind.value,
                "status": entity.status,
            },
        )
        if not allowed:
            self._logger.info("Transition denied by permission check", extra=log_context)
            return ServiceResult.permission_denied(capability, resource=f"{ref.kind.value}:{ref.entity_id}")

        decision = definition.can_transition(entity, action, actor)
        if decision.is_idempotent_noop:
            self._logger.info("Transition already applied, returning prior success", extra=log_context)
            return ServiceResult.success(self._noop_outcome(entity, action), message="Transition already applied")
        if not decision.allowed:
            self._logger.info(f"Transition rejected: {decision.reason}", extra=log_context)
            return ServiceResult.invalid_state(
                decision.reason,
                entity.status,
                details={"action": action.value, "kind": ref.kind.value},
            )

        rule = decision.rule
        plan = self.side_effects.plan(entity, rule, request.params)
        effect = self.side_effects.run(
            entity,
            plan,
            idempotency_key=f"{entity.id}:{action.value}:{entity.version}",
        )

        if effect.failed and not rule.side_effect.is_compensating:
            return self._record_forward_failure(entity, action, effect, log_context)

        try:
            outcome, updated, flagged = self._commit_transition(entity, rule, request, effect, definition)
        except ConcurrencyConflictError as exc:
            self._logger.warning(f"Transition aborted: {exc.message}", extra=log_context)
            self._report_unrecorded(entity, action, effect, exc.message)
            return ServiceResult.conflict(
                "Entity changed while the transition was in progress; retry the request",
                details={"entity_id": entity.id, "expected_version": entity.version},
            )
        except Exception:
            self._report_unrecorded(entity, action, effect, "transition write failed")
            raise

        if outcome.is_idempotent_noop:
            self._logger.info("Concurrent request already applied this transition", extra=log_context)
            return ServiceResult.success(outcome, message="Transition already applied")

        self._logger.info(
            f"Transition applied: {outcome.previous_status} -> {outcome.new_status}",
            extra={
                **log_context,
                "new_status": outcome.new_status,
                "payment_status": outcome.payment_status,
                "payment_outcome": outcome.payment_outcome.value,
                "needs_manual_review": outcome.needs_manual_review,
            },
        )
        self._after_commit(updated, rule, request, effect, outcome, flagged)
        return ServiceResult.success(
            outcome,
            message="Transition applied with payment issue flagged for review" if flagged else "Transition applied",
        )

    def _commit_transition(
        self,
        entity: EntitySnapshot,
        rule: TransitionRule,
        request: TransitionRequest,
        effect: SideEffectResult,
        definition: LifecycleDefinition,
    ) -> Tuple[TransitionOutcome, Optional[EntitySnapshot], bool]:
        ref = request.entity_ref
        with self.storage.transaction(ref.kind.value, ref.entity_id) as txn:
            fresh = txn.entity
            fresh_decision = definition.can_transition(fresh, request.action, request.actor)

            if fresh_decision.is_idempotent_noop:
                settled = effect.patch.get("payment_status")
                if effect.attempted and not effect.failed and settled != fresh.payment_status:
                    self._report_unrecorded(entity, request.action, effect, "transition applied concurrently")
                return self._noop_outcome(fresh, request.action), None, False

            if not fresh_decision.allowed or fresh.version != entity.version:
                raise ConcurrencyConflictError(
                    fresh.id,
                    entity.version,
                    message=f"status moved from {entity.status} to {fresh.status}"
                    if fresh.status != entity.status
                    else "entity version changed",
                )

            patch, flagged = self._build_patch(fresh, rule, effect)
            updated = txn.apply(patch, self._history_entry(fresh, rule, request))

        outcome = TransitionOutcome(
            entity_id=updated.id,
            kind=updated.kind,
            action=request.action,
            previous_status=fresh.status,
            new_status=updated.status,
            payment_status=updated.payment_status,
            payment_outcome=effect.outcome,
            side_effect=effect.plan.kind,
            is_idempotent_noop=False,
            needs_manual_review=updated.needs_manual_review,
            processing_error=updated.processing_error,
            history_length=len(updated.history),
        )
        return outcome, updated, flagged

    def _build_patch(
        self,
        fresh: EntitySnapshot,
        rule: TransitionRule,
        effect: SideEffectResult,
    ) -> Tuple[Dict[str, Any], bool]:
        patch: Dict[str, Any] = {"status": rule.to_status}
        patch.update(effect.patch)

        if self.compensation.requires_review(effect):
            patch.update(self.compensation.degraded_fields(effect))
            return patch, True

        # a review flag is only cleared by an operator, and it needs its error text
        if not fresh.needs_manual_review:
            patch["processing_error"] = None
        return patch, False

    def _history_entry(
        self,
        fresh: EntitySnapshot,
        rule: TransitionRule,
        request: TransitionRequest,
    ) -> Dict[str, Any]:
        timestamp = self.clock()
        last = fresh.last_transition_at
        if last is not None and timestamp < last:
            timestamp = last
        return {
            "from_status": fresh.status,
            "to_status": rule.to_status,
            "action": request.action.value,
            "timestamp": timestamp,
            "actor_id": request.actor.actor_id,
            "actor_role": request.actor.role.value,
            "reason": request.reason,
        }

    def _record_forward_failure(
        self,
        entity: EntitySnapshot,
        action: LifecycleAction,
        effect: SideEffectResult,
        log_context: Dict[str, Any],
    ) -> ServiceResult[TransitionOutcome]:
        """
        Capture/charge failures block the transition. The failure is kept on
        the entity so the customer or staff can retry.
        """
        patch = dict(effect.patch)
        patch["processing_error"] = effect.describe()
        payment_status = patch["payment_status"]
        try:
            with self.storage.transaction(entity.kind.value, entity.id) as txn:
                if txn.entity.version != entity.version:
                    raise ConcurrencyConflictError(entity.id, entity.version)
                payment_status = txn.apply(patch).payment_status
        except ConcurrencyConflictError:
            self._logger.warning("Payment failure not recorded: entity changed concurrently", extra=log_context)

        self._logger.warning(
            "Transition blocked by payment failure",
            extra={**log_context, "error_code": effect.error_code},
        )
        return ServiceResult.failure(
            ServiceError(
                code=ErrorCode.PAYMENT_FAILED,
                message=f"Payment {effect.plan.kind.value} failed; {action.value} was not applied",
                severity=ErrorSeverity.WARNING,
                details={
                    "error_code": effect.error_code,
                    "error_message": effect.error_message,
                    "payment_status": payment_status,
                    "current_status": entity.status,
                },
            )
        )

    # -------------------------------------------------------------------------
    # Best-effort follow-ups
    # -------------------------------------------------------------------------

    def _after_commit(
        self,
        updated: EntitySnapshot,
        rule: TransitionRule,
        request: TransitionRequest,
        effect: SideEffectResult,
        outcome: TransitionOutcome,
        flagged: bool,
    ) -> None:
        try:
            if flagged:
                self.compensation.escalate(updated, request.action, effect)

            self.audit.log_action(
                request.actor.actor_id,
                f"{updated.kind.value}.{request.action.value}",
                entity_type=updated.kind.value,
                entity_id=updated.id,
                context={
                    "from_status": outcome.previous_status,
                    "to_status": outcome.new_status,
                    "payment_status": outcome.payment_status,
                    "payment_outcome": outcome.payment_outcome.value,
                    "needs_manual_review": outcome.needs_manual_review,
                    "reason": request.reason,
                },
            )

            if rule.notify_template:
                self.notifications.send(
                    f"{self.config.customer_target_prefix}{updated.owner_id}",
                    rule.notify_template,
                    {
                        "entity_id": updated.id,
                        "kind": updated.kind.value,
                        "status": updated.status,
                        "payment_status": updated.payment_status,
                        "reason": request.reason,
                    },
                )
        except Exception:
            # the transition is committed; follow-ups are best effort
            self._logger.error(
                "Post-commit dispatch failed",
                exc_info=True,
                extra={"entity_id": updated.id, "action": request.action.value},
            )

    def _report_unrecorded(
        self,
        entity: EntitySnapshot,
        action: LifecycleAction,
        effect: SideEffectResult,
        abort_reason: str,
    ) -> None:
        if not effect.attempted or effect.outcome is not PaymentOutcome.SUCCEEDED:
            return
        try:
            self.compensation.escalate_unrecorded(entity, action, effect, abort_reason)
        except Exception:
            self._logger.error(
                "Failed to dispatch unrecorded side effect alert",
                exc_info=True,
                extra={"entity_id": entity.id, "action": action.value},
            )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _capability(
        definition: LifecycleDefinition,
        action: LifecycleAction,
        entity: EntitySnapshot,
        actor_id: str,
    ) -> str:
        scope = "own" if entity.is_owned_by(actor_id) else "any"
        return f"{definition.kind.value}:{action.value}:{scope}"

    @staticmethod
    def _noop_outcome(entity: EntitySnapshot, action: LifecycleAction) -> TransitionOutcome:
        return TransitionOutcome(
            entity_id=entity.id,
            kind=entity.kind,
            action=action,
            previous_status=entity.status,
            new_status=entity.status,
            payment_status=entity.payment_status,
            payment_outcome=PaymentOutcome.NOT_REQUIRED,
            side_effect=SideEffectKind.NONE,
            is_idempotent_noop=True,
            needs_manual_review=entity.needs_manual_review,
            processing_error=entity.processing_error,
            history_length=len(entity.history),
        )
