"""
Compensation policy for failed financial side effects.

A failed void or refund never blocks the transition. The entity is flagged
for manual review in the same write that applies the transition, and the
operator channel is told what to fix. Nothing here retries the payment call.
"""

from typing import Any, Dict

from orderflow.models.base.enums import LifecycleAction
from orderflow.schemas.transition import EntitySnapshot
from orderflow.services.base.base_service import BaseService
from orderflow.services.base.notification_dispatcher import NotificationDispatcher
from orderflow.services.lifecycle.payment_side_effects import SideEffectResult


class CompensationHandler(BaseService):

    def __init__(
        self,
        notifications: NotificationDispatcher,
        operator_channel: str,
        alert_template: str,
        unrecorded_template: str,
    ):
        super().__init__()
        self.notifications = notifications
        self.operator_channel = operator_channel
        self.alert_template = alert_template
        self.unrecorded_template = unrecorded_template

    def requires_review(self, result: SideEffectResult) -> bool:
        """Only money put at risk by a failed void/refund is escalated."""
        return result.failed and result.plan.policy.is_compensating

    def degraded_fields(self, result: SideEffectResult) -> Dict[str, Any]:
        """Fields written together with the transition when review is needed."""
        return {
            "needs_manual_review": True,
            "processing_error": result.describe(),
        }

    def escalate(
        self,
        entity: EntitySnapshot,
        action: LifecycleAction,
        result: SideEffectResult,
    ) -> None:
        params = self._alert_params(entity, action, result)
        self._logger.warning(
            "Entity flagged for manual payment review",
            extra=params,
        )
        self.notifications.send(self.operator_channel, self.alert_template, params)

    def escalate_unrecorded(
        self,
        entity: EntitySnapshot,
        action: LifecycleAction,
        result: SideEffectResult,
        abort_reason: str,
    ) -> None:
        """
        A gateway call succeeded but the transition write was aborted, so
        the money movement is not reflected on the entity.
        """
        params = self._alert_params(entity, action, result)
        params["reference_id"] = result.reference_id
        params["abort_reason"] = abort_reason
        self._logger.error(
            "Payment side effect applied but transition was not recorded",
            extra=params,
        )
        self.notifications.send(self.operator_channel, self.unrecorded_template, params)

    @staticmethod
    def _alert_params(
        entity: EntitySnapshot,
        action: LifecycleAction,
        result: SideEffectResult,
    ) -> Dict[str, Any]:
        return {
            "entity_id": entity.id,
            "kind": entity.kind.value,
            "action": action.value,
            "side_effect": result.plan.kind.value,
            "error_code": result.error_code,
            "error_message": result.error_message,
            "payment_reference": result.payment_reference,
            "amount": result.plan.amount,
        }
