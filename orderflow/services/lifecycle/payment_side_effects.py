"""
Financial side effects attached to lifecycle transitions.

A rule only names a policy (release, capture, charge); the concrete gateway
call is resolved from the entity's payment status. Each call is single-shot
and bounded by a timeout; timeouts and gateway exceptions are reported as
ordinary failures so the caller can apply the compensation policy.
"""

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from orderflow.models.base.enums import PaymentStatus
from orderflow.schemas.transition import EntitySnapshot, PaymentOutcome, SideEffectKind
from orderflow.services.base.base_service import BaseService
from orderflow.services.base.capabilities import PaymentPort, PaymentResult
from orderflow.services.lifecycle.state_machine import SideEffectPolicy, TransitionRule

GATEWAY_TIMEOUT = "gateway_timeout"
GATEWAY_ERROR = "gateway_error"
GATEWAY_BUSY = "gateway_busy"
GATEWAY_DECLINED = "gateway_declined"
MISSING_PAYMENT_REFERENCE = "missing_payment_reference"
MISSING_PAYMENT_METHOD = "missing_payment_method"

_SUCCESS_STATUS = {
    SideEffectKind.VOID: PaymentStatus.VOIDED,
    SideEffectKind.REFUND: PaymentStatus.REFUNDED,
    SideEffectKind.CAPTURE: PaymentStatus.CAPTURED,
    SideEffectKind.CHARGE: PaymentStatus.PAID,
}

_FAILURE_STATUS = {
    SideEffectKind.VOID: PaymentStatus.VOID_FAILED,
    SideEffectKind.REFUND: PaymentStatus.REFUND_FAILED,
    SideEffectKind.CAPTURE: PaymentStatus.CAPTURE_FAILED,
    SideEffectKind.CHARGE: PaymentStatus.CHARGE_FAILED,
}


@dataclass(frozen=True)
class SideEffectPlan:
    """What a transition will do to money, decided before any call."""

    policy: SideEffectPolicy
    kind: SideEffectKind = SideEffectKind.NONE
    reference: Optional[str] = None
    amount: int = 0
    # payment status to record when no call is needed; None keeps it
    settled_status: Optional[PaymentStatus] = None
    missing_reference_code: Optional[str] = None

    @property
    def requires_call(self) -> bool:
        return self.kind is not SideEffectKind.NONE


@dataclass(frozen=True)
class SideEffectResult:
    plan: SideEffectPlan
    outcome: PaymentOutcome
    attempted: bool = False
    reference_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    patch: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.outcome is PaymentOutcome.FAILED

    @property
    def payment_reference(self) -> Optional[str]:
        """External handle an operator needs to remediate by hand."""
        return self.plan.reference

    def describe(self) -> str:
        text = f"{self.plan.kind.value} failed: {self.error_code}"
        if self.error_message:
            text += f" ({self.error_message})"
        return text


class PaymentSideEffects(BaseService):
    """
    Plans and runs the gateway call for a transition.
    """

    def __init__(
        self,
        gateway: PaymentPort,
        call_timeout_seconds: float,
        max_workers: int = 4,
        currency: str = "USD",
    ):
        super().__init__()
        self.gateway = gateway
        self.call_timeout_seconds = call_timeout_seconds
        self.currency = currency
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="orderflow-payment")
        self._logger.add_context(gateway=type(gateway).__name__)

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def plan(
        self,
        entity: EntitySnapshot,
        rule: TransitionRule,
        params: Optional[Dict[str, Any]] = None,
    ) -> SideEffectPlan:
        params = params or {}
        policy = rule.side_effect
        payment_status = entity.payment_status

        if policy is SideEffectPolicy.RELEASE:
            # a failed capture leaves the authorization hold in place
            if payment_status in (PaymentStatus.AUTHORIZED.value, PaymentStatus.CAPTURE_FAILED.value):
                return SideEffectPlan(
                    policy=policy,
                    kind=SideEffectKind.VOID,
                    reference=entity.authorization_id,
                    amount=entity.amount_due,
                    missing_reference_code=None if entity.authorization_id else MISSING_PAYMENT_REFERENCE,
                )
            if payment_status in (
                PaymentStatus.PAID.value,
                PaymentStatus.CAPTURED.value,
                PaymentStatus.PARTIALLY_REFUNDED.value,
            ):
                refundable = entity.amount_paid - entity.refunded_amount
                if refundable <= 0:
                    return SideEffectPlan(policy=policy)
                return SideEffectPlan(
                    policy=policy,
                    kind=SideEffectKind.REFUND,
                    reference=entity.transaction_id,
                    amount=refundable,
                    missing_reference_code=None if entity.transaction_id else MISSING_PAYMENT_REFERENCE,
                )
            if payment_status in (PaymentStatus.PENDING.value, PaymentStatus.AUTHORIZATION_PENDING.value):
                return SideEffectPlan(policy=policy, settled_status=PaymentStatus.CANCELLED)
            return SideEffectPlan(policy=policy)

        if policy is SideEffectPolicy.CAPTURE:
            if payment_status not in (PaymentStatus.AUTHORIZED.value, PaymentStatus.CAPTURE_FAILED.value):
                return SideEffectPlan(policy=policy)
            if entity.amount_due <= 0:
                return SideEffectPlan(policy=policy, settled_status=PaymentStatus.PAID)
            return SideEffectPlan(
                policy=policy,
                kind=SideEffectKind.CAPTURE,
                reference=entity.authorization_id,
                amount=entity.amount_due,
                missing_reference_code=None if entity.authorization_id else MISSING_PAYMENT_REFERENCE,
            )

        if policy is SideEffectPolicy.CHARGE:
            if payment_status not in (PaymentStatus.PENDING.value, PaymentStatus.CHARGE_FAILED.value):
                return SideEffectPlan(policy=policy)
            if entity.amount_due <= 0:
                return SideEffectPlan(policy=policy, settled_status=PaymentStatus.PAID)
            payment_method_id = params.get("payment_method_id")
            return SideEffectPlan(
                policy=policy,
                kind=SideEffectKind.CHARGE,
                reference=payment_method_id,
                amount=entity.amount_due,
                missing_reference_code=None if payment_method_id else MISSING_PAYMENT_METHOD,
            )

        return SideEffectPlan(policy=SideEffectPolicy.NONE)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def run(self, entity: EntitySnapshot, plan: SideEffectPlan, idempotency_key: str) -> SideEffectResult:
        if not plan.requires_call:
            patch = {}
            if plan.settled_status is not None and plan.settled_status.value != entity.payment_status:
                patch["payment_status"] = plan.settled_status.value
            return SideEffectResult(plan=plan, outcome=PaymentOutcome.NOT_REQUIRED, patch=patch)

        log_context = {
            "entity_id": entity.id,
            "kind": entity.kind.value,
            "side_effect": plan.kind.value,
            "payment_status": entity.payment_status,
            "amount": plan.amount,
        }

        if plan.missing_reference_code:
            self._logger.error("Payment reference missing, side effect not attempted", extra=log_context)
            return self._failed(
                plan,
                plan.missing_reference_code,
                f"No payment reference available to {plan.kind.value}",
                attempted=False,
            )

        self._logger.info("Calling payment gateway", extra=log_context)
        future = self._pool.submit(self._call_gateway, plan, idempotency_key)
        try:
            result: PaymentResult = future.result(timeout=self.call_timeout_seconds)
        except FutureTimeoutError:
            if future.cancel():
                # never left the queue, so the gateway was not contacted
                self._logger.error(
                    "Payment call not started before timeout, cancelled",
                    extra={**log_context, "timeout_seconds": self.call_timeout_seconds},
                )
                return self._failed(
                    plan,
                    GATEWAY_BUSY,
                    f"No payment worker free within {self.call_timeout_seconds}s, gateway not called",
                    attempted=False,
                )
            self._logger.error(
                "Payment gateway call timed out",
                extra={**log_context, "timeout_seconds": self.call_timeout_seconds},
            )
            return self._failed(
                plan,
                GATEWAY_TIMEOUT,
                f"Gateway did not answer within {self.call_timeout_seconds}s",
            )
        except Exception as exc:
            self._logger.error(
                "Payment gateway call raised",
                exc_info=True,
                extra={**log_context, "exception_type": type(exc).__name__},
            )
            return self._failed(plan, GATEWAY_ERROR, "Payment gateway raised an unexpected error")

        if not result.success:
            self._logger.error(
                "Payment gateway reported failure",
                extra={**log_context, "error_code": result.error_code},
            )
            return self._failed(
                plan,
                result.error_code or GATEWAY_DECLINED,
                result.error_message or "Payment gateway declined the request",
            )

        self._logger.info(
            "Payment gateway call succeeded",
            extra={**log_context, "reference_id": result.reference_id},
        )
        return SideEffectResult(
            plan=plan,
            outcome=PaymentOutcome.SUCCEEDED,
            attempted=True,
            reference_id=result.reference_id,
            patch=self._success_patch(entity, plan, result),
        )

    def _call_gateway(self, plan: SideEffectPlan, idempotency_key: str) -> PaymentResult:
        if plan.kind is SideEffectKind.VOID:
            return self.gateway.void(plan.reference, idempotency_key=idempotency_key)
        if plan.kind is SideEffectKind.REFUND:
            return self.gateway.refund(plan.reference, plan.amount, idempotency_key=idempotency_key)
        if plan.kind is SideEffectKind.CAPTURE:
            return self.gateway.capture(plan.reference, plan.amount, idempotency_key=idempotency_key)
        if plan.kind is SideEffectKind.CHARGE:
            return self.gateway.charge(plan.reference, plan.amount, self.currency, idempotency_key=idempotency_key)
        raise ValueError(f"Unsupported side effect {plan.kind}")

    def _success_patch(self, entity: EntitySnapshot, plan: SideEffectPlan, result: PaymentResult) -> Dict[str, Any]:
        patch: Dict[str, Any] = {
            "payment_status": _SUCCESS_STATUS[plan.kind].value,
            "payment_error_code": None,
            "payment_error_message": None,
        }
        amount = result.amount if result.amount is not None else plan.amount
        if plan.kind is SideEffectKind.REFUND:
            patch["refund_id"] = result.reference_id
            patch["refunded_amount"] = entity.refunded_amount + amount
        elif plan.kind in (SideEffectKind.CAPTURE, SideEffectKind.CHARGE):
            patch["transaction_id"] = result.reference_id or entity.transaction_id
            patch["amount_paid"] = amount
        return patch

    def _failed(
        self,
        plan: SideEffectPlan,
        error_code: str,
        error_message: str,
        attempted: bool = True,
    ) -> SideEffectResult:
        return SideEffectResult(
            plan=plan,
            outcome=PaymentOutcome.FAILED,
            attempted=attempted,
            error_code=error_code,
            error_message=error_message,
            patch={
                "payment_status": _FAILURE_STATUS[plan.kind].value,
                "payment_error_code": error_code,
                "payment_error_message": error_message,
            },
        )

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)
