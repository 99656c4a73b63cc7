"""
Database enums shared by models, schemas and the lifecycle definitions.
"""

import enum


class EntityKind(str, enum.Enum):
    """Kinds of bookable entity handled by the lifecycle core."""
    ORDER = "order"
    RENTAL = "rental"
    EVENT = "event"


class OrderStatus(str, enum.Enum):
    """Box delivery order status."""
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    PREPARING = "Preparing"
    READY_FOR_PICKUP = "ReadyForPickup"
    OUT_FOR_DELIVERY = "OutForDelivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


class RentalBookingStatus(str, enum.Enum):
    """Equipment rental booking status."""
    PENDING_PICKUP = "PendingPickup"
    ACTIVE = "Active"
    OVERDUE = "Overdue"
    PENDING_RETURN = "PendingReturn"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class EventBookingStatus(str, enum.Enum):
    """Catered event booking status."""
    PENDING_ADMIN_APPROVAL = "PendingAdminApproval"
    PENDING_CUSTOMER_CONFIRMATION = "PendingCustomerConfirmation"
    CONFIRMED = "Confirmed"
    PREPARATION = "Preparation"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    REJECTED = "Rejected"


class PaymentStatus(str, enum.Enum):
    """Money movement axis, independent of the lifecycle status."""
    PENDING = "Pending"
    AUTHORIZATION_PENDING = "AuthorizationPending"
    AUTHORIZED = "Authorized"
    PAID = "Paid"
    CAPTURED = "Captured"
    VOIDED = "Voided"
    REFUNDED = "Refunded"
    PARTIALLY_REFUNDED = "PartiallyRefunded"
    FAILED = "Failed"
    VOID_FAILED = "VoidFailed"
    REFUND_FAILED = "RefundFailed"
    CAPTURE_FAILED = "CaptureFailed"
    CHARGE_FAILED = "ChargeFailed"
    CANCELLED = "Cancelled"


class ActorRole(str, enum.Enum):
    """Roles an actor can present."""
    CUSTOMER = "customer"
    COURIER = "courier"
    STAFF = "staff"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"
    SYSTEM = "system"


class LifecycleAction(str, enum.Enum):
    """Actions that can be requested against a bookable entity."""
    CONFIRM = "confirm"
    START_PREPARING = "start_preparing"
    MARK_READY = "mark_ready"
    DISPATCH = "dispatch"
    DELIVER = "deliver"
    CANCEL = "cancel"
    FAIL = "fail"
    CONFIRM_PICKUP = "confirm_pickup"
    MARK_OVERDUE = "mark_overdue"
    CONFIRM_RETURN = "confirm_return"
    COMPLETE = "complete"
    APPROVE = "approve"
    REJECT = "reject"
    START_PREPARATION = "start_preparation"
    START = "start"


STATUS_ENUMS = {
    EntityKind.ORDER: OrderStatus,
    EntityKind.RENTAL: RentalBookingStatus,
    EntityKind.EVENT: EventBookingStatus,
}


def status_values(kind: EntityKind) -> frozenset:
    """Closed set of status strings valid for ``kind``."""
    return frozenset(member.value for member in STATUS_ENUMS[EntityKind(kind)])
