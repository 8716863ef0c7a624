"""
Order status transition tables.

Each fulfillment type has its own table. `returned` is reachable only through
the return gate, and `lost_in_transit` only by an admin, so both are listed
separately and checked by `check_transition`.
"""
from dispatch_hub.schemas.status_schema import FulfillmentType, OrderStatus, UserRole
from dispatch_hub.utils.exceptions import InvalidTransition, PermissionDenied, ValidationFailed

S = OrderStatus

_PRE_DISPATCH = {
    S.INTAKE: {S.FOLLOW_UP, S.CONFIRMED, S.CANCELLED},
    S.FOLLOW_UP: {S.FOLLOW_UP, S.CONFIRMED, S.CANCELLED},
    S.CONFIRMED: {S.PACKED, S.CANCELLED},
}

TRANSITIONS: dict[FulfillmentType, dict[OrderStatus, set[OrderStatus]]] = {
    FulfillmentType.INSIDE_VALLEY: {
        **_PRE_DISPATCH,
        S.PACKED: {S.ASSIGNED, S.CANCELLED},
        S.ASSIGNED: {S.OUT_FOR_DELIVERY, S.PACKED, S.CANCELLED},
        S.OUT_FOR_DELIVERY: {S.DELIVERED, S.REJECTED, S.PACKED},
        S.DELIVERED: {S.RETURN_INITIATED},
        S.REJECTED: {S.RETURN_INITIATED, S.RETURNED},
        S.RETURN_INITIATED: {S.RETURNED},
    },
    FulfillmentType.OUTSIDE_VALLEY: {
        **_PRE_DISPATCH,
        S.PACKED: {S.HANDED_TO_COURIER, S.CANCELLED},
        S.HANDED_TO_COURIER: {S.IN_TRANSIT, S.DELIVERED, S.RTO, S.RETURN_INITIATED},
        S.IN_TRANSIT: {S.DELIVERED, S.RTO, S.RETURN_INITIATED},
        S.DELIVERED: {S.RETURN_INITIATED},
        S.RTO: {S.RETURNED, S.LOST_IN_TRANSIT},
        S.RETURN_INITIATED: {S.RETURNED, S.LOST_IN_TRANSIT},
    },
    FulfillmentType.STORE: {
        **_PRE_DISPATCH,
        S.PACKED: {S.DELIVERED, S.CANCELLED},
        S.DELIVERED: {S.RETURN_INITIATED},
        S.RETURN_INITIATED: {S.RETURNED},
    },
}

TERMINAL_STATUSES = {S.RETURNED, S.LOST_IN_TRANSIT, S.CANCELLED}

# Statuses whose stock has left the shelf but not the hub.
PACKED_STATUSES = {S.PACKED, S.ASSIGNED}

RETURNABLE_STATUSES = {S.REJECTED, S.RETURN_INITIATED, S.RTO}

GATE_ONLY_TARGETS = {S.RETURNED}
ADMIN_ONLY_TARGETS = {S.LOST_IN_TRANSIT}

REQUIRED_FIELDS: dict[OrderStatus, str] = {
    S.CANCELLED: "cancellation_reason",
    S.REJECTED: "rejection_reason",
    S.RETURN_INITIATED: "return_reason",
    S.HANDED_TO_COURIER: "courier_provider",
}


def allowed_targets(fulfillment_type: FulfillmentType, current: OrderStatus) -> set[OrderStatus]:
    return TRANSITIONS[fulfillment_type].get(current, set())


def can_transition(
    fulfillment_type: FulfillmentType, current: OrderStatus, target: OrderStatus
) -> bool:
    return target in allowed_targets(fulfillment_type, current)


def check_transition(
    fulfillment_type: FulfillmentType,
    current: OrderStatus,
    target: OrderStatus,
    *,
    actor_role: UserRole | None = None,
    via_gate: bool = False,
    fields: dict | None = None,
) -> None:
    """Raise if `current -> target` is not an edge the caller may take."""
    if not can_transition(fulfillment_type, current, target):
        raise InvalidTransition(
            f"Cannot move order from '{current.value}' to '{target.value}' "
            f"for {fulfillment_type.value} fulfillment",
            from_status=current.value,
            to_status=target.value,
        )
    if target in GATE_ONLY_TARGETS and not via_gate:
        raise InvalidTransition(
            "Orders can only be marked returned by processing a return handover",
            from_status=current.value,
            to_status=target.value,
        )
    if target in ADMIN_ONLY_TARGETS and actor_role != UserRole.ADMIN:
        raise PermissionDenied(f"Only an admin can mark an order {target.value}")

    fields = fields or {}
    required = REQUIRED_FIELDS.get(target)
    if required and not fields.get(required):
        raise ValidationFailed(f"'{required}' is required to move an order to {target.value}")
    if (
        target == S.DELIVERED
        and fulfillment_type != FulfillmentType.STORE
        and not (fields.get("proof_url") or fields.get("proof_signature"))
    ):
        raise ValidationFailed("Proof of delivery (photo URL or signature) is required")
