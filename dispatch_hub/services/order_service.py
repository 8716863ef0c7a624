from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from dispatch_hub.models.models import (
    Manifest,
    ManifestItem,
    Order,
    OrderActivity,
    OrderItem,
    ProductVariant,
    User,
)
from dispatch_hub.schemas.order_schema import OrderCreate
from dispatch_hub.schemas.status_schema import (
    ActivityKind,
    FulfillmentType,
    ManifestStatus,
    OrderStatus,
    PaymentMethod,
)
from dispatch_hub.services.state_machine import PACKED_STATUSES, check_transition
from dispatch_hub.utils.exceptions import (
    InsufficientStock,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from dispatch_hub.utils.logger_config import setup_logger
from dispatch_hub.utils.utils import generate_order_number, to_money

logger = setup_logger()

# Columns stamped when an order enters a status.
STATUS_TIMESTAMPS = {
    OrderStatus.PACKED: "packed_at",
    OrderStatus.OUT_FOR_DELIVERY: "dispatched_at",
    OrderStatus.HANDED_TO_COURIER: "dispatched_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.RETURNED: "returned_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

# Request fields copied onto the order row with the transition.
TRANSITION_COLUMNS = {
    "cancellation_reason",
    "rejection_reason",
    "return_reason",
    "courier_provider",
    "proof_url",
    "proof_signature",
}

# Targets that carry side effects and have their own operation.
DELEGATED_TARGETS = {
    OrderStatus.PACKED: "pack",
    OrderStatus.CANCELLED: "cancel",
    OrderStatus.ASSIGNED: "manifest",
    OrderStatus.OUT_FOR_DELIVERY: "manifest dispatch",
    OrderStatus.HANDED_TO_COURIER: "courier handover",
    OrderStatus.RETURNED: "return handover processing",
}

# Targets owned by the manifest while the order sits on an open one.
MANIFEST_TARGETS = {
    OrderStatus.DELIVERED: "manifest outcome",
    OrderStatus.REJECTED: "manifest outcome",
    OrderStatus.IN_TRANSIT: "courier status sync",
    OrderStatus.RTO: "courier status sync",
}


def _actor_role(actor: Optional[User]) -> str:
    return actor.role.value if actor is not None else "system"


def log_activity(
    db: AsyncSession,
    order_id: UUID,
    kind: ActivityKind,
    actor: Optional[User] = None,
    *,
    from_status: Optional[OrderStatus] = None,
    to_status: Optional[OrderStatus] = None,
    reason: Optional[str] = None,
    extra: Optional[dict] = None,
) -> OrderActivity:
    """Stage an activity row in the current transaction."""
    activity = OrderActivity(
        order_id=order_id,
        kind=kind,
        actor_id=actor.id if actor is not None else None,
        actor_role=_actor_role(actor),
        from_status=from_status,
        to_status=to_status,
        reason=reason,
        extra=extra,
    )
    db.add(activity)
    return activity


async def record_rejected_attempt(
    db: AsyncSession,
    order_id: UUID,
    from_status: OrderStatus,
    target: OrderStatus,
    actor: Optional[User],
    error: InvalidTransition,
) -> None:
    """
    Discard the failed operation and persist only the refused attempt.

    The rollback expires every loaded instance, the actor included, so its
    id and role are read beforehand.
    """
    actor_id = actor.id if actor is not None else None
    actor_role = _actor_role(actor)
    await db.rollback()
    db.add(
        OrderActivity(
            order_id=order_id,
            kind=ActivityKind.TRANSITION_REJECTED,
            actor_id=actor_id,
            actor_role=actor_role,
            from_status=from_status,
            to_status=target,
            reason=error.message,
        )
    )
    await db.commit()
    logger.warning(
        f"Rejected transition for order {order_id}: {from_status.value} -> {target.value} ({error.message})"
    )


async def get_order(db: AsyncSession, order_id: UUID, for_update: bool = False) -> Order:
    stmt = select(Order).where(Order.id == order_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    return order


async def get_order_by_tracking_id(db: AsyncSession, tracking_id: str) -> Optional[Order]:
    result = await db.execute(select(Order).where(Order.tracking_id == tracking_id))
    return result.scalar_one_or_none()


async def list_orders(
    db: AsyncSession,
    *,
    status: Optional[OrderStatus] = None,
    fulfillment_type: Optional[FulfillmentType] = None,
    rider_id: Optional[UUID] = None,
    skip: int = 0,
    limit: int = 20,
) -> list[Order]:
    stmt = select(Order)
    if status is not None:
        stmt = stmt.where(Order.status == status)
    if fulfillment_type is not None:
        stmt = stmt.where(Order.fulfillment_type == fulfillment_type)
    if rider_id is not None:
        stmt = stmt.where(Order.rider_id == rider_id)
    stmt = stmt.order_by(Order.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_history(db: AsyncSession, order_id: UUID) -> list[OrderActivity]:
    await get_order(db, order_id)
    result = await db.execute(
        select(OrderActivity)
        .where(OrderActivity.order_id == order_id)
        .order_by(OrderActivity.created_at, OrderActivity.id)
    )
    return list(result.scalars().all())


async def create_order(db: AsyncSession, data: OrderCreate, actor: Optional[User] = None) -> Order:
    """Take an order in at `intake`. Stock is not touched until packing."""
    variant_ids = {item.variant_id for item in data.items}
    result = await db.execute(select(ProductVariant).where(ProductVariant.id.in_(variant_ids)))
    variants = {variant.id: variant for variant in result.scalars().all()}
    missing = variant_ids - variants.keys()
    if missing:
        raise ValidationFailed(
            f"Unknown product variant(s): {', '.join(str(v) for v in missing)}"
        )
    if data.fulfillment_type == FulfillmentType.OUTSIDE_VALLEY and not data.destination_branch:
        raise ValidationFailed("destination_branch is required for outside valley orders")

    subtotal = sum(
        (to_money(item.unit_price) * item.quantity for item in data.items), Decimal("0.00")
    )
    total = to_money(subtotal + data.shipping_charge - data.discount)
    if total < 0:
        raise ValidationFailed("Discount cannot exceed the order total")
    paid = to_money(data.paid_amount)
    if data.payment_method == PaymentMethod.PREPAID:
        paid = total
    cod_due = max(total - paid, Decimal("0.00"))

    try:
        order = Order(
            order_number=generate_order_number(),
            status=OrderStatus.INTAKE,
            fulfillment_type=data.fulfillment_type,
            customer_name=data.customer_name,
            customer_phone=data.customer_phone,
            alt_phone=data.alt_phone,
            shipping_address=data.shipping_address,
            city=data.city,
            destination_branch=(data.destination_branch or "").strip().upper() or None,
            delivery_instructions=data.delivery_instructions,
            payment_method=data.payment_method,
            subtotal=to_money(subtotal),
            shipping_charge=to_money(data.shipping_charge),
            discount=to_money(data.discount),
            paid_amount=paid,
            cod_due=cod_due,
            created_by=actor.id if actor is not None else None,
            items=[
                OrderItem(
                    variant_id=item.variant_id,
                    product_name=variants[item.variant_id].name,
                    quantity=item.quantity,
                    unit_price=to_money(item.unit_price),
                )
                for item in data.items
            ],
        )
        db.add(order)
        await db.flush()
        log_activity(
            db, order.id, ActivityKind.STATUS_CHANGE, actor, to_status=OrderStatus.INTAKE,
            reason="Order created",
        )
        await db.commit()
        await db.refresh(order)
        logger.info(f"Order {order.order_number} created ({order.fulfillment_type.value})")
        return order
    except Exception:
        await db.rollback()
        raise


async def apply_transition(
    db: AsyncSession,
    order: Order,
    target: OrderStatus,
    actor: Optional[User] = None,
    *,
    reason: Optional[str] = None,
    via_gate: bool = False,
    values: Optional[dict] = None,
    extra: Optional[dict] = None,
) -> Order:
    """
    Move `order` to `target` with a compare-and-swap on its current status.

    Does not commit. On a refused edge the session is rolled back, the
    refusal is committed to the activity log and InvalidTransition is raised.
    """
    expected = order.status
    values = dict(values or {})
    try:
        check_transition(
            order.fulfillment_type,
            expected,
            target,
            actor_role=actor.role if actor is not None else None,
            via_gate=via_gate,
            fields={
                **{k: getattr(order, k) for k in TRANSITION_COLUMNS},
                **values,
            },
        )
    except InvalidTransition as e:
        await record_rejected_attempt(db, order.id, expected, target, actor, e)
        raise

    now = datetime.now(timezone.utc)
    stamp = STATUS_TIMESTAMPS.get(target)
    if stamp and stamp not in values:
        values[stamp] = now
    values["updated_at"] = now

    result = await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == expected)
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        error = InvalidTransition(
            f"Order {order.order_number} is no longer '{expected.value}'",
            from_status=expected.value,
            to_status=target.value,
        )
        await record_rejected_attempt(db, order.id, expected, target, actor, error)
        raise error

    log_activity(
        db,
        order.id,
        ActivityKind.STATUS_CHANGE,
        actor,
        from_status=expected,
        to_status=target,
        reason=reason,
        extra=extra,
    )
    set_committed_value(order, "status", target)
    for key, value in values.items():
        set_committed_value(order, key, value)
    await db.flush()
    logger.info(f"Order {order.order_number}: {expected.value} -> {target.value}")
    return order


async def transition(
    db: AsyncSession,
    order_id: UUID,
    target: OrderStatus,
    actor: Optional[User] = None,
    *,
    reason: Optional[str] = None,
    **fields,
) -> Order:
    """Direct status change for edges without side effects of their own."""
    order = await get_order(db, order_id)
    operation = DELEGATED_TARGETS.get(target)
    if operation is None and target in MANIFEST_TARGETS:
        if await open_manifest_line(db, order.id) is not None:
            operation = MANIFEST_TARGETS[target]
    if operation is not None:
        error = InvalidTransition(
            f"'{target.value}' is set by the {operation} operation, "
            "not by a direct status change",
            from_status=order.status.value,
            to_status=target.value,
        )
        await record_rejected_attempt(db, order.id, order.status, target, actor, error)
        raise error

    values = {k: v for k, v in fields.items() if k in TRANSITION_COLUMNS and v is not None}
    if target == OrderStatus.REJECTED and reason and "rejection_reason" not in values:
        values["rejection_reason"] = reason
    if target == OrderStatus.RETURN_INITIATED and reason and "return_reason" not in values:
        values["return_reason"] = reason
    try:
        await apply_transition(db, order, target, actor, reason=reason, values=values)
        await db.commit()
        return order
    except Exception:
        await db.rollback()
        raise


async def adjust_stock(db: AsyncSession, variant_id: UUID, delta: int, *, column: str = "stock") -> None:
    """Atomic relative stock update. Decrements never take stock below zero."""
    col = getattr(ProductVariant, column)
    stmt = update(ProductVariant).where(ProductVariant.id == variant_id)
    if delta < 0:
        stmt = stmt.where(col >= -delta)
    result = await db.execute(
        stmt.values({column: col + delta}).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientStock(
            f"Not enough stock for variant {variant_id} (needed {-delta})",
            variant_id=str(variant_id),
            requested=-delta,
        )


async def pack_order(db: AsyncSession, order_id: UUID, actor: Optional[User] = None) -> Order:
    """
    confirmed -> packed, decrementing stock for every line in the same
    transaction. Nothing is written if any line is short.
    """
    order = await get_order(db, order_id)
    try:
        await apply_transition(db, order, OrderStatus.PACKED, actor, reason="Packed")
        for item in order.items:
            await adjust_stock(db, item.variant_id, -item.quantity)
        await db.commit()
        logger.info(f"Packed order {order.order_number}; stock reserved for {len(order.items)} line(s)")
        return order
    except InsufficientStock as e:
        await db.rollback()
        logger.warning(f"Cannot pack order {order_id}: {e.message}")
        raise
    except Exception:
        await db.rollback()
        raise


async def open_manifest_line(db: AsyncSession, order_id: UUID) -> Optional[ManifestItem]:
    result = await db.execute(
        select(ManifestItem)
        .join(Manifest, Manifest.id == ManifestItem.manifest_id)
        .where(
            ManifestItem.order_id == order_id,
            ManifestItem.removed_at.is_(None),
            Manifest.status.in_([ManifestStatus.DRAFT, ManifestStatus.DISPATCHED]),
        )
    )
    return result.scalars().first()


async def cancel_order(
    db: AsyncSession, order_id: UUID, reason: str, actor: Optional[User] = None
) -> Order:
    """
    Cancel before dispatch. A packed order gives its stock back and leaves
    any draft manifest it was on.
    """
    order = await get_order(db, order_id)
    was_packed = order.status in PACKED_STATUSES
    try:
        await apply_transition(
            db,
            order,
            OrderStatus.CANCELLED,
            actor,
            reason=reason,
            values={"cancellation_reason": reason, "rider_id": None},
        )
        if was_packed:
            for item in order.items:
                await adjust_stock(db, item.variant_id, item.quantity)
            line = await open_manifest_line(db, order.id)
            if line is not None:
                line.removed_at = datetime.now(timezone.utc)
                line.note = f"Order cancelled: {reason}"
        await db.commit()
        return order
    except Exception:
        await db.rollback()
        raise


async def mark_lost_in_transit(
    db: AsyncSession, order_id: UUID, actor: User, reason: Optional[str] = None
) -> Order:
    order = await get_order(db, order_id)
    try:
        await apply_transition(
            db, order, OrderStatus.LOST_IN_TRANSIT, actor,
            reason=reason or "Marked lost in transit",
        )
        await db.commit()
        return order
    except Exception:
        await db.rollback()
        raise
