"""
Return gate.

Stock comes back only when an admin processes a handover line after
physically counting it. An order's `returned` status is a consequence of
that, never the cause.
"""
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_hub.models.models import ReturnHandover, ReturnHandoverItem, User
from dispatch_hub.schemas.return_schema import HandoverCreate, ProcessHandoverSchema
from dispatch_hub.schemas.status_schema import (
    ActivityKind,
    HandoverLineStatus,
    HandoverSource,
    HandoverStatus,
    OrderStatus,
    UserRole,
)
from dispatch_hub.services import manifest_service, order_service, rider_ledger_service
from dispatch_hub.services.state_machine import RETURNABLE_STATUSES
from dispatch_hub.utils.exceptions import (
    HandoverAlreadyProcessed,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ValidationFailed,
)
from dispatch_hub.utils.logger_config import setup_logger
from dispatch_hub.utils.utils import generate_handover_number

logger = setup_logger()


def _require_admin(actor: Optional[User], action: str) -> None:
    if actor is None or actor.role != UserRole.ADMIN:
        raise PermissionDenied(f"Only an admin can {action}")


async def initiate_return(
    db: AsyncSession, order_id: UUID, reason: str, actor: Optional[User] = None
):
    """Mark an order return_initiated. Stock is untouched."""
    order = await order_service.get_order(db, order_id)
    try:
        await order_service.apply_transition(
            db, order, OrderStatus.RETURN_INITIATED, actor,
            reason=reason,
            values={"return_reason": reason},
        )
        order_service.log_activity(db, order.id, ActivityKind.RETURN, actor, reason="Return initiated")
        await db.commit()
        return order
    except Exception:
        await db.rollback()
        raise


async def get_handover(db: AsyncSession, handover_id: UUID, for_update: bool = False) -> ReturnHandover:
    stmt = select(ReturnHandover).where(ReturnHandover.id == handover_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    handover = result.scalar_one_or_none()
    if handover is None:
        raise NotFound(f"Return handover {handover_id} not found")
    return handover


async def list_handovers(
    db: AsyncSession,
    *,
    status: Optional[HandoverStatus] = None,
    skip: int = 0,
    limit: int = 20,
) -> list[ReturnHandover]:
    stmt = select(ReturnHandover)
    if status is not None:
        stmt = stmt.where(ReturnHandover.status == status)
    stmt = stmt.order_by(ReturnHandover.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _open_claims(db: AsyncSession, order_ids: set[UUID]) -> dict[tuple[UUID, UUID], int]:
    """Units already claimed per (order, variant) on handovers that were not voided."""
    result = await db.execute(
        select(
            ReturnHandoverItem.order_id,
            ReturnHandoverItem.variant_id,
            func.sum(ReturnHandoverItem.claimed_quantity),
        )
        .join(ReturnHandover, ReturnHandover.id == ReturnHandoverItem.handover_id)
        .where(
            ReturnHandoverItem.order_id.in_(order_ids),
            ReturnHandover.status != HandoverStatus.VOIDED,
        )
        .group_by(ReturnHandoverItem.order_id, ReturnHandoverItem.variant_id)
    )
    return {(order_id, variant_id): int(total) for order_id, variant_id, total in result.all()}


async def create_handover(
    db: AsyncSession, data: HandoverCreate, actor: Optional[User] = None
) -> ReturnHandover:
    """
    Receive returned goods at the hub, pending verification. Claims for an
    order and variant, across every handover not voided, never exceed the
    shipped quantity.
    """
    try:
        if data.source == HandoverSource.RIDER:
            await rider_ledger_service.get_rider(db, data.rider_id)

        requested: dict[tuple[UUID, UUID], int] = {}
        for line in data.items:
            key = (line.order_id, line.variant_id)
            requested[key] = requested.get(key, 0) + line.quantity
        claimed = await _open_claims(db, {line.order_id for line in data.items})

        orders = {}
        for order_id, variant_id in requested:
            order = orders.get(order_id)
            if order is None:
                order = orders[order_id] = await order_service.get_order(db, order_id)
            if order.status not in RETURNABLE_STATUSES:
                raise InvalidTransition(
                    f"Order {order.order_number} is '{order.status.value}' and has no pending return",
                    from_status=order.status.value,
                )
            ordered = {item.variant_id: item.quantity for item in order.items}
            if variant_id not in ordered:
                raise ValidationFailed(
                    f"Variant {variant_id} is not part of order {order.order_number}"
                )
            already = claimed.get((order_id, variant_id), 0)
            if already + requested[(order_id, variant_id)] > ordered[variant_id]:
                raise ValidationFailed(
                    f"Claimed {requested[(order_id, variant_id)]} of variant {variant_id} "
                    f"({already} already on other handovers) but order "
                    f"{order.order_number} shipped {ordered[variant_id]}"
                )

        lines = [
            ReturnHandoverItem(
                order_id=line.order_id,
                variant_id=line.variant_id,
                claimed_quantity=line.quantity,
                condition=line.condition,
            )
            for line in data.items
        ]

        handover = ReturnHandover(
            handover_number=generate_handover_number(),
            source=data.source,
            rider_id=data.rider_id if data.source == HandoverSource.RIDER else None,
            courier_code=data.courier_code if data.source == HandoverSource.COURIER else None,
            status=HandoverStatus.PENDING_VERIFICATION,
            notes=data.notes,
            received_by=actor.id if actor is not None else None,
            items=lines,
        )
        db.add(handover)
        await db.flush()
        for order_id in {line.order_id for line in lines}:
            order_service.log_activity(
                db, order_id, ActivityKind.RETURN, actor,
                reason=f"Received at hub on {handover.handover_number}, pending verification",
            )
        await db.commit()
        await db.refresh(handover)
        logger.info(f"Return handover {handover.handover_number} created with {len(lines)} line(s)")
        return handover
    except Exception:
        await db.rollback()
        raise


async def process_handover(
    db: AsyncSession, handover_id: UUID, data: ProcessHandoverSchema, actor: User
) -> ReturnHandover:
    """
    Verify handover lines. Each verified line credits stock exactly once;
    disputed lines stay open and keep the handover pending.
    """
    _require_admin(actor, "process return handovers")
    try:
        handover = await get_handover(db, handover_id, for_update=True)
        if handover.status == HandoverStatus.PROCESSED:
            raise HandoverAlreadyProcessed(
                f"Handover {handover.handover_number} has already been processed"
            )
        if handover.status == HandoverStatus.VOIDED:
            raise InvalidTransition(f"Handover {handover.handover_number} was voided")

        lines = {line.id: line for line in handover.items}
        now = datetime.now(timezone.utc)
        touched_orders: set[UUID] = set()

        for submitted in data.lines:
            line = lines.get(submitted.line_id)
            if line is None:
                raise ValidationFailed(
                    f"Line {submitted.line_id} is not on handover {handover.handover_number}"
                )
            if line.status == HandoverLineStatus.VERIFIED:
                logger.info(f"Handover line {line.id} already verified; skipping")
                continue
            if submitted.disputed:
                line.status = HandoverLineStatus.DISPUTED
                line.discrepancy_note = submitted.note or "Disputed at verification"
                order_service.log_activity(
                    db, line.order_id, ActivityKind.RETURN, actor,
                    reason=f"Return line disputed: {line.discrepancy_note}",
                    extra={"handover_id": str(handover.id), "line_id": str(line.id)},
                )
                continue

            counted = submitted.verified_quantity + submitted.damaged_quantity
            if counted > line.claimed_quantity:
                raise ValidationFailed(
                    f"Counted {counted} units on line {line.id} but only {line.claimed_quantity} were claimed"
                )
            order = await order_service.get_order(db, line.order_id)
            if order.status not in RETURNABLE_STATUSES:
                raise InvalidTransition(
                    f"Order {order.order_number} is '{order.status.value}'; its return stock "
                    f"was already settled, void handover {handover.handover_number} instead",
                    from_status=order.status.value,
                )
            if submitted.verified_quantity:
                await order_service.adjust_stock(db, line.variant_id, submitted.verified_quantity)
            if submitted.damaged_quantity:
                await order_service.adjust_stock(
                    db, line.variant_id, submitted.damaged_quantity, column="damaged_stock"
                )

            line.verified_quantity = submitted.verified_quantity
            line.damaged_quantity = submitted.damaged_quantity
            line.status = HandoverLineStatus.VERIFIED
            line.verified_by = actor.id
            line.verified_at = now
            missing = line.claimed_quantity - counted
            if missing:
                line.discrepancy_note = submitted.note or f"{missing} unit(s) claimed but not received"
                order_service.log_activity(
                    db, line.order_id, ActivityKind.RETURN, actor,
                    reason=f"Return discrepancy: {line.discrepancy_note}",
                    extra={
                        "handover_id": str(handover.id),
                        "line_id": str(line.id),
                        "claimed": line.claimed_quantity,
                        "verified": line.verified_quantity,
                        "damaged": line.damaged_quantity,
                    },
                )
                logger.warning(
                    f"Handover {handover.handover_number} line {line.id}: claimed {line.claimed_quantity}, "
                    f"verified {line.verified_quantity}, damaged {line.damaged_quantity}"
                )
            touched_orders.add(line.order_id)

        for order_id in touched_orders:
            order_lines = [line for line in handover.items if line.order_id == order_id]
            if any(line.status != HandoverLineStatus.VERIFIED for line in order_lines):
                continue
            order = await order_service.get_order(db, order_id)
            if order.status not in RETURNABLE_STATUSES:
                continue
            await order_service.apply_transition(
                db, order, OrderStatus.RETURNED, actor,
                reason=f"Verified on handover {handover.handover_number}",
                via_gate=True,
                extra={"handover_id": str(handover.id)},
            )
            await manifest_service.mark_line_returned(db, order_id)

        if all(line.status == HandoverLineStatus.VERIFIED for line in handover.items):
            handover.status = HandoverStatus.PROCESSED
            handover.processed_by = actor.id
            handover.processed_at = now

        await db.commit()
        await db.refresh(handover)
        logger.info(f"Handover {handover.handover_number} processed by {actor.email}: {handover.status.value}")
        return handover
    except Exception:
        await db.rollback()
        raise


async def void_handover(
    db: AsyncSession, handover_id: UUID, reason: str, actor: User
) -> ReturnHandover:
    _require_admin(actor, "void return handovers")
    try:
        handover = await get_handover(db, handover_id, for_update=True)
        if handover.status != HandoverStatus.PENDING_VERIFICATION:
            raise InvalidTransition(
                f"Handover {handover.handover_number} is {handover.status.value} and cannot be voided"
            )
        if any(line.status == HandoverLineStatus.VERIFIED for line in handover.items):
            raise InvalidTransition(
                f"Handover {handover.handover_number} has verified lines; stock was already credited"
            )
        handover.status = HandoverStatus.VOIDED
        handover.notes = f"Voided: {reason}"
        handover.processed_by = actor.id
        handover.processed_at = datetime.now(timezone.utc)
        await db.commit()
        logger.info(f"Handover {handover.handover_number} voided by {actor.email}")
        return handover
    except Exception:
        await db.rollback()
        raise
