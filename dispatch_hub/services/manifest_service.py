from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_hub.models.models import Manifest, ManifestItem, Order, User
from dispatch_hub.schemas.manifest_schema import ManifestCreate, OutcomeCreate, RescheduleCreate
from dispatch_hub.schemas.status_schema import (
    ActivityKind,
    FulfillmentType,
    ManifestKind,
    ManifestOutcome,
    ManifestStatus,
    OrderStatus,
    PaymentMethod,
    UserRole,
)
from dispatch_hub.services import order_service, rider_ledger_service
from dispatch_hub.utils.exceptions import (
    InvalidTransition,
    NotFound,
    OrderAlreadyManifested,
    PermissionDenied,
    ValidationFailed,
)
from dispatch_hub.utils.logger_config import setup_logger
from dispatch_hub.utils.utils import generate_manifest_number

logger = setup_logger()


async def get_manifest(db: AsyncSession, manifest_id: UUID) -> Manifest:
    result = await db.execute(select(Manifest).where(Manifest.id == manifest_id))
    manifest = result.scalar_one_or_none()
    if manifest is None:
        raise NotFound(f"Manifest {manifest_id} not found")
    return manifest


async def list_manifests(
    db: AsyncSession,
    *,
    rider_id: Optional[UUID] = None,
    status: Optional[ManifestStatus] = None,
    skip: int = 0,
    limit: int = 20,
) -> list[Manifest]:
    stmt = select(Manifest)
    if rider_id is not None:
        stmt = stmt.where(Manifest.rider_id == rider_id)
    if status is not None:
        stmt = stmt.where(Manifest.status == status)
    stmt = stmt.order_by(Manifest.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


def _active_line(manifest: Manifest, order_id: UUID) -> ManifestItem:
    for line in manifest.active_items:
        if line.order_id == order_id:
            return line
    raise NotFound(f"Order {order_id} is not on manifest {manifest.manifest_number}")


async def _ensure_not_manifested(db: AsyncSession, order_ids: list[UUID]) -> None:
    result = await db.execute(
        select(ManifestItem.order_id, Manifest.manifest_number)
        .join(Manifest, Manifest.id == ManifestItem.manifest_id)
        .where(
            ManifestItem.order_id.in_(order_ids),
            ManifestItem.removed_at.is_(None),
            Manifest.status.in_([ManifestStatus.DRAFT, ManifestStatus.DISPATCHED]),
        )
    )
    taken = result.first()
    if taken is not None:
        raise OrderAlreadyManifested(
            f"Order {taken.order_id} is already on open manifest {taken.manifest_number}",
            order_id=str(taken.order_id),
            manifest_number=taken.manifest_number,
        )


async def _attach_orders(
    db: AsyncSession, manifest: Manifest, order_ids: list[UUID], actor: Optional[User]
) -> None:
    """Validate and add packed orders to a draft manifest. Does not commit."""
    order_ids = list(dict.fromkeys(order_ids))
    await _ensure_not_manifested(db, order_ids)
    for order_id in order_ids:
        order = await order_service.get_order(db, order_id)
        if manifest.kind == ManifestKind.COURIER:
            if order.fulfillment_type != FulfillmentType.OUTSIDE_VALLEY:
                raise ValidationFailed(
                    f"Order {order.order_number} is not an outside valley order"
                )
            if order.status != OrderStatus.PACKED:
                error = InvalidTransition(
                    f"Order {order.order_number} must be packed before courier handover",
                    from_status=order.status.value,
                )
                await order_service.record_rejected_attempt(
                    db, order.id, order.status, OrderStatus.HANDED_TO_COURIER, actor, error
                )
                raise error
        else:
            if order.fulfillment_type != FulfillmentType.INSIDE_VALLEY:
                raise ValidationFailed(
                    f"Order {order.order_number} is not an inside valley order"
                )
            # Rider assignment is packed -> assigned, so the edge check covers "must be packed".
            await order_service.apply_transition(
                db,
                order,
                OrderStatus.ASSIGNED,
                actor,
                reason=f"Assigned on manifest {manifest.manifest_number}",
                values={"rider_id": manifest.rider_id},
            )
            order_service.log_activity(
                db, order.id, ActivityKind.ASSIGNMENT, actor,
                extra={"manifest_id": str(manifest.id), "rider_id": str(manifest.rider_id)},
            )
        db.add(ManifestItem(manifest_id=manifest.id, order_id=order.id))
    await db.flush()


async def create_manifest(db: AsyncSession, data: ManifestCreate, actor: Optional[User] = None) -> Manifest:
    """Create a draft manifest for one rider or one courier."""
    try:
        if data.rider_id is not None:
            await rider_ledger_service.get_rider(db, data.rider_id)
        manifest = Manifest(
            manifest_number=generate_manifest_number(),
            kind=ManifestKind.RIDER if data.rider_id is not None else ManifestKind.COURIER,
            rider_id=data.rider_id,
            courier_code=data.courier_code,
            status=ManifestStatus.DRAFT,
            created_by=actor.id if actor is not None else None,
        )
        db.add(manifest)
        await db.flush()
        if data.order_ids:
            await _attach_orders(db, manifest, data.order_ids, actor)
        await db.commit()
        await db.refresh(manifest)
        logger.info(
            f"Manifest {manifest.manifest_number} created with {len(manifest.items)} order(s)"
        )
        return manifest
    except Exception:
        await db.rollback()
        raise


async def add_orders(
    db: AsyncSession, manifest_id: UUID, order_ids: list[UUID], actor: Optional[User] = None
) -> Manifest:
    try:
        manifest = await get_manifest(db, manifest_id)
        if manifest.status != ManifestStatus.DRAFT:
            raise InvalidTransition(
                f"Manifest {manifest.manifest_number} is {manifest.status.value}; orders are frozen"
            )
        await _attach_orders(db, manifest, order_ids, actor)
        await db.commit()
        await db.refresh(manifest)
        return manifest
    except Exception:
        await db.rollback()
        raise


async def remove_order(
    db: AsyncSession, manifest_id: UUID, order_id: UUID, actor: Optional[User] = None,
    reason: Optional[str] = None,
) -> Manifest:
    """Take an order off a draft manifest; a rider order goes back to packed."""
    try:
        manifest = await get_manifest(db, manifest_id)
        if manifest.status != ManifestStatus.DRAFT:
            raise InvalidTransition(
                f"Manifest {manifest.manifest_number} is {manifest.status.value}; use reschedule"
            )
        line = _active_line(manifest, order_id)
        if manifest.kind == ManifestKind.RIDER:
            order = await order_service.get_order(db, order_id)
            await order_service.apply_transition(
                db, order, OrderStatus.PACKED, actor,
                reason=reason or f"Removed from manifest {manifest.manifest_number}",
                values={"rider_id": None, "packed_at": order.packed_at},
            )
        line.removed_at = datetime.now(timezone.utc)
        line.note = reason
        await db.commit()
        return manifest
    except Exception:
        await db.rollback()
        raise


async def dispatch(db: AsyncSession, manifest_id: UUID, actor: Optional[User] = None) -> Manifest:
    """
    draft -> dispatched, once. Rider orders go out for delivery, courier
    orders are handed to the courier. Membership is frozen from here on.
    """
    try:
        manifest = await get_manifest(db, manifest_id)
        if not manifest.active_items:
            raise ValidationFailed(f"Manifest {manifest.manifest_number} has no orders")

        now = datetime.now(timezone.utc)
        result = await db.execute(
            update(Manifest)
            .where(Manifest.id == manifest.id, Manifest.status == ManifestStatus.DRAFT)
            .values(status=ManifestStatus.DISPATCHED, dispatched_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidTransition(
                f"Manifest {manifest.manifest_number} has already been dispatched"
            )

        for line in manifest.active_items:
            order = await order_service.get_order(db, line.order_id)
            if manifest.kind == ManifestKind.RIDER:
                await order_service.apply_transition(
                    db, order, OrderStatus.OUT_FOR_DELIVERY, actor,
                    reason=f"Dispatched on manifest {manifest.manifest_number}",
                )
            else:
                await order_service.apply_transition(
                    db, order, OrderStatus.HANDED_TO_COURIER, actor,
                    reason=f"Handed to {manifest.courier_code.value} on {manifest.manifest_number}",
                    values={"courier_provider": manifest.courier_code},
                )
        await db.commit()
        await db.refresh(manifest)
        logger.info(f"Manifest {manifest.manifest_number} dispatched ({len(manifest.active_items)} orders)")
        return manifest
    except Exception:
        await db.rollback()
        raise


def _ensure_owner(manifest: Manifest, actor: Optional[User]) -> None:
    if actor is not None and actor.role == UserRole.RIDER and manifest.rider_id != actor.id:
        raise PermissionDenied("Riders can only update their own manifests")


async def record_outcome(
    db: AsyncSession, manifest_id: UUID, data: OutcomeCreate, actor: Optional[User] = None
) -> Manifest:
    """
    Record delivered/rejected for one line. The manifest stays open; a
    rejected order stays on it and goes to the return gate.
    """
    try:
        manifest = await get_manifest(db, manifest_id)
        _ensure_owner(manifest, actor)
        if manifest.status != ManifestStatus.DISPATCHED:
            raise InvalidTransition(
                f"Outcomes can only be recorded on dispatched manifests "
                f"({manifest.manifest_number} is {manifest.status.value})"
            )
        line = _active_line(manifest, data.order_id)
        if line.outcome != ManifestOutcome.PENDING:
            raise InvalidTransition(
                f"Outcome for order {data.order_id} already recorded as {line.outcome.value}"
            )
        order = await order_service.get_order(db, data.order_id)

        if data.outcome == ManifestOutcome.DELIVERED:
            await order_service.apply_transition(
                db, order, OrderStatus.DELIVERED, actor,
                reason="Delivered",
                values={"proof_url": data.proof_url, "proof_signature": data.signature},
            )
            if (
                manifest.kind == ManifestKind.RIDER
                and order.payment_method == PaymentMethod.COD
                and order.cod_due > 0
            ):
                await rider_ledger_service.record_collection(
                    db, manifest.rider_id, order.id, order.cod_due, actor=actor, commit=False
                )
        elif manifest.kind == ManifestKind.RIDER:
            await order_service.apply_transition(
                db, order, OrderStatus.REJECTED, actor,
                reason=data.reason,
                values={"rejection_reason": data.reason},
            )
        else:
            await order_service.apply_transition(
                db, order, OrderStatus.RTO, actor,
                reason=data.reason or "Returned to origin by courier",
            )

        line.outcome = data.outcome
        line.outcome_at = datetime.now(timezone.utc)
        line.proof_url = data.proof_url
        line.note = data.reason
        await db.commit()
        logger.info(
            f"Manifest {manifest.manifest_number}: order {order.order_number} {data.outcome.value}"
        )
        return manifest
    except Exception:
        await db.rollback()
        raise


async def reschedule_order(
    db: AsyncSession, manifest_id: UUID, data: RescheduleCreate, actor: Optional[User] = None
) -> Manifest:
    """
    The one way to change membership after dispatch: the order leaves the
    manifest and returns to packed for another run.
    """
    manifest = await get_manifest(db, manifest_id)
    if manifest.status == ManifestStatus.DRAFT:
        return await remove_order(db, manifest_id, data.order_id, actor, reason=data.reason)
    try:
        _ensure_owner(manifest, actor)
        if manifest.status != ManifestStatus.DISPATCHED or manifest.kind != ManifestKind.RIDER:
            raise InvalidTransition("Only dispatched rider manifests can reschedule orders")
        line = _active_line(manifest, data.order_id)
        if line.outcome != ManifestOutcome.PENDING:
            raise InvalidTransition(
                f"Order {data.order_id} already has outcome {line.outcome.value}"
            )
        order = await order_service.get_order(db, data.order_id)
        await order_service.apply_transition(
            db, order, OrderStatus.PACKED, actor,
            reason=f"Rescheduled: {data.reason}",
            values={
                "rider_id": None,
                "packed_at": order.packed_at,
                "reschedule_count": order.reschedule_count + 1,
            },
        )
        line.removed_at = datetime.now(timezone.utc)
        line.note = f"Rescheduled: {data.reason}"
        await db.commit()
        logger.info(f"Order {order.order_number} rescheduled off {manifest.manifest_number}")
        return manifest
    except Exception:
        await db.rollback()
        raise


async def close_manifest(db: AsyncSession, manifest_id: UUID, actor: Optional[User] = None) -> Manifest:
    """dispatched -> settled for a rider manifest whose lines all have outcomes."""
    try:
        manifest = await get_manifest(db, manifest_id)
        if manifest.kind == ManifestKind.COURIER:
            raise InvalidTransition("Courier manifests close when their settlement is verified")
        if not manifest.eligible_for_settlement:
            raise InvalidTransition(
                f"Manifest {manifest.manifest_number} is not eligible for settlement"
            )
        result = await db.execute(
            update(Manifest)
            .where(Manifest.id == manifest.id, Manifest.status == ManifestStatus.DISPATCHED)
            .values(status=ManifestStatus.SETTLED, settled_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidTransition(f"Manifest {manifest.manifest_number} was closed concurrently")
        await db.commit()
        await db.refresh(manifest)
        return manifest
    except Exception:
        await db.rollback()
        raise


async def apply_courier_outcome(db: AsyncSession, order: Order, status: OrderStatus) -> None:
    """Mirror a courier-reported delivery or RTO onto its manifest line. Does not commit."""
    outcome = {
        OrderStatus.DELIVERED: ManifestOutcome.DELIVERED,
        OrderStatus.RTO: ManifestOutcome.REJECTED,
    }.get(status)
    if outcome is None:
        return
    line = await order_service.open_manifest_line(db, order.id)
    if line is not None and line.outcome == ManifestOutcome.PENDING:
        line.outcome = outcome
        line.outcome_at = datetime.now(timezone.utc)


async def mark_line_returned(db: AsyncSession, order_id: UUID) -> None:
    """The gate verified the goods: the rejected line becomes returned. Does not commit."""
    result = await db.execute(
        select(ManifestItem).where(
            ManifestItem.order_id == order_id,
            ManifestItem.removed_at.is_(None),
            ManifestItem.outcome == ManifestOutcome.REJECTED,
        )
    )
    for line in result.scalars().all():
        line.outcome = ManifestOutcome.RETURNED
