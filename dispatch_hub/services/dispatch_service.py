"""
Dispatch orchestrator.

The one surface routes talk to: it applies role gates, calls the ledger,
manifest, return and courier services, and projects orders through the
caller's role schema.
"""
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_hub.models.models import Manifest, Order, User
from dispatch_hub.schemas.ledger_schema import (
    CashHandoverCreate,
    CourierSettlementRequest,
    RiderBalanceResponse,
    SettlementRequest,
    SettlementVerify,
)
from dispatch_hub.schemas.logistics_schema import (
    BookingCreate,
    BulkBookingResult,
    CourierHandoverCreate,
    CourierHandoverResult,
    TrackingSyncResponse,
    WebhookAck,
)
from dispatch_hub.schemas.manifest_schema import (
    ManifestCreate,
    OutcomeCreate,
    RescheduleCreate,
)
from dispatch_hub.schemas.order_schema import (
    OrderAdminResponse,
    OrderCreate,
    OrderOperatorResponse,
    OrderRiderResponse,
    OrderSummaryResponse,
    OrderTransitionRequest,
)
from dispatch_hub.schemas.return_schema import HandoverCreate, ProcessHandoverSchema
from dispatch_hub.schemas.status_schema import (
    CourierProviderCode,
    FulfillmentType,
    OrderStatus,
    SettlementStatus,
    UserRole,
)
from dispatch_hub.services import (
    courier_sync_service,
    manifest_service,
    order_service,
    return_service,
    rider_ledger_service,
)
from dispatch_hub.utils.exceptions import PermissionDenied, ValidationFailed
from dispatch_hub.utils.logger_config import setup_logger

logger = setup_logger()

ROLE_ORDER_SCHEMAS = {
    UserRole.ADMIN: OrderAdminResponse,
    UserRole.MANAGER: OrderAdminResponse,
    UserRole.OPERATOR: OrderOperatorResponse,
    UserRole.RIDER: OrderRiderResponse,
    UserRole.VIEWER: OrderSummaryResponse,
}

STAFF = (UserRole.ADMIN, UserRole.MANAGER, UserRole.OPERATOR)
FINANCE = (UserRole.ADMIN, UserRole.MANAGER)
READERS = STAFF + (UserRole.VIEWER,)


def _require(actor: User, roles: tuple[UserRole, ...], action: str) -> None:
    if actor.role not in roles:
        raise PermissionDenied(f"A {actor.role.value} cannot {action}")


def _require_self_or(actor: User, rider_id: UUID, roles: tuple[UserRole, ...], action: str) -> None:
    if actor.role == UserRole.RIDER and actor.id == rider_id:
        return
    _require(actor, roles, action)


def project_order(order: Order, role: UserRole):
    """Role-specific view of an order."""
    return ROLE_ORDER_SCHEMAS[role].model_validate(order)


# Orders


async def create_order(db: AsyncSession, actor: User, data: OrderCreate):
    _require(actor, STAFF, "create orders")
    order = await order_service.create_order(db, data, actor)
    return project_order(order, actor.role)


async def list_orders(
    db: AsyncSession,
    actor: User,
    *,
    status: Optional[OrderStatus] = None,
    fulfillment_type: Optional[FulfillmentType] = None,
    rider_id: Optional[UUID] = None,
    skip: int = 0,
    limit: int = 20,
) -> list:
    if actor.role == UserRole.RIDER:
        rider_id = actor.id
    orders = await order_service.list_orders(
        db, status=status, fulfillment_type=fulfillment_type, rider_id=rider_id,
        skip=skip, limit=limit,
    )
    return [project_order(order, actor.role) for order in orders]


async def _visible_order(db: AsyncSession, actor: User, order_id: UUID) -> Order:
    order = await order_service.get_order(db, order_id)
    if actor.role == UserRole.RIDER and order.rider_id != actor.id:
        raise PermissionDenied("Riders can only view orders assigned to them")
    return order


async def get_order(db: AsyncSession, actor: User, order_id: UUID):
    order = await _visible_order(db, actor, order_id)
    return project_order(order, actor.role)


async def get_history(db: AsyncSession, actor: User, order_id: UUID):
    await _visible_order(db, actor, order_id)
    return await order_service.get_history(db, order_id)


async def transition_order(
    db: AsyncSession, actor: User, order_id: UUID, data: OrderTransitionRequest
):
    _require(actor, STAFF, "change order status")
    if data.status == OrderStatus.LOST_IN_TRANSIT:
        return await mark_lost(db, actor, order_id, data.reason)
    order = await order_service.transition(
        db, order_id, data.status, actor,
        reason=data.reason,
        courier_provider=data.courier_provider,
        proof_url=data.proof_url,
        proof_signature=data.proof_signature,
    )
    return project_order(order, actor.role)


async def pack_order(db: AsyncSession, actor: User, order_id: UUID):
    # Riders have no pack capability
    _require(actor, STAFF, "pack orders")
    order = await order_service.pack_order(db, order_id, actor)
    return project_order(order, actor.role)


async def cancel_order(db: AsyncSession, actor: User, order_id: UUID, reason: str):
    _require(actor, STAFF, "cancel orders")
    order = await order_service.cancel_order(db, order_id, reason, actor)
    return project_order(order, actor.role)


async def mark_lost(db: AsyncSession, actor: User, order_id: UUID, reason: Optional[str] = None):
    _require(actor, (UserRole.ADMIN,), "mark orders lost in transit")
    order = await order_service.mark_lost_in_transit(db, order_id, actor, reason)
    return project_order(order, actor.role)


# Manifests


async def _visible_manifest(db: AsyncSession, actor: User, manifest_id: UUID) -> Manifest:
    manifest = await manifest_service.get_manifest(db, manifest_id)
    if actor.role == UserRole.RIDER:
        if manifest.rider_id != actor.id:
            raise PermissionDenied("Riders can only view their own manifests")
    else:
        _require(actor, READERS, "view manifests")
    return manifest


async def get_manifest(db: AsyncSession, actor: User, manifest_id: UUID) -> Manifest:
    return await _visible_manifest(db, actor, manifest_id)


async def list_manifests(db: AsyncSession, actor: User, **filters) -> list[Manifest]:
    if actor.role == UserRole.RIDER:
        filters["rider_id"] = actor.id
    return await manifest_service.list_manifests(db, **filters)


async def create_manifest(db: AsyncSession, actor: User, data: ManifestCreate) -> Manifest:
    _require(actor, STAFF, "create manifests")
    return await manifest_service.create_manifest(db, data, actor)


async def add_manifest_orders(
    db: AsyncSession, actor: User, manifest_id: UUID, order_ids: list[UUID]
) -> Manifest:
    _require(actor, STAFF, "edit manifests")
    return await manifest_service.add_orders(db, manifest_id, order_ids, actor)


async def remove_manifest_order(
    db: AsyncSession, actor: User, manifest_id: UUID, order_id: UUID
) -> Manifest:
    _require(actor, STAFF, "edit manifests")
    return await manifest_service.remove_order(db, manifest_id, order_id, actor)


async def dispatch_manifest(db: AsyncSession, actor: User, manifest_id: UUID) -> Manifest:
    _require(actor, STAFF, "dispatch manifests")
    return await manifest_service.dispatch(db, manifest_id, actor)


async def record_outcome(
    db: AsyncSession, actor: User, manifest_id: UUID, data: OutcomeCreate
) -> Manifest:
    if actor.role != UserRole.RIDER:
        _require(actor, STAFF, "record delivery outcomes")
    return await manifest_service.record_outcome(db, manifest_id, data, actor)


async def reschedule_order(
    db: AsyncSession, actor: User, manifest_id: UUID, data: RescheduleCreate
) -> Manifest:
    if actor.role != UserRole.RIDER:
        _require(actor, STAFF, "reschedule orders")
    return await manifest_service.reschedule_order(db, manifest_id, data, actor)


async def close_manifest(db: AsyncSession, actor: User, manifest_id: UUID) -> Manifest:
    _require(actor, STAFF, "close manifests")
    return await manifest_service.close_manifest(db, manifest_id, actor)


# Returns


async def initiate_return(db: AsyncSession, actor: User, order_id: UUID, reason: str):
    _require(actor, STAFF, "initiate returns")
    order = await return_service.initiate_return(db, order_id, reason, actor)
    return project_order(order, actor.role)


async def create_handover(db: AsyncSession, actor: User, data: HandoverCreate):
    _require(actor, STAFF, "receive returns")
    return await return_service.create_handover(db, data, actor)


async def get_handover(db: AsyncSession, actor: User, handover_id: UUID):
    _require(actor, READERS, "view return handovers")
    return await return_service.get_handover(db, handover_id)


async def list_handovers(db: AsyncSession, actor: User, **filters):
    _require(actor, READERS, "view return handovers")
    return await return_service.list_handovers(db, **filters)


async def process_handover(
    db: AsyncSession, actor: User, handover_id: UUID, data: ProcessHandoverSchema
):
    _require(actor, (UserRole.ADMIN,), "process return handovers")
    return await return_service.process_handover(db, handover_id, data, actor)


async def void_handover(db: AsyncSession, actor: User, handover_id: UUID, reason: str):
    _require(actor, (UserRole.ADMIN,), "void return handovers")
    return await return_service.void_handover(db, handover_id, reason, actor)


# Rider cash and settlements


async def rider_balance(db: AsyncSession, actor: User, rider_id: UUID) -> RiderBalanceResponse:
    _require_self_or(actor, rider_id, FINANCE, "view rider balances")
    await rider_ledger_service.get_rider(db, rider_id)
    pending = await rider_ledger_service.pending_settlement(db, rider_id)
    return RiderBalanceResponse(
        rider_id=rider_id,
        balance=await rider_ledger_service.current_balance(db, rider_id),
        pending_settlement_id=pending.id if pending is not None else None,
    )


async def rider_ledger(db: AsyncSession, actor: User, rider_id: UUID, skip: int = 0, limit: int = 50):
    _require_self_or(actor, rider_id, FINANCE, "view rider ledgers")
    return await rider_ledger_service.ledger_history(db, rider_id, skip=skip, limit=limit)


async def record_cash_handover(
    db: AsyncSession, actor: User, rider_id: UUID, data: CashHandoverCreate
):
    _require(actor, FINANCE, "receive rider cash")
    return await rider_ledger_service.record_handover(db, rider_id, data.amount, actor, data.note)


async def request_settlement(db: AsyncSession, actor: User, data: SettlementRequest):
    if actor.role == UserRole.RIDER:
        if data.rider_id is not None and data.rider_id != actor.id:
            raise PermissionDenied("Riders can only request their own settlement")
        rider_id = actor.id
    else:
        _require(actor, FINANCE, "request settlements for riders")
        if data.rider_id is None:
            raise ValidationFailed("rider_id is required")
        rider_id = data.rider_id
    return await rider_ledger_service.request_settlement(
        db, rider_id, data.declared_amount, actor, data.notes
    )


async def request_courier_settlement(db: AsyncSession, actor: User, data: CourierSettlementRequest):
    _require(actor, FINANCE, "request courier settlements")
    return await rider_ledger_service.request_courier_settlement(
        db, data.manifest_id, data.declared_amount, actor, data.notes
    )


async def verify_settlement(db: AsyncSession, actor: User, settlement_id: UUID, data: SettlementVerify):
    _require(actor, (UserRole.ADMIN,), "verify settlements")
    return await rider_ledger_service.verify_settlement(
        db, settlement_id, data.actual_amount, actor, data.notes
    )


async def list_settlements(
    db: AsyncSession,
    actor: User,
    *,
    rider_id: Optional[UUID] = None,
    status: Optional[SettlementStatus] = None,
    skip: int = 0,
    limit: int = 20,
):
    if actor.role == UserRole.RIDER:
        rider_id = actor.id
    else:
        _require(actor, FINANCE, "view settlements")
    return await rider_ledger_service.list_settlements(
        db, rider_id=rider_id, status=status, skip=skip, limit=limit
    )


# Logistics


async def book_orders(db: AsyncSession, actor: User, data: BookingCreate) -> BulkBookingResult:
    _require(actor, STAFF, "book couriers")
    return await courier_sync_service.create_bookings_bulk(
        db, data.order_ids, data.provider, data.destination_branch
    )


async def courier_handover(
    db: AsyncSession, actor: User, data: CourierHandoverCreate
) -> CourierHandoverResult:
    """
    Hand a batch of packed outside valley orders to a courier: one courier
    manifest, dispatched, then booked order by order once that is committed.
    A failed booking leaves the order handed over with a retryable sync row.
    """
    _require(actor, STAFF, "hand orders to couriers")
    manifest = await manifest_service.create_manifest(
        db, ManifestCreate(courier_code=data.provider, order_ids=data.order_ids), actor
    )
    manifest = await manifest_service.dispatch(db, manifest.id, actor)
    bookings = await courier_sync_service.create_bookings_bulk(
        db, data.order_ids, data.provider, data.destination_branch
    )
    return CourierHandoverResult(
        manifest_id=manifest.id,
        manifest_number=manifest.manifest_number,
        succeeded=bookings.succeeded,
        failed=bookings.failed,
    )


async def sync_order_tracking(db: AsyncSession, actor: User, order_id: UUID) -> TrackingSyncResponse:
    _require(actor, STAFF, "sync courier tracking")
    return await courier_sync_service.sync_tracking(db, order_id)


async def sync_status(db: AsyncSession, actor: User, order_id: UUID):
    _require(actor, READERS, "view courier sync status")
    await order_service.get_order(db, order_id)
    return await courier_sync_service.get_sync_status(db, order_id)


async def ingest_webhook(
    db: AsyncSession, provider_code: CourierProviderCode, headers, raw_body: bytes
) -> WebhookAck:
    return await courier_sync_service.handle_webhook(db, provider_code, headers, raw_body)


async def retry_failed_bookings(db: AsyncSession) -> int:
    return await courier_sync_service.retry_failed_bookings(db)
