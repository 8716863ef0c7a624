"""
Courier bookings, webhooks and tracking sync.

Bookings are idempotent per (order, provider): the durable record is the
`LogisticsSyncStatus` row. Network calls never run inside a database
transaction that holds locks; the row is claimed and committed first.
"""
import asyncio
import json
import weakref
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_hub.config.config import redis_client, settings
from dispatch_hub.models.models import LogisticsSyncStatus, Order
from dispatch_hub.schemas.logistics_schema import (
    BookingFailure,
    BookingSuccess,
    BulkBookingResult,
    NormalizedStatus,
    TrackingStatus,
    TrackingSyncResponse,
    WebhookAck,
)
from dispatch_hub.schemas.status_schema import (
    ActivityKind,
    CourierProviderCode,
    FulfillmentType,
    OrderStatus,
    SyncState,
)
from dispatch_hub.services import manifest_service, order_service
from dispatch_hub.services.courier_provider import CourierProvider, get_provider
from dispatch_hub.services.state_machine import can_transition
from dispatch_hub.utils.exceptions import (
    DispatchError,
    InvalidTransition,
    InvalidWebhookSignature,
    ProviderBookingFailed,
    ValidationFailed,
)
from dispatch_hub.utils.logger_config import COURIER_LOGGER, setup_logger
from dispatch_hub.utils.middleware import with_provider_retry
from dispatch_hub.utils.utils import normalize_branch

logger = setup_logger(COURIER_LOGGER)

BOOKABLE_STATUSES = {OrderStatus.PACKED, OrderStatus.HANDED_TO_COURIER}
IN_FLIGHT_STATUSES = [OrderStatus.HANDED_TO_COURIER, OrderStatus.IN_TRANSIT]

# Held only while a booking is running or awaited; idle locks drop out.
_booking_locks = weakref.WeakValueDictionary()


def _booking_lock(provider_code: CourierProviderCode, order_id: UUID) -> asyncio.Lock:
    key = (provider_code, order_id)
    lock = _booking_locks.get(key)
    if lock is None:
        lock = _booking_locks[key] = asyncio.Lock()
    return lock


async def get_sync_status(
    db: AsyncSession, order_id: UUID, provider_code: Optional[CourierProviderCode] = None
) -> list[LogisticsSyncStatus]:
    stmt = select(LogisticsSyncStatus).where(LogisticsSyncStatus.order_id == order_id)
    if provider_code is not None:
        stmt = stmt.where(LogisticsSyncStatus.provider == provider_code)
    result = await db.execute(stmt.order_by(LogisticsSyncStatus.created_at))
    return list(result.scalars().all())


async def _sync_row(
    db: AsyncSession, order_id: UUID, provider_code: CourierProviderCode, branch: str
) -> LogisticsSyncStatus:
    rows = await get_sync_status(db, order_id, provider_code)
    if rows:
        return rows[0]
    row = LogisticsSyncStatus(
        order_id=order_id,
        provider=provider_code,
        state=SyncState.PENDING,
        destination_branch=branch,
    )
    db.add(row)
    try:
        await db.commit()
    except IntegrityError:
        # Another process inserted it first
        await db.rollback()
        rows = await get_sync_status(db, order_id, provider_code)
        return rows[0]
    return row


async def _claim(db: AsyncSession, row: LogisticsSyncStatus, branch: str) -> bool:
    """Mark the row in progress unless another worker holds a live claim."""
    now = datetime.now(timezone.utc)
    stale = now - timedelta(seconds=settings.BOOKING_CLAIM_TTL_SECONDS)
    result = await db.execute(
        update(LogisticsSyncStatus)
        .where(
            LogisticsSyncStatus.id == row.id,
            LogisticsSyncStatus.tracking_id.is_(None),
            or_(
                LogisticsSyncStatus.state != SyncState.IN_PROGRESS,
                LogisticsSyncStatus.claimed_at.is_(None),
                LogisticsSyncStatus.claimed_at < stale,
            ),
        )
        .values(state=SyncState.IN_PROGRESS, claimed_at=now, destination_branch=branch)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        return False
    await db.refresh(row)
    return True


async def _claim_or_wait(db: AsyncSession, row: LogisticsSyncStatus, branch: str) -> Optional[str]:
    """
    Claim the row for booking. While another worker holds a live claim, poll
    until it books (its tracking id is returned), fails, or the claim goes
    stale and can be taken over. Returns None once this call holds the claim.
    """
    while not await _claim(db, row, branch):
        logger.info(
            f"Booking for order {row.order_id} with {row.provider.value} is in progress elsewhere; waiting"
        )
        await asyncio.sleep(settings.BOOKING_CLAIM_POLL_SECONDS)
        await db.refresh(row)
        await db.commit()
        if row.tracking_id:
            return row.tracking_id
        if row.state == SyncState.FAILED:
            raise ProviderBookingFailed(
                f"Booking for order {row.order_id} with {row.provider.value} failed: {row.last_error}",
                retryable=row.next_retry_at is not None,
            )
    return None


async def create_booking(
    db: AsyncSession,
    order_id: UUID,
    provider_code: CourierProviderCode,
    destination_branch: Optional[str] = None,
    provider: Optional[CourierProvider] = None,
) -> str:
    """
    Book an order with a courier and return its tracking id.

    A second call for the same order and provider returns the stored
    tracking id without contacting the provider.
    """
    provider = provider or get_provider(provider_code)
    async with _booking_lock(provider_code, order_id):
        order = await order_service.get_order(db, order_id)
        rows = await get_sync_status(db, order_id, provider_code)
        if rows and rows[0].tracking_id:
            logger.info(
                f"Order {order.order_number} already booked with {provider_code.value}: {rows[0].tracking_id}"
            )
            return rows[0].tracking_id

        if order.fulfillment_type != FulfillmentType.OUTSIDE_VALLEY:
            raise ValidationFailed(f"Order {order.order_number} is not an outside valley order")
        if order.status not in BOOKABLE_STATUSES:
            raise InvalidTransition(
                f"Order {order.order_number} is '{order.status.value}' and cannot be booked",
                from_status=order.status.value,
            )
        branch = normalize_branch(destination_branch or order.destination_branch)
        if not branch:
            raise ValidationFailed(f"No destination branch for order {order.order_number}")

        row = await _sync_row(db, order.id, provider_code, branch)
        if row.tracking_id:
            return row.tracking_id
        tracking_id = await _claim_or_wait(db, row, branch)
        if tracking_id:
            logger.info(f"Order {order.order_number} booked with {provider_code.value} elsewhere: {tracking_id}")
            return tracking_id
        await db.refresh(order)

        errors: list[str] = []
        book = with_provider_retry(
            max_attempts=settings.BOOKING_MAX_ATTEMPTS,
            delay=settings.BOOKING_RETRY_DELAY,
            on_attempt=lambda attempt, error: errors.append(error.message),
        )(provider.create_booking)

        try:
            booking = await book(order, branch)
        except ProviderBookingFailed as e:
            now = datetime.now(timezone.utc)
            row.state = SyncState.FAILED
            row.attempts += max(len(errors), 1)
            row.last_error = e.message
            row.claimed_at = None
            row.next_retry_at = (
                now + timedelta(minutes=settings.BOOKING_RETRY_INTERVAL_MINUTES)
                if e.retryable else None
            )
            order_service.log_activity(
                db, order.id, ActivityKind.LOGISTICS,
                reason=f"Booking with {provider_code.value} failed: {e.message}",
                extra={"attempts": row.attempts, "retryable": e.retryable},
            )
            await db.commit()
            logger.error(
                f"Booking failed for order {order.order_number} with {provider_code.value} "
                f"after {len(errors)} attempt(s): {e.message}"
            )
            raise

        now = datetime.now(timezone.utc)
        row.state = SyncState.BOOKED
        row.attempts += len(errors) + 1
        row.tracking_id = booking.tracking_id
        row.external_order_id = booking.external_order_id
        row.last_error = None
        row.claimed_at = None
        row.next_retry_at = None
        row.last_synced_at = now
        order.tracking_id = booking.tracking_id
        order.courier_provider = provider_code
        order.destination_branch = branch
        order_service.log_activity(
            db, order.id, ActivityKind.LOGISTICS,
            reason=f"Booked with {provider_code.value} to {branch}",
            extra={"tracking_id": booking.tracking_id, "attempts": row.attempts},
        )
        await db.commit()
        logger.info(
            f"Order {order.order_number} booked with {provider_code.value}: {booking.tracking_id}"
        )
        return booking.tracking_id


async def create_bookings_bulk(
    db: AsyncSession,
    order_ids: list[UUID],
    provider_code: CourierProviderCode,
    destination_branch: Optional[str] = None,
) -> BulkBookingResult:
    """Book each order independently; one failure never blocks the rest."""
    result = BulkBookingResult()
    for order_id in dict.fromkeys(order_ids):
        try:
            tracking_id = await create_booking(db, order_id, provider_code, destination_branch)
            result.succeeded.append(BookingSuccess(order_id=order_id, tracking_id=tracking_id))
        except DispatchError as e:
            result.failed.append(BookingFailure(order_id=order_id, error=e.message))
    logger.info(
        f"Bulk booking with {provider_code.value}: {len(result.succeeded)} booked, {len(result.failed)} failed"
    )
    return result


async def apply_courier_status(
    db: AsyncSession, order: Order, reported: NormalizedStatus, source: str
) -> bool:
    """
    Apply a provider-reported status to an order. Unknown, informational,
    repeated and out-of-order statuses are recorded and ignored. Commits.
    Returns True when the order moved.
    """
    label = f"{reported.provider.value} {source}"
    note = None
    if not reported.known:
        note = f"Unmapped {label} status '{reported.provider_status}' ignored"
    elif reported.status is None:
        note = f"{label}: {reported.provider_status}"
    elif reported.status == order.status:
        logger.info(f"Order {order.order_number} already '{order.status.value}'; {label} is a repeat")
        return False
    elif not can_transition(order.fulfillment_type, order.status, reported.status):
        note = (
            f"{label} reported '{reported.provider_status}' but order is "
            f"'{order.status.value}'; ignored"
        )

    if note is not None:
        order_service.log_activity(
            db, order.id, ActivityKind.LOGISTICS,
            reason=note,
            extra={"provider_status": reported.provider_status, "remarks": reported.remarks},
        )
        await db.commit()
        logger.info(f"Order {order.order_number}: {note}")
        return False

    values = {}
    if reported.status == OrderStatus.HANDED_TO_COURIER:
        values["courier_provider"] = reported.provider
    if reported.status == OrderStatus.DELIVERED:
        receiver = f" to {reported.receiver_name}" if reported.receiver_name else ""
        values["proof_signature"] = (
            f"{reported.provider.value}: {reported.provider_status}{receiver}"
        )
    try:
        await order_service.apply_transition(
            db, order, reported.status,
            reason=f"{label}: {reported.provider_status}",
            values=values,
            extra={
                "provider_status": reported.provider_status,
                "location": reported.location,
                "remarks": reported.remarks,
            },
        )
        await manifest_service.apply_courier_outcome(db, order, reported.status)
        await db.commit()
        return True
    except Exception:
        await db.rollback()
        raise


async def _touch_sync_row(db: AsyncSession, order: Order, provider_status: Optional[str]) -> None:
    await db.execute(
        update(LogisticsSyncStatus)
        .where(
            LogisticsSyncStatus.order_id == order.id,
            LogisticsSyncStatus.provider == order.courier_provider,
        )
        .values(last_provider_status=provider_status, last_synced_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )


async def handle_webhook(
    db: AsyncSession,
    provider_code: CourierProviderCode,
    headers,
    raw_body: bytes,
) -> WebhookAck:
    """Authenticate, normalise and apply a provider status push."""
    provider = get_provider(provider_code)
    if not provider.verify_webhook(headers, raw_body):
        logger.warning(f"Rejected {provider_code.value} webhook with a bad signature")
        raise InvalidWebhookSignature(f"Invalid {provider_code.value} webhook signature")

    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        logger.warning(f"Malformed {provider_code.value} webhook body")
        return WebhookAck(success=False, response="Malformed payload")
    if not isinstance(payload, dict):
        return WebhookAck(success=False, response="Malformed payload")

    normalized = provider.handle_webhook(payload)
    if normalized.is_ping:
        logger.info(f"{provider_code.value} webhook test received")
        return WebhookAck(message="Webhook test received")
    if not normalized.tracking_id:
        return WebhookAck(success=False, response="Missing tracking id")

    order = await order_service.get_order_by_tracking_id(db, normalized.tracking_id)
    if order is None:
        logger.warning(
            f"{provider_code.value} webhook for unknown tracking id {normalized.tracking_id}"
        )
        return WebhookAck(message=f"Unknown tracking id {normalized.tracking_id}")

    await _touch_sync_row(db, order, normalized.provider_status)
    try:
        applied = await apply_courier_status(db, order, normalized, "webhook")
    except InvalidTransition as e:
        # Lost a race with another update; the refusal is already logged
        return WebhookAck(message=e.message)
    return WebhookAck(
        applied=applied,
        message=f"Order {order.order_number} is {order.status.value}",
    )


async def _fetch_tracking(provider: CourierProvider, tracking_id: str) -> tuple[TrackingStatus, bool]:
    cache_key = f"tracking:{provider.code.value}:{tracking_id}"
    cached = redis_client.get(cache_key)
    if cached:
        return TrackingStatus.model_validate_json(cached), True
    tracking = await provider.get_tracking(tracking_id)
    redis_client.setex(cache_key, settings.TRACKING_CACHE_TTL, tracking.model_dump_json())
    return tracking, False


async def sync_tracking(db: AsyncSession, order_id: UUID) -> TrackingSyncResponse:
    """Poll the courier for an order's latest status and apply it."""
    order = await order_service.get_order(db, order_id)
    if not order.tracking_id or order.courier_provider is None:
        raise ValidationFailed(f"Order {order.order_number} has not been booked with a courier")
    provider = get_provider(order.courier_provider)
    tracking, cached = await _fetch_tracking(provider, order.tracking_id)

    await _touch_sync_row(db, order, tracking.provider_status)
    applied = await apply_courier_status(
        db,
        order,
        NormalizedStatus(
            provider=provider.code,
            tracking_id=tracking.tracking_id,
            provider_status=tracking.provider_status,
            status=tracking.status,
            known=tracking.known,
            remarks=tracking.remarks,
            location=tracking.location,
        ),
        "tracking",
    )
    return TrackingSyncResponse(
        order_id=order.id,
        tracking_id=order.tracking_id,
        provider=provider.code,
        provider_status=tracking.provider_status,
        status=order.status,
        applied=applied,
        cached=cached,
    )


async def retry_failed_bookings(db: AsyncSession) -> int:
    """Retry failed bookings whose backoff has elapsed. Returns the number booked."""
    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(LogisticsSyncStatus).where(
            LogisticsSyncStatus.state == SyncState.FAILED,
            LogisticsSyncStatus.tracking_id.is_(None),
            LogisticsSyncStatus.next_retry_at.is_not(None),
            LogisticsSyncStatus.next_retry_at <= now,
        )
    )
    due = [(row.order_id, row.provider, row.destination_branch) for row in result.scalars().all()]
    booked = 0
    for order_id, provider_code, branch in due:
        try:
            await create_booking(db, order_id, provider_code, branch)
            booked += 1
        except DispatchError as e:
            logger.warning(f"Retry booking for order {order_id} failed: {e.message}")
    if due:
        logger.info(f"Booking retry: {booked}/{len(due)} booked")
    return booked


async def poll_tracking(db: AsyncSession, limit: int = 100) -> int:
    """Sync tracking for courier orders still in flight. Returns the number moved."""
    result = await db.execute(
        select(Order.id)
        .where(Order.status.in_(IN_FLIGHT_STATUSES), Order.tracking_id.is_not(None))
        .order_by(Order.updated_at)
        .limit(limit)
    )
    moved = 0
    for order_id in result.scalars().all():
        try:
            synced = await sync_tracking(db, order_id)
            moved += int(synced.applied)
        except DispatchError as e:
            logger.warning(f"Tracking sync for order {order_id} failed: {e.message}")
    return moved
