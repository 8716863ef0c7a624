from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_hub.auth.auth import get_current_user
from dispatch_hub.database.database import get_db
from dispatch_hub.models.models import User
from dispatch_hub.schemas.logistics_schema import (
    BookingCreate,
    BulkBookingResult,
    CourierHandoverCreate,
    CourierHandoverResult,
    SyncStatusResponse,
    TrackingSyncResponse,
    WebhookAck,
)
from dispatch_hub.schemas.status_schema import CourierProviderCode
from dispatch_hub.services import dispatch_service
from dispatch_hub.utils.limiter import limiter

router = APIRouter(prefix="/api/logistics", tags=["Logistics"])


@router.post("/bookings", status_code=status.HTTP_200_OK)
async def book_orders(
    data: BookingCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> BulkBookingResult:
    return await dispatch_service.book_orders(db, current_user, data)


@router.post("/handover", status_code=status.HTTP_201_CREATED)
async def courier_handover(
    data: CourierHandoverCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> CourierHandoverResult:
    return await dispatch_service.courier_handover(db, current_user, data)


@router.post("/orders/{order_id}/sync", status_code=status.HTTP_200_OK)
async def sync_order(
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> TrackingSyncResponse:
    return await dispatch_service.sync_order_tracking(db, current_user, order_id)


@router.get("/orders/{order_id}/status", status_code=status.HTTP_200_OK)
async def sync_status(
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[SyncStatusResponse]:
    return await dispatch_service.sync_status(db, current_user, order_id)


@router.post("/webhooks/{provider}", status_code=status.HTTP_200_OK)
@limiter.limit("120/minute")
async def courier_webhook(
    request: Request,
    provider: CourierProviderCode,
    db: AsyncSession = Depends(get_db),
) -> WebhookAck:
    """Provider status push. Authenticated by the provider's signature, not a JWT."""
    raw_body = await request.body()
    return await dispatch_service.ingest_webhook(db, provider, request.headers, raw_body)
