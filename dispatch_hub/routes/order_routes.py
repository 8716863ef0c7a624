from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_hub.auth.auth import get_current_user
from dispatch_hub.database.database import get_db
from dispatch_hub.models.models import User
from dispatch_hub.schemas.order_schema import (
    CancelOrderSchema,
    OrderActivityResponse,
    OrderCreate,
    OrderTransitionRequest,
)
from dispatch_hub.schemas.status_schema import FulfillmentType, OrderStatus
from dispatch_hub.services import dispatch_service

router = APIRouter(prefix="/api/orders", tags=["Orders"])

# Order payloads are projected per role, so routes return them unfiltered.


@router.post("", status_code=status.HTTP_201_CREATED, response_model=None)
async def create_order(
    data: OrderCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await dispatch_service.create_order(db, current_user, data)


@router.get("", status_code=status.HTTP_200_OK, response_model=None)
async def list_orders(
    order_status: Optional[OrderStatus] = None,
    fulfillment_type: Optional[FulfillmentType] = None,
    rider_id: Optional[UUID] = None,
    skip: int = 0,
    limit: int = 20,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await dispatch_service.list_orders(
        db, current_user,
        status=order_status, fulfillment_type=fulfillment_type, rider_id=rider_id,
        skip=skip, limit=limit,
    )


@router.get("/{order_id}", status_code=status.HTTP_200_OK, response_model=None)
async def get_order(
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await dispatch_service.get_order(db, current_user, order_id)


@router.get("/{order_id}/history", status_code=status.HTTP_200_OK)
async def get_order_history(
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[OrderActivityResponse]:
    return await dispatch_service.get_history(db, current_user, order_id)


@router.post("/{order_id}/transition", status_code=status.HTTP_200_OK, response_model=None)
async def transition_order(
    order_id: UUID,
    data: OrderTransitionRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await dispatch_service.transition_order(db, current_user, order_id, data)


@router.post("/{order_id}/pack", status_code=status.HTTP_200_OK, response_model=None)
async def pack_order(
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await dispatch_service.pack_order(db, current_user, order_id)


@router.post("/{order_id}/cancel", status_code=status.HTTP_200_OK, response_model=None)
async def cancel_order(
    order_id: UUID,
    data: CancelOrderSchema,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await dispatch_service.cancel_order(db, current_user, order_id, data.reason)


@router.post("/{order_id}/lost", status_code=status.HTTP_200_OK, response_model=None)
async def mark_lost(
    order_id: UUID,
    data: CancelOrderSchema,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await dispatch_service.mark_lost(db, current_user, order_id, data.reason)
