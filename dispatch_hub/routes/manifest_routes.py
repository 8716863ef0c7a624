from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_hub.auth.auth import get_current_user
from dispatch_hub.database.database import get_db
from dispatch_hub.models.models import User
from dispatch_hub.schemas.manifest_schema import (
    ManifestCreate,
    ManifestOrdersAdd,
    ManifestResponse,
    OutcomeCreate,
    RescheduleCreate,
)
from dispatch_hub.schemas.status_schema import ManifestStatus
from dispatch_hub.services import dispatch_service

router = APIRouter(prefix="/api/manifests", tags=["Manifests"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_manifest(
    data: ManifestCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ManifestResponse:
    return await dispatch_service.create_manifest(db, current_user, data)


@router.get("", status_code=status.HTTP_200_OK)
async def list_manifests(
    rider_id: Optional[UUID] = None,
    manifest_status: Optional[ManifestStatus] = None,
    skip: int = 0,
    limit: int = 20,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[ManifestResponse]:
    return await dispatch_service.list_manifests(
        db, current_user, rider_id=rider_id, status=manifest_status, skip=skip, limit=limit
    )


@router.get("/{manifest_id}", status_code=status.HTTP_200_OK)
async def get_manifest(
    manifest_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ManifestResponse:
    return await dispatch_service.get_manifest(db, current_user, manifest_id)


@router.post("/{manifest_id}/orders", status_code=status.HTTP_200_OK)
async def add_orders(
    manifest_id: UUID,
    data: ManifestOrdersAdd,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ManifestResponse:
    return await dispatch_service.add_manifest_orders(db, current_user, manifest_id, data.order_ids)


@router.delete("/{manifest_id}/orders/{order_id}", status_code=status.HTTP_200_OK)
async def remove_order(
    manifest_id: UUID,
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ManifestResponse:
    return await dispatch_service.remove_manifest_order(db, current_user, manifest_id, order_id)


@router.post("/{manifest_id}/dispatch", status_code=status.HTTP_200_OK)
async def dispatch_manifest(
    manifest_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ManifestResponse:
    return await dispatch_service.dispatch_manifest(db, current_user, manifest_id)


@router.post("/{manifest_id}/outcomes", status_code=status.HTTP_200_OK)
async def record_outcome(
    manifest_id: UUID,
    data: OutcomeCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ManifestResponse:
    return await dispatch_service.record_outcome(db, current_user, manifest_id, data)


@router.post("/{manifest_id}/reschedule", status_code=status.HTTP_200_OK)
async def reschedule_order(
    manifest_id: UUID,
    data: RescheduleCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ManifestResponse:
    return await dispatch_service.reschedule_order(db, current_user, manifest_id, data)


@router.post("/{manifest_id}/close", status_code=status.HTTP_200_OK)
async def close_manifest(
    manifest_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ManifestResponse:
    return await dispatch_service.close_manifest(db, current_user, manifest_id)
