from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_hub.auth.auth import get_current_finance_user, get_current_staff_user
from dispatch_hub.database.database import get_db
from dispatch_hub.models.models import User
from dispatch_hub.schemas.inventory_schema import StockAdjust, VariantCreate, VariantResponse
from dispatch_hub.services import inventory_service

router = APIRouter(prefix="/api/variants", tags=["Inventory"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_variant(
    data: VariantCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_staff_user),
) -> VariantResponse:
    return await inventory_service.create_variant(db, data)


@router.get("", status_code=status.HTTP_200_OK)
async def list_variants(
    skip: int = 0,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_staff_user),
) -> list[VariantResponse]:
    return await inventory_service.list_variants(db, skip=skip, limit=limit)


@router.get("/{variant_id}", status_code=status.HTTP_200_OK)
async def get_variant(
    variant_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_staff_user),
) -> VariantResponse:
    return await inventory_service.get_variant(db, variant_id)


@router.post("/{variant_id}/adjust", status_code=status.HTTP_200_OK)
async def adjust_stock(
    variant_id: UUID,
    data: StockAdjust,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_finance_user),
) -> VariantResponse:
    return await inventory_service.restock(db, variant_id, data, current_user)
