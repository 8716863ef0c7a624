from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_hub.auth.auth import get_current_user
from dispatch_hub.database.database import get_db
from dispatch_hub.models.models import User
from dispatch_hub.schemas.ledger_schema import (
    CashHandoverCreate,
    CourierSettlementRequest,
    LedgerEntryResponse,
    RiderBalanceResponse,
    SettlementRequest,
    SettlementResponse,
    SettlementVerify,
)
from dispatch_hub.schemas.status_schema import SettlementStatus
from dispatch_hub.services import dispatch_service

rider_router = APIRouter(prefix="/api/riders", tags=["Riders"])
router = APIRouter(prefix="/api/settlements", tags=["Settlements"])


@rider_router.get("/{rider_id}/balance", status_code=status.HTTP_200_OK)
async def rider_balance(
    rider_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RiderBalanceResponse:
    return await dispatch_service.rider_balance(db, current_user, rider_id)


@rider_router.get("/{rider_id}/ledger", status_code=status.HTTP_200_OK)
async def rider_ledger(
    rider_id: UUID,
    skip: int = 0,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[LedgerEntryResponse]:
    return await dispatch_service.rider_ledger(db, current_user, rider_id, skip=skip, limit=limit)


@rider_router.post("/{rider_id}/cash-handover", status_code=status.HTTP_201_CREATED)
async def cash_handover(
    rider_id: UUID,
    data: CashHandoverCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> LedgerEntryResponse:
    return await dispatch_service.record_cash_handover(db, current_user, rider_id, data)


@router.post("", status_code=status.HTTP_201_CREATED)
async def request_settlement(
    data: SettlementRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SettlementResponse:
    return await dispatch_service.request_settlement(db, current_user, data)


@router.post("/courier", status_code=status.HTTP_201_CREATED)
async def request_courier_settlement(
    data: CourierSettlementRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SettlementResponse:
    return await dispatch_service.request_courier_settlement(db, current_user, data)


@router.post("/{settlement_id}/verify", status_code=status.HTTP_200_OK)
async def verify_settlement(
    settlement_id: UUID,
    data: SettlementVerify,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SettlementResponse:
    return await dispatch_service.verify_settlement(db, current_user, settlement_id, data)


@router.get("", status_code=status.HTTP_200_OK)
async def list_settlements(
    rider_id: Optional[UUID] = None,
    settlement_status: Optional[SettlementStatus] = None,
    skip: int = 0,
    limit: int = 20,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[SettlementResponse]:
    return await dispatch_service.list_settlements(
        db, current_user, rider_id=rider_id, status=settlement_status, skip=skip, limit=limit
    )
