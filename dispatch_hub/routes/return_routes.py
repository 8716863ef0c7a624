from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_hub.auth.auth import get_current_user
from dispatch_hub.database.database import get_db
from dispatch_hub.models.models import User
from dispatch_hub.schemas.return_schema import (
    HandoverCreate,
    HandoverResponse,
    InitiateReturnSchema,
    ProcessHandoverSchema,
    VoidHandoverSchema,
)
from dispatch_hub.schemas.status_schema import HandoverStatus
from dispatch_hub.services import dispatch_service

router = APIRouter(prefix="/api/returns", tags=["Returns"])


@router.post("/{order_id}/initiate", status_code=status.HTTP_200_OK, response_model=None)
async def initiate_return(
    order_id: UUID,
    data: InitiateReturnSchema,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await dispatch_service.initiate_return(db, current_user, order_id, data.reason)


@router.post("/handovers", status_code=status.HTTP_201_CREATED)
async def create_handover(
    data: HandoverCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> HandoverResponse:
    return await dispatch_service.create_handover(db, current_user, data)


@router.get("/handovers", status_code=status.HTTP_200_OK)
async def list_handovers(
    handover_status: Optional[HandoverStatus] = None,
    skip: int = 0,
    limit: int = 20,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[HandoverResponse]:
    return await dispatch_service.list_handovers(
        db, current_user, status=handover_status, skip=skip, limit=limit
    )


@router.get("/handovers/{handover_id}", status_code=status.HTTP_200_OK)
async def get_handover(
    handover_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> HandoverResponse:
    return await dispatch_service.get_handover(db, current_user, handover_id)


@router.post("/handovers/{handover_id}/process", status_code=status.HTTP_200_OK)
async def process_handover(
    handover_id: UUID,
    data: ProcessHandoverSchema,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> HandoverResponse:
    return await dispatch_service.process_handover(db, current_user, handover_id, data)


@router.post("/handovers/{handover_id}/void", status_code=status.HTTP_200_OK)
async def void_handover(
    handover_id: UUID,
    data: VoidHandoverSchema,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> HandoverResponse:
    return await dispatch_service.void_handover(db, current_user, handover_id, data.reason)
