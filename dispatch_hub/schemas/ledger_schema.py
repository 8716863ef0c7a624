from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from dispatch_hub.schemas.status_schema import (
    CourierProviderCode,
    LedgerEntryType,
    SettlementStatus,
)


class CashHandoverCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    note: Optional[str] = None


class SettlementRequest(BaseModel):
    rider_id: Optional[UUID] = None  # Defaults to the calling rider
    declared_amount: Decimal = Field(..., ge=0)
    notes: Optional[str] = None


class CourierSettlementRequest(BaseModel):
    manifest_id: UUID
    declared_amount: Decimal = Field(..., ge=0)
    notes: Optional[str] = None


class SettlementVerify(BaseModel):
    actual_amount: Decimal = Field(..., ge=0)
    notes: Optional[str] = None


class LedgerEntryResponse(BaseModel):
    id: UUID
    rider_id: UUID
    entry_type: LedgerEntryType
    amount: Decimal
    balance_after: Decimal
    order_id: Optional[UUID] = None
    settlement_id: Optional[UUID] = None
    actor_id: Optional[UUID] = None
    note: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class RiderBalanceResponse(BaseModel):
    rider_id: UUID
    balance: Decimal
    pending_settlement_id: Optional[UUID] = None


class SettlementResponse(BaseModel):
    id: UUID
    settlement_number: str
    rider_id: Optional[UUID] = None
    manifest_id: Optional[UUID] = None
    courier_code: Optional[CourierProviderCode] = None
    expected_amount: Decimal
    declared_amount: Decimal
    actual_amount: Optional[Decimal] = None
    variance: Optional[Decimal] = None
    variance_flagged: bool
    status: SettlementStatus
    notes: Optional[str] = None
    requested_by: Optional[UUID] = None
    verified_by: Optional[UUID] = None
    verified_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True
