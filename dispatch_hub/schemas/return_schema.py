from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from dispatch_hub.schemas.status_schema import (
    CourierProviderCode,
    HandoverLineStatus,
    HandoverSource,
    HandoverStatus,
    ItemCondition,
)


class InitiateReturnSchema(BaseModel):
    reason: str = Field(..., min_length=1)


class HandoverLineCreate(BaseModel):
    order_id: UUID
    variant_id: UUID
    quantity: int = Field(..., gt=0)
    condition: ItemCondition = ItemCondition.GOOD


class HandoverCreate(BaseModel):
    source: HandoverSource
    rider_id: Optional[UUID] = None
    courier_code: Optional[CourierProviderCode] = None
    items: list[HandoverLineCreate] = Field(..., min_length=1)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def source_party(self):
        if self.source == HandoverSource.RIDER and self.rider_id is None:
            raise ValueError("rider_id is required for a rider handover")
        if self.source == HandoverSource.COURIER and self.courier_code is None:
            raise ValueError("courier_code is required for a courier handover")
        return self


class VerifiedLine(BaseModel):
    line_id: UUID
    verified_quantity: int = Field(0, ge=0)
    damaged_quantity: int = Field(0, ge=0)
    disputed: bool = False
    note: Optional[str] = None


class ProcessHandoverSchema(BaseModel):
    lines: list[VerifiedLine] = Field(..., min_length=1)


class VoidHandoverSchema(BaseModel):
    reason: str = Field(..., min_length=1)


class HandoverItemResponse(BaseModel):
    id: UUID
    order_id: UUID
    variant_id: UUID
    claimed_quantity: int
    condition: ItemCondition
    verified_quantity: int
    damaged_quantity: int
    status: HandoverLineStatus
    discrepancy_note: Optional[str] = None
    verified_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class HandoverResponse(BaseModel):
    id: UUID
    handover_number: str
    source: HandoverSource
    rider_id: Optional[UUID] = None
    courier_code: Optional[CourierProviderCode] = None
    status: HandoverStatus
    notes: Optional[str] = None
    received_by: Optional[UUID] = None
    processed_by: Optional[UUID] = None
    processed_at: Optional[datetime] = None
    created_at: datetime
    items: list[HandoverItemResponse] = []

    class Config:
        from_attributes = True
