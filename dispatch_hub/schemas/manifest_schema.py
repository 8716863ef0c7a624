from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from dispatch_hub.schemas.status_schema import (
    CourierProviderCode,
    ManifestKind,
    ManifestOutcome,
    ManifestStatus,
)


class ManifestCreate(BaseModel):
    rider_id: Optional[UUID] = None
    courier_code: Optional[CourierProviderCode] = None
    order_ids: list[UUID] = Field(default_factory=list)

    @model_validator(mode="after")
    def one_owner(self):
        if (self.rider_id is None) == (self.courier_code is None):
            raise ValueError("A manifest belongs to exactly one rider or one courier")
        return self


class ManifestOrdersAdd(BaseModel):
    order_ids: list[UUID] = Field(..., min_length=1)


class OutcomeCreate(BaseModel):
    order_id: UUID
    outcome: ManifestOutcome
    proof_url: Optional[str] = None
    signature: Optional[str] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def terminal_outcome(self):
        if self.outcome not in (ManifestOutcome.DELIVERED, ManifestOutcome.REJECTED):
            raise ValueError("Outcome must be 'delivered' or 'rejected'")
        return self


class RescheduleCreate(BaseModel):
    order_id: UUID
    reason: str = Field(..., min_length=1)


class ManifestItemResponse(BaseModel):
    id: UUID
    order_id: UUID
    outcome: ManifestOutcome
    outcome_at: Optional[datetime] = None
    proof_url: Optional[str] = None
    note: Optional[str] = None
    removed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ManifestResponse(BaseModel):
    id: UUID
    manifest_number: str
    kind: ManifestKind
    rider_id: Optional[UUID] = None
    courier_code: Optional[CourierProviderCode] = None
    status: ManifestStatus
    created_by: Optional[UUID] = None
    created_at: datetime
    dispatched_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    items: list[ManifestItemResponse] = []
    eligible_for_settlement: bool = False

    class Config:
        from_attributes = True
