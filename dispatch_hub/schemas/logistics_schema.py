from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from dispatch_hub.schemas.status_schema import CourierProviderCode, OrderStatus, SyncState


class BookingResult(BaseModel):
    tracking_id: str
    external_order_id: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class TrackingStatus(BaseModel):
    tracking_id: str
    provider_status: str
    status: Optional[OrderStatus] = None
    known: bool = False
    location: Optional[str] = None
    remarks: Optional[str] = None


class NormalizedStatus(BaseModel):
    """A provider webhook reduced to what the order ledger understands."""

    provider: CourierProviderCode
    tracking_id: Optional[str] = None
    provider_status: Optional[str] = None
    status: Optional[OrderStatus] = None
    known: bool = False
    is_ping: bool = False
    remarks: Optional[str] = None
    location: Optional[str] = None
    receiver_name: Optional[str] = None
    cod_amount: Optional[Decimal] = None


class BookingCreate(BaseModel):
    order_ids: list[UUID] = Field(..., min_length=1)
    provider: CourierProviderCode
    destination_branch: Optional[str] = None


class CourierHandoverCreate(BookingCreate):
    """Create a courier manifest, dispatch it and book every order."""


class BookingFailure(BaseModel):
    order_id: UUID
    error: str


class BookingSuccess(BaseModel):
    order_id: UUID
    tracking_id: str


class BulkBookingResult(BaseModel):
    succeeded: list[BookingSuccess] = []
    failed: list[BookingFailure] = []


class CourierHandoverResult(BulkBookingResult):
    manifest_id: UUID
    manifest_number: str


class WebhookAck(BaseModel):
    success: bool = True
    response: str = "OK"
    applied: bool = False
    message: Optional[str] = None


class SyncStatusResponse(BaseModel):
    id: UUID
    order_id: UUID
    provider: CourierProviderCode
    state: SyncState
    attempts: int
    tracking_id: Optional[str] = None
    external_order_id: Optional[str] = None
    destination_branch: Optional[str] = None
    last_provider_status: Optional[str] = None
    last_error: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TrackingSyncResponse(BaseModel):
    order_id: UUID
    tracking_id: str
    provider: CourierProviderCode
    provider_status: str
    status: OrderStatus
    applied: bool = False
    cached: bool = False
