from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from dispatch_hub.schemas.status_schema import (
    ActivityKind,
    CourierProviderCode,
    FulfillmentType,
    OrderStatus,
    PaymentMethod,
)


class OrderItemCreate(BaseModel):
    variant_id: UUID
    quantity: int = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)


class OrderCreate(BaseModel):
    customer_name: str = Field(..., min_length=1, max_length=120)
    customer_phone: str = Field(..., min_length=7, max_length=20)
    alt_phone: Optional[str] = None
    shipping_address: str = Field(..., min_length=1)
    city: Optional[str] = None
    destination_branch: Optional[str] = None
    delivery_instructions: Optional[str] = None
    fulfillment_type: FulfillmentType = FulfillmentType.INSIDE_VALLEY
    payment_method: PaymentMethod = PaymentMethod.COD
    shipping_charge: Decimal = Field(Decimal("0.00"), ge=0)
    discount: Decimal = Field(Decimal("0.00"), ge=0)
    paid_amount: Decimal = Field(Decimal("0.00"), ge=0)
    items: list[OrderItemCreate] = Field(..., min_length=1)


class OrderTransitionRequest(BaseModel):
    status: OrderStatus
    reason: Optional[str] = None
    courier_provider: Optional[CourierProviderCode] = None
    proof_url: Optional[str] = None
    proof_signature: Optional[str] = None


class CancelOrderSchema(BaseModel):
    reason: str = Field(..., min_length=1)


class OrderItemResponse(BaseModel):
    id: UUID
    variant_id: UUID
    product_name: str
    quantity: int
    unit_price: Decimal

    class Config:
        from_attributes = True


class OrderSummaryResponse(BaseModel):
    """Viewer projection."""

    id: UUID
    order_number: str
    status: OrderStatus
    fulfillment_type: FulfillmentType
    created_at: datetime

    class Config:
        from_attributes = True


class OrderRiderResponse(OrderSummaryResponse):
    """What a rider needs at the door: contact, address and cash to collect."""

    customer_name: str
    customer_phone: str
    alt_phone: Optional[str] = None
    shipping_address: str
    city: Optional[str] = None
    delivery_instructions: Optional[str] = None
    payment_method: PaymentMethod
    cod_due: Decimal
    items: list[OrderItemResponse] = []


class OrderOperatorResponse(OrderSummaryResponse):
    customer_name: str
    customer_phone: str
    alt_phone: Optional[str] = None
    shipping_address: str
    city: Optional[str] = None
    destination_branch: Optional[str] = None
    delivery_instructions: Optional[str] = None
    payment_method: PaymentMethod
    rider_id: Optional[UUID] = None
    courier_provider: Optional[CourierProviderCode] = None
    tracking_id: Optional[str] = None
    reschedule_count: int = 0
    packed_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    items: list[OrderItemResponse] = []


class OrderAdminResponse(OrderOperatorResponse):
    subtotal: Decimal
    shipping_charge: Decimal
    discount: Decimal
    cod_due: Decimal
    paid_amount: Decimal
    cancellation_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    return_reason: Optional[str] = None
    proof_url: Optional[str] = None
    returned_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_by: Optional[UUID] = None
    updated_at: datetime


class OrderActivityResponse(BaseModel):
    id: UUID
    order_id: UUID
    kind: ActivityKind
    actor_id: Optional[UUID] = None
    actor_role: Optional[str] = None
    from_status: Optional[OrderStatus] = None
    to_status: Optional[OrderStatus] = None
    reason: Optional[str] = None
    extra: Optional[dict] = None
    created_at: datetime

    class Config:
        from_attributes = True

