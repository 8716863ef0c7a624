from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dispatch_hub.database.database import Base
from dispatch_hub.schemas.status_schema import (
    ActivityKind,
    CourierProviderCode,
    FulfillmentType,
    HandoverLineStatus,
    HandoverSource,
    HandoverStatus,
    ItemCondition,
    LedgerEntryType,
    ManifestKind,
    ManifestOutcome,
    ManifestStatus,
    OrderStatus,
    PaymentMethod,
    SettlementStatus,
    SyncState,
    UserRole,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


Money = Numeric(12, 2)


class User(Base):
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password: Mapped[str] = mapped_column(String(255))
    full_name: Mapped[str] = mapped_column(String(120))
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    role: Mapped[UserRole] = mapped_column(default=UserRole.OPERATOR)
    rider_code: Mapped[Optional[str]] = mapped_column(String(20), unique=True, nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    sku: Mapped[str] = mapped_column(String(64), unique=True)
    name: Mapped[str] = mapped_column(String(200))
    stock: Mapped[int] = mapped_column(Integer, default=0)
    damaged_stock: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    status: Mapped[OrderStatus] = mapped_column(default=OrderStatus.INTAKE, index=True)
    fulfillment_type: Mapped[FulfillmentType] = mapped_column(
        default=FulfillmentType.INSIDE_VALLEY
    )

    customer_name: Mapped[str] = mapped_column(String(120))
    customer_phone: Mapped[str] = mapped_column(String(20))
    alt_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    shipping_address: Mapped[str] = mapped_column(Text)
    city: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    destination_branch: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    delivery_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    payment_method: Mapped[PaymentMethod] = mapped_column(default=PaymentMethod.COD)
    subtotal: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    shipping_charge: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    discount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    cod_due: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    paid_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))

    rider_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("users.id"), nullable=True, index=True
    )
    courier_provider: Mapped[Optional[CourierProviderCode]] = mapped_column(nullable=True)
    tracking_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    return_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    proof_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    proof_signature: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reschedule_count: Mapped[int] = mapped_column(Integer, default=0)

    packed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    returned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[Optional[UUID]] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order", lazy="selectin", cascade="all, delete-orphan"
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    order_id: Mapped[UUID] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    variant_id: Mapped[UUID] = mapped_column(ForeignKey("product_variants.id"))
    product_name: Mapped[str] = mapped_column(String(200))
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price: Mapped[Decimal] = mapped_column(Money)

    order: Mapped["Order"] = relationship(back_populates="items")


class OrderActivity(Base):
    """Append-only status history and audit trail for an order."""

    __tablename__ = "order_activities"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    order_id: Mapped[UUID] = mapped_column(ForeignKey("orders.id"), index=True)
    kind: Mapped[ActivityKind] = mapped_column(default=ActivityKind.STATUS_CHANGE)
    actor_id: Mapped[Optional[UUID]] = mapped_column(nullable=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    from_status: Mapped[Optional[OrderStatus]] = mapped_column(nullable=True)
    to_status: Mapped[Optional[OrderStatus]] = mapped_column(nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extra: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Manifest(Base):
    __tablename__ = "manifests"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    manifest_number: Mapped[str] = mapped_column(String(32), unique=True)
    kind: Mapped[ManifestKind] = mapped_column(default=ManifestKind.RIDER)
    rider_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("users.id"), nullable=True, index=True
    )
    courier_code: Mapped[Optional[CourierProviderCode]] = mapped_column(nullable=True)
    status: Mapped[ManifestStatus] = mapped_column(default=ManifestStatus.DRAFT, index=True)
    created_by: Mapped[Optional[UUID]] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list["ManifestItem"]] = relationship(
        back_populates="manifest", lazy="selectin", cascade="all, delete-orphan"
    )

    @property
    def active_items(self) -> list["ManifestItem"]:
        return [item for item in self.items if item.removed_at is None]

    @property
    def eligible_for_settlement(self) -> bool:
        """Dispatched, and every order still on it has an outcome."""
        active = self.active_items
        return (
            self.status == ManifestStatus.DISPATCHED
            and bool(active)
            and all(item.outcome != ManifestOutcome.PENDING for item in active)
        )


class ManifestItem(Base):
    __tablename__ = "manifest_items"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    manifest_id: Mapped[UUID] = mapped_column(ForeignKey("manifests.id"), index=True)
    order_id: Mapped[UUID] = mapped_column(ForeignKey("orders.id"), index=True)
    outcome: Mapped[ManifestOutcome] = mapped_column(default=ManifestOutcome.PENDING)
    outcome_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    proof_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    removed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    manifest: Mapped["Manifest"] = relationship(back_populates="items")


class ReturnHandover(Base):
    __tablename__ = "return_handovers"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    handover_number: Mapped[str] = mapped_column(String(32), unique=True)
    source: Mapped[HandoverSource] = mapped_column(default=HandoverSource.RIDER)
    rider_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("users.id"), nullable=True)
    courier_code: Mapped[Optional[CourierProviderCode]] = mapped_column(nullable=True)
    status: Mapped[HandoverStatus] = mapped_column(
        default=HandoverStatus.PENDING_VERIFICATION, index=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    received_by: Mapped[Optional[UUID]] = mapped_column(ForeignKey("users.id"), nullable=True)
    processed_by: Mapped[Optional[UUID]] = mapped_column(ForeignKey("users.id"), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    items: Mapped[list["ReturnHandoverItem"]] = relationship(
        back_populates="handover", lazy="selectin", cascade="all, delete-orphan"
    )


class ReturnHandoverItem(Base):
    __tablename__ = "return_handover_items"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    handover_id: Mapped[UUID] = mapped_column(ForeignKey("return_handovers.id"), index=True)
    order_id: Mapped[UUID] = mapped_column(ForeignKey("orders.id"), index=True)
    variant_id: Mapped[UUID] = mapped_column(ForeignKey("product_variants.id"))
    claimed_quantity: Mapped[int] = mapped_column(Integer)
    condition: Mapped[ItemCondition] = mapped_column(default=ItemCondition.GOOD)
    verified_quantity: Mapped[int] = mapped_column(Integer, default=0)
    damaged_quantity: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[HandoverLineStatus] = mapped_column(default=HandoverLineStatus.PENDING)
    discrepancy_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    verified_by: Mapped[Optional[UUID]] = mapped_column(nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    handover: Mapped["ReturnHandover"] = relationship(back_populates="items")


class RiderLedgerEntry(Base):
    """Append-only. A rider's balance is the sum of `amount`."""

    __tablename__ = "rider_ledger_entries"
    __table_args__ = (
        UniqueConstraint("entry_type", "order_id", name="uq_ledger_entry_type_order"),
        Index("ix_rider_ledger_rider_created", "rider_id", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    rider_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"))
    entry_type: Mapped[LedgerEntryType]
    amount: Mapped[Decimal] = mapped_column(Money)
    balance_after: Mapped[Decimal] = mapped_column(Money)
    order_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("orders.id"), nullable=True)
    settlement_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("settlements.id"), nullable=True
    )
    actor_id: Mapped[Optional[UUID]] = mapped_column(nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Settlement(Base):
    __tablename__ = "settlements"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    settlement_number: Mapped[str] = mapped_column(String(48), unique=True)
    rider_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("users.id"), nullable=True, index=True
    )
    manifest_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("manifests.id"), nullable=True
    )
    courier_code: Mapped[Optional[CourierProviderCode]] = mapped_column(nullable=True)
    expected_amount: Mapped[Decimal] = mapped_column(Money)
    declared_amount: Mapped[Decimal] = mapped_column(Money)
    actual_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    variance: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    variance_flagged: Mapped[bool] = mapped_column(default=False)
    status: Mapped[SettlementStatus] = mapped_column(default=SettlementStatus.PENDING)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    requested_by: Mapped[Optional[UUID]] = mapped_column(nullable=True)
    verified_by: Mapped[Optional[UUID]] = mapped_column(nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class LogisticsSyncStatus(Base):
    __tablename__ = "logistics_sync_status"
    __table_args__ = (
        UniqueConstraint("order_id", "provider", name="uq_sync_order_provider"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    order_id: Mapped[UUID] = mapped_column(ForeignKey("orders.id"), index=True)
    provider: Mapped[CourierProviderCode]
    state: Mapped[SyncState] = mapped_column(default=SyncState.PENDING)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    tracking_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    external_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    destination_branch: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    last_provider_status: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
