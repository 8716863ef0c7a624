from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.orm.attributes import set_committed_value

from dispatch_hub.schemas.order_schema import OrderCreate, OrderItemCreate
from dispatch_hub.schemas.status_schema import (
    ActivityKind,
    FulfillmentType,
    OrderStatus,
    PaymentMethod,
)
from dispatch_hub.services import order_service
from dispatch_hub.utils.exceptions import (
    InsufficientStock,
    InvalidTransition,
    PermissionDenied,
    ValidationFailed,
)


def order_payload(variant, **overrides) -> OrderCreate:
    data = {
        "customer_name": "Sita Sharma",
        "customer_phone": "+977 9812345678",
        "shipping_address": "Baneshwor, Kathmandu",
        "items": [OrderItemCreate(variant_id=variant.id, quantity=2, unit_price=Decimal("750.00"))],
        "shipping_charge": Decimal("100.00"),
        "discount": Decimal("50.00"),
    }
    data.update(overrides)
    return OrderCreate(**data)


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_totals_and_intake(self, session, variant, operator, activities_of):
        order = await order_service.create_order(session, order_payload(variant), operator)

        assert order.status == OrderStatus.INTAKE
        assert order.subtotal == Decimal("1500.00")
        assert order.cod_due == Decimal("1550.00")
        assert order.order_number.startswith("ORD-")
        assert order.items[0].product_name == variant.name

        history = await activities_of(order.id)
        assert [a.to_status for a in history] == [OrderStatus.INTAKE]

    @pytest.mark.asyncio
    async def test_prepaid_has_nothing_to_collect(self, session, variant):
        order = await order_service.create_order(
            session, order_payload(variant, payment_method=PaymentMethod.PREPAID)
        )
        assert order.cod_due == Decimal("0.00")
        assert order.paid_amount == Decimal("1550.00")

    @pytest.mark.asyncio
    async def test_stock_untouched_at_intake(self, session, variant):
        await order_service.create_order(session, order_payload(variant))
        await session.refresh(variant)
        assert variant.stock == 10

    @pytest.mark.asyncio
    async def test_outside_valley_needs_branch(self, session, variant):
        with pytest.raises(ValidationFailed):
            await order_service.create_order(
                session, order_payload(variant, fulfillment_type=FulfillmentType.OUTSIDE_VALLEY)
            )

    @pytest.mark.asyncio
    async def test_unknown_variant(self, session, variant):
        payload = order_payload(
            variant,
            items=[OrderItemCreate(variant_id=uuid4(), quantity=1, unit_price=Decimal("10"))],
        )
        with pytest.raises(ValidationFailed):
            await order_service.create_order(session, payload)


class TestTransitions:
    @pytest.mark.asyncio
    async def test_disallowed_edge_leaves_status_and_logs_refusal(
        self, session, make_order, operator, activities_of
    ):
        order = await make_order(status=OrderStatus.INTAKE)
        operator_id = operator.id

        with pytest.raises(InvalidTransition):
            await order_service.transition(
                session, order.id, OrderStatus.IN_TRANSIT, operator, reason="skip ahead"
            )

        await session.refresh(order)
        assert order.status == OrderStatus.INTAKE
        history = await activities_of(order.id)
        assert [a.kind for a in history] == [ActivityKind.TRANSITION_REJECTED]
        assert history[0].to_status == OrderStatus.IN_TRANSIT
        assert history[0].actor_id == operator_id
        assert history[0].actor_role == "operator"

    @pytest.mark.asyncio
    async def test_follow_up_then_confirm(self, session, make_order, operator, activities_of):
        order = await make_order(status=OrderStatus.INTAKE)

        await order_service.transition(session, order.id, OrderStatus.FOLLOW_UP, operator, reason="No answer")
        await order_service.transition(session, order.id, OrderStatus.CONFIRMED, operator)

        await session.refresh(order)
        assert order.status == OrderStatus.CONFIRMED
        changes = await activities_of(order.id, ActivityKind.STATUS_CHANGE)
        assert [(a.from_status, a.to_status) for a in changes] == [
            (OrderStatus.INTAKE, OrderStatus.FOLLOW_UP),
            (OrderStatus.FOLLOW_UP, OrderStatus.CONFIRMED),
        ]

    @pytest.mark.asyncio
    async def test_side_effect_targets_need_their_operation(self, session, make_order, operator):
        order = await make_order(status=OrderStatus.CONFIRMED)

        with pytest.raises(InvalidTransition) as exc:
            await order_service.transition(session, order.id, OrderStatus.PACKED, operator)
        assert "pack" in exc.value.message

    @pytest.mark.asyncio
    async def test_stale_status_loses_compare_and_swap(self, session, make_order, operator):
        order = await make_order(status=OrderStatus.CONFIRMED)
        await order_service.pack_order(session, order.id, operator)

        # A second writer still holding the confirmed snapshot
        set_committed_value(order, "status", OrderStatus.CONFIRMED)
        with pytest.raises(InvalidTransition):
            await order_service.apply_transition(
                session, order, OrderStatus.CANCELLED, operator,
                values={"cancellation_reason": "late"},
            )
        await session.refresh(order)
        assert order.status == OrderStatus.PACKED

    @pytest.mark.asyncio
    async def test_lost_in_transit_needs_admin(self, session, make_order, manager, admin):
        order = await make_order(
            status=OrderStatus.RTO, fulfillment_type=FulfillmentType.OUTSIDE_VALLEY
        )
        with pytest.raises(PermissionDenied):
            await order_service.mark_lost_in_transit(session, order.id, manager)

        await session.refresh(order)
        await session.refresh(admin)
        await order_service.mark_lost_in_transit(session, order.id, admin, "Courier lost parcel")
        await session.refresh(order)
        assert order.status == OrderStatus.LOST_IN_TRANSIT


class TestPacking:
    @pytest.mark.asyncio
    async def test_pack_reserves_stock_once(self, session, make_order, variant, operator):
        order = await make_order(quantity=3)

        await order_service.pack_order(session, order.id, operator)
        with pytest.raises(InvalidTransition):
            await order_service.pack_order(session, order.id, operator)

        await session.refresh(order)
        await session.refresh(variant)
        assert order.status == OrderStatus.PACKED
        assert order.packed_at is not None
        assert variant.stock == 7

    @pytest.mark.asyncio
    async def test_short_stock_writes_nothing(self, session, make_order, variant, operator):
        order = await make_order(quantity=11)

        with pytest.raises(InsufficientStock):
            await order_service.pack_order(session, order.id, operator)

        await session.refresh(order)
        await session.refresh(variant)
        assert order.status == OrderStatus.CONFIRMED
        assert variant.stock == 10

    @pytest.mark.asyncio
    async def test_cancel_after_pack_restocks(self, session, make_order, variant, operator):
        order = await make_order(quantity=2)
        await order_service.pack_order(session, order.id, operator)

        await order_service.cancel_order(session, order.id, "Customer changed mind", operator)

        await session.refresh(order)
        await session.refresh(variant)
        assert order.status == OrderStatus.CANCELLED
        assert order.cancellation_reason == "Customer changed mind"
        assert order.cancelled_at is not None
        assert variant.stock == 10

    @pytest.mark.asyncio
    async def test_cancel_before_pack_leaves_stock(self, session, make_order, variant, operator):
        order = await make_order(status=OrderStatus.INTAKE, quantity=2)

        await order_service.cancel_order(session, order.id, "Duplicate", operator)

        await session.refresh(variant)
        assert variant.stock == 10

    @pytest.mark.asyncio
    async def test_cannot_cancel_after_dispatch(self, session, make_order, operator):
        order = await make_order(status=OrderStatus.OUT_FOR_DELIVERY)

        with pytest.raises(InvalidTransition):
            await order_service.cancel_order(session, order.id, "Too late", operator)
