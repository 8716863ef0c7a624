from typing import Any, Optional

from dispatch_hub.config.config import settings
from dispatch_hub.models.models import Order
from dispatch_hub.schemas.logistics_schema import BookingResult, NormalizedStatus, TrackingStatus
from dispatch_hub.schemas.status_schema import CourierProviderCode, OrderStatus
from dispatch_hub.services.courier_provider import (
    PING_EVENTS,
    CourierProvider,
    cod_amount,
    package_description,
    sanitize_receiver_phone,
)
from dispatch_hub.utils.exceptions import ProviderBookingFailed
from dispatch_hub.utils.utils import normalize_branch, sanitize_phone, to_money

S = OrderStatus

NCM_STATUS_MAP: dict[str, Optional[OrderStatus]] = {
    # pickup
    "pickup_order_created": S.HANDED_TO_COURIER,
    "drop_off_order_created": S.HANDED_TO_COURIER,
    "order_created": S.HANDED_TO_COURIER,
    "booked": S.HANDED_TO_COURIER,
    "pickup_completed": S.IN_TRANSIT,
    "picked_up": S.IN_TRANSIT,
    "order_picked": S.IN_TRANSIT,
    # transit
    "order_dispatched": S.IN_TRANSIT,
    "dispatched": S.IN_TRANSIT,
    "order_arrived": S.IN_TRANSIT,
    "arrived": S.IN_TRANSIT,
    "in_transit": S.IN_TRANSIT,
    "hub_received": S.IN_TRANSIT,
    "package_at_hub": S.IN_TRANSIT,
    "sent_for_delivery": S.IN_TRANSIT,
    "out_for_delivery": S.IN_TRANSIT,
    "redirect": S.IN_TRANSIT,
    "redirected": S.IN_TRANSIT,
    # delivered
    "delivery_completed": S.DELIVERED,
    "delivered": S.DELIVERED,
    # return to origin; the hub verifies before anything is `returned`
    "return_request": S.RTO,
    "return_initiated": S.RTO,
    "rto": S.RTO,
    "rto_initiated": S.RTO,
    "return_in_transit": S.RTO,
    "customer_rejected": S.RTO,
    "return_completed": S.RTO,
    "returned": S.RTO,
    "rto_completed": S.RTO,
    "returned_to_vendor": S.RTO,
    "delivered_to_merchant": S.RTO,
    # informational
    "undelivered": None,
    "on_hold": None,
    "hold": None,
    "address_issue": None,
    "customer_not_available": None,
    "phone_unreachable": None,
    "rescheduled": None,
    "cancelled": None,
    "order_cancelled": None,
}

DELIVERY_TYPES = {
    "door2door": "Door2Door",
    "home_delivery": "Door2Door",
    "d2d": "Door2Door",
    "door2branch": "Door2Branch",
    "pickup": "Door2Branch",
    "d2b": "Door2Branch",
}


class NCMProvider(CourierProvider):
    """Nepal Can Move."""

    code = CourierProviderCode.NCM
    booking_path = "/order/create"
    status_map = NCM_STATUS_MAP
    signature_header = "x-ncm-secret"

    def __init__(self, transport=None, delivery_type: str = "Door2Door"):
        super().__init__(transport)
        self.base_url = settings.NCM_API_URL
        self.delivery_type = DELIVERY_TYPES.get(delivery_type.lower(), delivery_type)

    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Token {settings.NCM_API_TOKEN}",
        }

    def webhook_secret(self) -> Optional[str]:
        return settings.NCM_WEBHOOK_SECRET

    def build_booking_payload(self, order: Order, destination_branch: str) -> dict[str, Any]:
        return {
            "name": order.customer_name,
            "phone": sanitize_receiver_phone(order.customer_phone),
            "phone2": sanitize_phone(order.alt_phone),
            # NCM expects the COD charge as a string
            "cod_charge": str(cod_amount(order)),
            "address": order.shipping_address,
            "fbranch": normalize_branch(settings.NCM_SOURCE_BRANCH),
            "branch": normalize_branch(destination_branch),
            "package": package_description(order),
            "vref_id": settings.VENDOR_REFERENCE,
            "instruction": f"Order #{order.order_number}"
            + (f" | {order.delivery_instructions}" if order.delivery_instructions else ""),
            "delivery_type": self.delivery_type,
        }

    def parse_booking_response(self, data: dict[str, Any]) -> BookingResult:
        # NCM can answer 200 with an error body
        if data.get("Error") or data.get("error") or data.get("success") is False:
            error = data.get("Error") or data.get("error") or data.get("message")
            raise ProviderBookingFailed(f"NCM rejected booking: {error}", retryable=False, body=data)
        tracking_id = data.get("orderid") or data.get("order_id") or data.get("tracking_id")
        if not tracking_id:
            raise ProviderBookingFailed("NCM did not return an order id", retryable=False, body=data)
        return BookingResult(tracking_id=str(tracking_id), external_order_id=str(tracking_id), raw=data)

    async def get_tracking(self, tracking_id: str) -> TrackingStatus:
        data = await self._request("GET", "/order/status", params={"id": tracking_id})
        # Newest status first
        entries = data if isinstance(data, list) else data.get("data") or []
        latest = entries[0] if entries else {}
        provider_status = latest.get("status") or "Unknown"
        known, status = self.map_status(provider_status)
        return TrackingStatus(
            tracking_id=tracking_id,
            provider_status=provider_status,
            status=status,
            known=known,
            location=latest.get("location"),
            remarks=latest.get("remarks"),
        )

    def handle_webhook(self, payload: dict[str, Any]) -> NormalizedStatus:
        tracking_id = payload.get("order_id") or payload.get("tracking_id")
        is_ping = (
            payload.get("test") in (True, "true")
            or payload.get("event") in PING_EVENTS
            or payload.get("type") == "test"
            or not tracking_id
        )
        if is_ping:
            return NormalizedStatus(provider=self.code, is_ping=True)
        cod = payload.get("cod_amount")
        return self._normalize(
            payload,
            tracking_id,
            payload.get("status"),
            remarks=payload.get("remarks"),
            location=payload.get("location"),
            receiver_name=payload.get("receiver_name"),
            cod_amount=to_money(cod) if cod not in (None, "") else None,
        )
