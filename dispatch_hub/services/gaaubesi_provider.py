from typing import Any, Optional

from dispatch_hub.config.config import settings
from dispatch_hub.models.models import Order
from dispatch_hub.schemas.logistics_schema import BookingResult, NormalizedStatus, TrackingStatus
from dispatch_hub.schemas.status_schema import CourierProviderCode, OrderStatus
from dispatch_hub.services.courier_provider import (
    CourierProvider,
    cod_amount,
    package_description,
    sanitize_receiver_phone,
)
from dispatch_hub.utils.exceptions import ProviderBookingFailed
from dispatch_hub.utils.utils import normalize_branch, sanitize_phone

S = OrderStatus

GAAUBESI_STATUS_MAP: dict[str, Optional[OrderStatus]] = {
    "drop_off_order_created": S.HANDED_TO_COURIER,
    "pickup_order_created": S.HANDED_TO_COURIER,
    "package_picked": S.IN_TRANSIT,
    "package_in_transit": S.IN_TRANSIT,
    "package_at_branch": S.IN_TRANSIT,
    "out_for_delivery": S.IN_TRANSIT,
    "delivered": S.DELIVERED,
    "return_initiated": S.RTO,
    "returned": S.RTO,
    "delivery_attempted": None,
    "on_hold": None,
    "customer_not_available": None,
    "cancelled": None,
}


class GaauBesiProvider(CourierProvider):
    code = CourierProviderCode.GAAUBESI
    booking_path = "/order/create/"
    status_map = GAAUBESI_STATUS_MAP
    signature_header = "x-gbl-secret"

    def __init__(self, transport=None):
        super().__init__(transport)
        self.base_url = settings.GAAUBESI_API_URL

    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Token {settings.GAAUBESI_API_TOKEN}",
        }

    def webhook_secret(self) -> Optional[str]:
        return settings.GAAUBESI_WEBHOOK_SECRET

    def build_booking_payload(self, order: Order, destination_branch: str) -> dict[str, Any]:
        description = package_description(order, limit=250)
        cod = cod_amount(order)
        return {
            "branch": normalize_branch(settings.GAAUBESI_SOURCE_BRANCH),
            "destination_branch": normalize_branch(destination_branch, default="HEAD OFFICE"),
            "receiver_name": order.customer_name,
            "receiver_number": sanitize_receiver_phone(order.customer_phone),
            "alt_receiver_number": sanitize_phone(order.alt_phone),
            "receiver_address": order.shipping_address,
            "cod_charge": cod,
            # Outside valley orders are always branch pickups
            "delivery_type": "Pickup",
            "product_name": description,
            "package_type": description,
            "package_access": "Can't Open" if cod else "Can Open",
            "remarks": f"Order #{order.order_number}",
            "order_contact_name": settings.VENDOR_REFERENCE,
            "order_contact_number": settings.COMPANY_PHONE,
        }

    def parse_booking_response(self, data: dict[str, Any]) -> BookingResult:
        if data.get("success") is False or data.get("error") or data.get("errors"):
            error = data.get("error") or data.get("errors") or data.get("message")
            raise ProviderBookingFailed(f"Gaau Besi rejected booking: {error}", retryable=False, body=data)
        tracking_id = data.get("order_id") or data.get("tracking_id")
        if not tracking_id:
            raise ProviderBookingFailed("Gaau Besi did not return an order id", retryable=False, body=data)
        return BookingResult(tracking_id=str(tracking_id), external_order_id=str(tracking_id), raw=data)

    async def get_tracking(self, tracking_id: str) -> TrackingStatus:
        data = await self._request("GET", "/order/status/", params={"order_id": tracking_id})
        if not data.get("success", True):
            raise ProviderBookingFailed(
                data.get("message") or f"Gaau Besi has no status for {tracking_id}", retryable=False
            )
        statuses = data.get("status") or []
        provider_status = statuses[0] if statuses else "Unknown"
        known, status = self.map_status(provider_status)
        return TrackingStatus(
            tracking_id=tracking_id,
            provider_status=provider_status,
            status=status,
            known=known,
            remarks=provider_status,
        )

    def handle_webhook(self, payload: dict[str, Any]) -> NormalizedStatus:
        tracking_id = payload.get("order_id") or payload.get("tracking_id")
        if not tracking_id:
            return NormalizedStatus(provider=self.code, is_ping=True)
        return self._normalize(
            payload,
            tracking_id,
            payload.get("status") or payload.get("last_delivery_status"),
            remarks=payload.get("remarks"),
            location=payload.get("branch"),
        )
