"""
Courier provider interface.

Each provider implements booking, tracking and webhook parsing against its
own API; status vocabularies are plain lookup tables. A table value of None
marks a status as known but informational (no order transition).
"""
import hmac
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from dispatch_hub.models.models import Order
from dispatch_hub.schemas.logistics_schema import BookingResult, NormalizedStatus, TrackingStatus
from dispatch_hub.schemas.status_schema import CourierProviderCode, OrderStatus, PaymentMethod
from dispatch_hub.utils.exceptions import NotFound, ProviderBookingFailed
from dispatch_hub.utils.logger_config import COURIER_LOGGER, setup_logger
from dispatch_hub.utils.utils import normalize_status_key, sanitize_phone, to_money

logger = setup_logger(COURIER_LOGGER)

PING_EVENTS = {"test", "webhook.test"}


def package_description(order: Order, limit: int = 200) -> str:
    """'Ladies Work Bag * 3, Macbook Air * 2'"""
    text = ", ".join(f"{item.product_name} * {item.quantity}" for item in order.items)
    return text[:limit]


def cod_amount(order: Order) -> int:
    if order.payment_method != PaymentMethod.COD:
        return 0
    return int(to_money(order.cod_due).to_integral_value())


class CourierProvider(ABC):
    code: CourierProviderCode
    base_url: str
    booking_path: str
    status_map: dict[str, Optional[OrderStatus]] = {}
    signature_header: str = "x-webhook-secret"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    # HTTP

    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers(),
            timeout=30.0,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        """Call the provider and turn every failure into ProviderBookingFailed."""
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(
                f"{self.code.value} {method} {path} returned {status_code}: {e.response.text[:500]}"
            )
            raise ProviderBookingFailed(
                f"{self.code.value} API error {status_code}",
                retryable=status_code >= 500 or status_code == 429,
                provider=self.code.value,
                status_code=status_code,
            ) from e
        except httpx.RequestError as e:
            logger.error(f"{self.code.value} {method} {path} failed: {e!r}")
            raise ProviderBookingFailed(
                f"{self.code.value} unreachable: {e.__class__.__name__}",
                retryable=True,
                provider=self.code.value,
            ) from e
        except ValueError as e:
            raise ProviderBookingFailed(
                f"{self.code.value} returned a non-JSON response",
                retryable=True,
                provider=self.code.value,
            ) from e

    # Status vocabulary

    def map_status(self, provider_status: Optional[str]) -> tuple[bool, Optional[OrderStatus]]:
        """Return (known, canonical status) for a provider status string."""
        key = normalize_status_key(provider_status)
        if key in self.status_map:
            return True, self.status_map[key]
        return False, None

    # Capabilities

    @abstractmethod
    def build_booking_payload(self, order: Order, destination_branch: str) -> dict[str, Any]:
        ...

    @abstractmethod
    def parse_booking_response(self, data: dict[str, Any]) -> BookingResult:
        ...

    @abstractmethod
    async def get_tracking(self, tracking_id: str) -> TrackingStatus:
        ...

    @abstractmethod
    def handle_webhook(self, payload: dict[str, Any]) -> NormalizedStatus:
        ...

    async def create_booking(self, order: Order, destination_branch: str) -> BookingResult:
        payload = self.build_booking_payload(order, destination_branch)
        logger.info(
            f"Booking order {order.order_number} with {self.code.value} -> {destination_branch}"
        )
        data = await self._request("POST", self.booking_path, json=payload)
        return self.parse_booking_response(data)

    def webhook_secret(self) -> Optional[str]:
        return None

    def verify_webhook(self, headers: dict[str, str], raw_body: bytes) -> bool:
        """Shared-secret header check."""
        secret = self.webhook_secret()
        if not secret:
            logger.error(f"No webhook secret configured for {self.code.value}; rejecting")
            return False
        supplied = headers.get(self.signature_header) or ""
        return hmac.compare_digest(supplied, secret)

    def _normalize(self, payload: dict[str, Any], tracking_id, provider_status, **extra) -> NormalizedStatus:
        known, status = self.map_status(provider_status)
        if provider_status and not known:
            logger.warning(f"Unmapped {self.code.value} status '{provider_status}' for {tracking_id}")
        return NormalizedStatus(
            provider=self.code,
            tracking_id=str(tracking_id) if tracking_id else None,
            provider_status=provider_status,
            status=status,
            known=known,
            **extra,
        )


_registry: dict[CourierProviderCode, CourierProvider] = {}


def register_provider(provider: CourierProvider) -> None:
    _registry[provider.code] = provider


def get_provider(code: CourierProviderCode) -> CourierProvider:
    if code not in _registry:
        # Provider modules import this one.
        from dispatch_hub.services.gaaubesi_provider import GaauBesiProvider
        from dispatch_hub.services.generic_provider import GenericProvider
        from dispatch_hub.services.ncm_provider import NCMProvider

        defaults = {
            CourierProviderCode.NCM: NCMProvider,
            CourierProviderCode.GAAUBESI: GaauBesiProvider,
            CourierProviderCode.GENERIC: GenericProvider,
        }
        if code not in defaults:
            raise NotFound(f"Unknown courier provider '{code}'")
        register_provider(defaults[code]())
    return _registry[code]


def reset_providers() -> None:
    _registry.clear()


def sanitize_receiver_phone(phone: Optional[str]) -> str:
    phone = sanitize_phone(phone)
    if len(phone) != 10:
        raise ProviderBookingFailed(
            f"Receiver phone '{phone}' is not a 10-digit number", retryable=False
        )
    return phone
