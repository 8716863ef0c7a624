import re
import secrets
import string
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

TWO_PLACES = Decimal("0.01")


def to_money(value) -> Decimal:
    """Normalise an amount to a 2dp Decimal."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def random_code(length: int = 6) -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_order_number(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"ORD-{now:%y%m%d}-{random_code(6)}"


def generate_manifest_number(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"MAN-{now:%Y%m%d}-{random_code(4)}"


def generate_handover_number(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"RH-{now:%Y%m%d}-{random_code(4)}"


def settlement_prefix(party_code: str, now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"SET-{now:%Y%m%d}-{party_code.upper()}"


def sanitize_phone(phone: str | None) -> str:
    """Strip everything but digits and keep the last 10 (drops +977 / 977)."""
    if not phone:
        return ""
    digits = re.sub(r"\D", "", phone)
    return digits[-10:]


def normalize_branch(branch: str | None, default: str = "") -> str:
    return (branch or default).strip().upper()


def normalize_status_key(status: str | None) -> str:
    """'Sent for Delivery' -> 'sent_for_delivery'"""
    return re.sub(r"[\s\-]+", "_", (status or "").strip().lower())
