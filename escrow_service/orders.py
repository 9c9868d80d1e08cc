import hashlib
import re

ORDER_ID_PATTERN = re.compile(r"^0x[0-9a-f]{64}$")


def derive_order_id(payment_ref: str) -> str:
    """Fixed-width order id for a payment reference (sha3-256, 0x-prefixed hex)."""
    if not payment_ref:
        raise ValueError("payment_ref must be a non-empty string")
    return "0x" + hashlib.sha3_256(payment_ref.encode("utf-8")).hexdigest()


def is_order_id(value: str) -> bool:
    return bool(ORDER_ID_PATTERN.match(value or ""))
