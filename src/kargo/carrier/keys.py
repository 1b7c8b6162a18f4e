import hashlib
from datetime import datetime

CARGO_KEY_PREFIX = "LT"
KEY_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
SUFFIX_LENGTH = 6
DOCUMENT_ID_LENGTH = 12


def generate_cargo_key(order_id: str, order_created_at: datetime) -> str:
    """Derive the carrier-facing shipment key for an order.

    "LT" + YYYYMMDD of the order date + 6 characters from [0-9A-Z] taken from
    the SHA-1 of the order id (16 chars, within the carrier's 20 char limit).
    The same order always yields the same key; it doubles as the invoice key.
    """
    date_stamp = order_created_at.strftime("%Y%m%d")
    digest = hashlib.sha1(order_id.encode("utf-8")).digest()
    suffix = "".join(KEY_ALPHABET[byte % len(KEY_ALPHABET)] for byte in digest[:SUFFIX_LENGTH])
    return f"{CARGO_KEY_PREFIX}{date_stamp}{suffix}"


def generate_document_id(order_id: str) -> str:
    """12-digit collection document id for COD shipments, stable per order."""
    digest = hashlib.sha256(order_id.encode("utf-8")).hexdigest()
    number = str(int(digest[:12], 16))
    return number[-DOCUMENT_ID_LENGTH:].rjust(DOCUMENT_ID_LENGTH, "0")
