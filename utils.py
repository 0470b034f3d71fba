import re
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional


BEP20_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
# Numeric(18, 2) columns hold 16 integer digits
MAX_AMOUNT = Decimal("1000000000000")


def validate_email(email):
    return re.match(r'^[\w\.-]+@[\w\.-]+\.\w+$', email or "")


def validate_username(username):
    return re.match(r'^[A-Za-z0-9_\.]{3,40}$', username or "")


def validate_wallet_address(address):
    return bool(address) and BEP20_ADDRESS_RE.match(address) is not None


def validate_tx_hash(tx_hash):
    return bool(tx_hash) and TX_HASH_RE.match(tx_hash) is not None


def parse_amount(value) -> Optional[Decimal]:
    """Positive, finite Decimal from JSON input, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0 or amount > MAX_AMOUNT:
        return None
    return amount


def generate_referral_code(length: int = 8) -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(length))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
