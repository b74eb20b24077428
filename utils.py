from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from datetime import datetime, timedelta, timezone
import re

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

CENT = Decimal("0.01")

WALLET_ADDRESS_RE = re.compile(r'^0x[a-fA-F0-9]{40}$')


def utcnow():
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value):
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def start_of_day(value):
    value = as_naive_utc(value)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def whole_days_between(start, end):
    if end <= start:
        return 0
    return (end - start) // timedelta(days=1)


def to_decimal(value, field_name="amount"):
    """Decimal conversion that never goes through float formatting."""
    if value is None:
        raise ValueError(f"{field_name} cannot be None")
    if isinstance(value, Decimal):
        return value
    try:
        if isinstance(value, (int, float, str)):
            return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValueError(f"Decimal conversion failed for {field_name}: {e}")
    raise ValueError(f"Invalid type for {field_name}: {type(value)}")


def money(value):
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def validate_wallet_address(address):
    return bool(address) and bool(WALLET_ADDRESS_RE.match(address))


def build_retry_session(total=3, backoff_factor=1):
    """requests session that retries throttled and 5xx responses"""
    session = requests.Session()
    retry_strategy = Retry(
        total=total,
        backoff_factor=backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET", "POST"],
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session
