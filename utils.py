# utils.py
from __future__ import annotations

import base64
import hashlib
import hmac
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Optional


# ---------------------------------------------------------------------------
# Webhook HMAC verification (Base64-encoded SHA256 HMAC, e.g. from Shopify)
# ---------------------------------------------------------------------------

def verify_hmac(secret: str, data: bytes | str, hmac_header: str) -> bool:
    """
    Verifies an HMAC header (base64 encoded SHA256 digest) against a secret.

    Args:
        secret: The shared secret string.
        data:   The raw request body as bytes or str.
        hmac_header: The header value you received (base64-encoded digest).

    Returns:
        True if valid, False otherwise.
    """
    if not secret:
        return False
    if isinstance(data, str):
        data = data.encode("utf-8")

    digest = hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()
    computed_b64 = base64.b64encode(digest).decode("utf-8")
    return hmac.compare_digest(computed_b64, (hmac_header or "").strip())


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def erp_timestamp(dt: datetime) -> str:
    """ERP watermark format: YYYYMMDDHHmmss in UTC."""
    return dt.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S")


def erp_timestamp_minutes_ago(minutes: int) -> str:
    return erp_timestamp(utcnow() - timedelta(minutes=minutes))


# ---------------------------------------------------------------------------
# Phone numbers
# ---------------------------------------------------------------------------

def format_phone_number(phone: Optional[str]) -> Optional[str]:
    """
    Normalize an Indian mobile number to 91XXXXXXXXXX.
    Returns None when the number can't be normalized.
    """
    if not phone:
        return None
    digits = re.sub(r"\s+", "", str(phone))
    if digits.startswith("+"):
        digits = digits[1:]
    if len(digits) == 12:
        return digits if digits.startswith("91") else None
    if len(digits) == 10:
        return "91" + digits
    return None


def local_phone_number(phone: Optional[str]) -> Optional[str]:
    """Rider API wants the 10 digit form."""
    if not phone:
        return None
    digits = re.sub(r"\s+", "", str(phone)).lstrip("+")
    if len(digits) == 12 and digits.startswith("91"):
        return digits[2:]
    return digits
