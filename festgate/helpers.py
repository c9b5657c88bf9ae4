import time
import re
import uuid
from datetime import datetime, timezone
from zoneinfo import ZoneInfo
import hmac
import hashlib
from typing import Optional

from .config import APP_TIMEZONE


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def new_id() -> str:
    return uuid.uuid4().hex


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def to_local_display(ts: float | None) -> Optional[str]:
    # what gate staff read on the scanner screen
    if ts is None:
        return None
    dt = datetime.fromtimestamp(ts, tz=ZoneInfo(APP_TIMEZONE))
    return dt.strftime("%A, %d %B %Y %I:%M:%S %p")


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def hmac_sha256_hex(secret: str, message: bytes | str) -> str:
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
