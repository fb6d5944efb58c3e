import hmac
import re
import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def now_ts() -> float:
    """Wall clock seconds; every stored timestamp uses this."""
    return time.time()


def to_iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def new_ticket_token() -> str:
    # unguessable: not derived from the order or any sequence
    return secrets.token_urlsafe(32)


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and _EMAIL_RE.match(email.strip()) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
