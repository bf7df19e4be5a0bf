# cooldown.py - Donkey Mapping Initiative
# Email OTP resend cooldown, kept as an absolute expiry in the user's session.

from __future__ import annotations

import math
import time
from typing import MutableMapping, Optional

from backend import DEFAULT_RETRY_AFTER, RateLimited


STORAGE_KEY = "email_rate_limit_until"


def _now(now: Optional[float]) -> float:
    return time.time() if now is None else float(now)


def start(
    store: MutableMapping,
    seconds: Optional[int] = None,
    now: Optional[float] = None,
    default: int = DEFAULT_RETRY_AFTER,
) -> int:
    """Begin (or restart) the cooldown. Returns the length actually applied."""
    try:
        seconds = int(seconds or 0)
    except (TypeError, ValueError):
        seconds = 0
    if seconds <= 0:
        seconds = default
    store[STORAGE_KEY] = _now(now) + seconds
    return seconds


def remaining(store: MutableMapping, now: Optional[float] = None) -> int:
    """
    Whole seconds left (rounded up). An expired or unreadable entry is
    dropped from the store and reported as 0.
    """
    until = store.get(STORAGE_KEY)
    if until is None:
        return 0
    try:
        until = float(until)
    except (TypeError, ValueError):
        store.pop(STORAGE_KEY, None)
        return 0
    left = until - _now(now)
    if left <= 0:
        store.pop(STORAGE_KEY, None)
        return 0
    return int(math.ceil(left))


def is_active(store: MutableMapping, now: Optional[float] = None) -> bool:
    return remaining(store, now) > 0


def clear(store: MutableMapping) -> None:
    store.pop(STORAGE_KEY, None)


def seconds_from_error(err: Exception, default: int = DEFAULT_RETRY_AFTER) -> int:
    if isinstance(err, RateLimited) and err.retry_after:
        return int(err.retry_after)
    return default


def wait_message(seconds: int) -> str:
    return f"Email rate limit exceeded. Please wait {int(seconds)} seconds before trying again."
