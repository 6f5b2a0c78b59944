"""Identifier and clock helpers shared by every contract.

Ids are UUIDv7 strings so that lexical order follows creation order.
"""

from __future__ import annotations

import secrets
import threading
import time
import uuid as _uuid
from typing import Final

# Sentinel used by the persisted schema for "no value" foreign keys.
NULL_ID: Final[str] = "0000"

# Monotonic state for same-millisecond ids (RFC 9562 method 2).
_state_lock = threading.Lock()
_last_timestamp_ms = 0
_counter = 0

_USE_NATIVE = hasattr(_uuid, "uuid7")


def new_id() -> str:
    """Return a new time-ordered UUIDv7 string."""
    if _USE_NATIVE:
        return str(_uuid.uuid7())

    global _last_timestamp_ms, _counter

    with _state_lock:
        timestamp_ms = now_ms()

        if timestamp_ms <= _last_timestamp_ms:
            # Same millisecond (or clock went back): keep ordering via the counter.
            timestamp_ms = _last_timestamp_ms
            _counter = (_counter + 1) & 0xFFF
            if _counter == 0:
                timestamp_ms += 1
        else:
            _counter = secrets.randbits(11)
        _last_timestamp_ms = timestamp_ms

        time_high = (timestamp_ms >> 16) & 0xFFFFFFFF
        time_low = timestamp_ms & 0xFFFF
        time_low_and_version = (time_low << 16) | (7 << 12) | _counter

        variant_and_rand = (0b10 << 62) | secrets.randbits(62)
        uuid_int = (time_high << 96) | (time_low_and_version << 64) | variant_and_rand

        return str(_uuid.UUID(int=uuid_int))


def now_ms() -> int:
    """Wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


__all__ = ["NULL_ID", "new_id", "now_ms"]
