"""
Identifier generation for events, clicks, sessions and visitors.

Ids look like ``clk_0192a3b4c5d6<32 hex chars>``: a kind prefix, the creation
time in milliseconds (10 hex digits, so ids sort roughly by age when eyeballing
logs) and 128 bits from the OS CSPRNG. Only the random part carries uniqueness.
"""
import secrets
import time

ID_PREFIXES = {
    "event": "evt",
    "click": "clk",
    "session": "ses",
    "visitor": "vis",
}

_RANDOM_BYTES = 16


def new_id(kind: str) -> str:
    """Return a fresh opaque identifier for the given kind."""
    try:
        prefix = ID_PREFIXES[kind]
    except KeyError:
        raise ValueError(f"Unknown id kind: {kind!r}") from None

    millis = int(time.time() * 1000) & 0xFFFFFFFFFF
    return f"{prefix}_{millis:010x}{secrets.token_hex(_RANDOM_BYTES)}"
