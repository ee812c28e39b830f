from __future__ import annotations

import secrets
from datetime import datetime, timezone

CHECKOUT_REFERENCE_PREFIX = "PAY"
MANUAL_REFERENCE_PREFIX = "ADMIN_MANUAL"
ACCESS_TOKEN_BYTES = 32


def generate_reference(prefix: str = CHECKOUT_REFERENCE_PREFIX, *, now_utc: datetime | None = None) -> str:
    moment = now_utc or datetime.now(timezone.utc)
    unix_ms = int(moment.timestamp() * 1000)
    return f"{prefix}_{unix_ms}_{secrets.token_hex(8)}"


def generate_access_token() -> str:
    return secrets.token_hex(ACCESS_TOKEN_BYTES)


def tokens_match(expected: str | None, provided: str | None) -> bool:
    if not expected or not provided:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))
