"""Date-derived ping signatures.

A signature is the first 16 hex digits of SHA256("YYYY-MM-DD" + label) for a
UTC calendar date. Tokens for today and yesterday are both accepted, which
absorbs clock and timezone skew between caller and server.

The rule is public and unkeyed: anyone who knows it can compute a token.
"""

import hashlib
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional

SIGNATURE_LABEL = "ming-mong-server"
SIGNATURE_LENGTH = 16


class ValidationOutcome(Enum):
    """Result of validating a ping."""

    ACCEPTED = "accepted"
    REJECTED_FORMAT = "invalid_format"
    REJECTED_TYPE = "invalid_type"
    REJECTED_SIGNATURE = "invalid_signature"

    @property
    def accepted(self) -> bool:
        return self is ValidationOutcome.ACCEPTED

    @property
    def error_code(self) -> Optional[str]:
        """Wire error code for rejected outcomes, None when accepted."""
        return None if self.accepted else self.value


def derive_signature(day: date) -> str:
    """Derive the signature for a calendar date.

    Args:
        day: UTC calendar date

    Returns:
        16 lowercase hex characters
    """
    data = day.strftime("%Y-%m-%d") + SIGNATURE_LABEL
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:SIGNATURE_LENGTH]


def accepted_signatures(now: Optional[datetime] = None) -> tuple[str, str]:
    """Return the (today, yesterday) signatures for the current UTC date."""
    now = now or datetime.now(timezone.utc)
    today = now.astimezone(timezone.utc).date()
    return derive_signature(today), derive_signature(today - timedelta(days=1))


def is_valid_signature(candidate, now: Optional[datetime] = None) -> bool:
    """Check a candidate token against today's and yesterday's signatures.

    Never raises: malformed candidates simply fail the comparison.
    """
    if not isinstance(candidate, str) or len(candidate) != SIGNATURE_LENGTH:
        return False
    return candidate in accepted_signatures(now)


def validate_ping_message(message, now: Optional[datetime] = None) -> ValidationOutcome:
    """Validate a decoded WebSocket ping message.

    The message must be a JSON object whose type, signature and timestamp
    fields (when present) are strings. A null message or null field counts
    as empty. The timestamp is never inspected.
    """
    if message is None:
        message = {}
    if not isinstance(message, dict):
        return ValidationOutcome.REJECTED_FORMAT
    for field in ("type", "signature", "timestamp"):
        value = message.get(field)
        if value is not None and not isinstance(value, str):
            return ValidationOutcome.REJECTED_FORMAT

    if (message.get("type") or "") != "ping":
        return ValidationOutcome.REJECTED_TYPE
    if not is_valid_signature(message.get("signature") or "", now):
        return ValidationOutcome.REJECTED_SIGNATURE
    return ValidationOutcome.ACCEPTED
