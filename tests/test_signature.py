"""Tests for server/signature.py - date-derived ping signatures."""

import hashlib
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add src to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from server.signature import (
    SIGNATURE_LABEL,
    SIGNATURE_LENGTH,
    ValidationOutcome,
    accepted_signatures,
    derive_signature,
    is_valid_signature,
    validate_ping_message,
)


def _expected(day_str):
    data = (day_str + "ming-mong-server").encode("utf-8")
    return hashlib.sha256(data).hexdigest()[:16]


class TestDeriveSignature:
    """Tests for derive_signature."""

    def test_known_date(self):
        """Signature is the SHA256 prefix of date + label."""
        assert derive_signature(date(2024, 1, 15)) == _expected("2024-01-15")

    def test_length_and_alphabet(self):
        """Signature is 16 lowercase hex characters."""
        token = derive_signature(date(2024, 1, 15))
        assert len(token) == SIGNATURE_LENGTH == 16
        assert all(c in "0123456789abcdef" for c in token)

    def test_deterministic(self):
        """Same date always yields the same token."""
        day = date(2025, 6, 30)
        assert derive_signature(day) == derive_signature(day)

    def test_zero_padded_date(self):
        """Month and day are zero padded in the hashed string."""
        assert derive_signature(date(2024, 3, 5)) == _expected("2024-03-05")

    def test_consecutive_days_differ(self):
        """Adjacent dates produce different tokens."""
        assert derive_signature(date(2024, 1, 15)) != derive_signature(date(2024, 1, 16))

    def test_label(self):
        """The fixed label is part of the hashed input."""
        assert SIGNATURE_LABEL == "ming-mong-server"


class TestAcceptedSignatures:
    """Tests for accepted_signatures."""

    def test_today_and_yesterday(self, fixed_now):
        """Returns today's and yesterday's tokens, in that order."""
        today, yesterday = accepted_signatures(fixed_now)
        assert today == _expected("2024-01-15")
        assert yesterday == _expected("2024-01-14")

    def test_uses_utc_date(self):
        """A local time past midnight still maps to the UTC date."""
        # 01:00 at UTC+5 is 20:00 UTC the previous day
        now = datetime(2024, 1, 16, 1, 0, tzinfo=timezone(timedelta(hours=5)))
        today, _ = accepted_signatures(now)
        assert today == _expected("2024-01-15")

    def test_month_boundary(self):
        """Yesterday crosses month and year boundaries."""
        now = datetime(2024, 1, 1, 0, 0, 1, tzinfo=timezone.utc)
        _, yesterday = accepted_signatures(now)
        assert yesterday == _expected("2023-12-31")

    def test_defaults_to_current_time(self):
        """Without an instant, the current UTC date is used."""
        today = datetime.now(timezone.utc).date()
        assert derive_signature(today) in accepted_signatures()


class TestIsValidSignature:
    """Tests for is_valid_signature."""

    def test_today_accepted(self, fixed_now):
        assert is_valid_signature(_expected("2024-01-15"), fixed_now)

    def test_yesterday_accepted(self, fixed_now):
        assert is_valid_signature(_expected("2024-01-14"), fixed_now)

    def test_two_days_ago_rejected(self, fixed_now):
        assert not is_valid_signature(_expected("2024-01-13"), fixed_now)

    def test_tomorrow_rejected(self, fixed_now):
        assert not is_valid_signature(_expected("2024-01-16"), fixed_now)

    @pytest.mark.parametrize("candidate", ["", None, 12345, b"0123456789abcdef", [], "short"])
    def test_malformed_rejected(self, candidate, fixed_now):
        """Non-strings and wrong lengths fail without raising."""
        assert not is_valid_signature(candidate, fixed_now)

    def test_prefix_extension_rejected(self, fixed_now):
        """A valid token with trailing characters is rejected."""
        assert not is_valid_signature(_expected("2024-01-15") + "0", fixed_now)

    def test_case_sensitive(self, fixed_now):
        """Comparison is exact; an upper-cased token does not match."""
        token = _expected("2024-01-15")
        if token.upper() == token:
            pytest.skip("token has no hex letters")
        assert not is_valid_signature(token.upper(), fixed_now)


class TestValidatePingMessage:
    """Tests for validate_ping_message."""

    def test_valid_ping(self, fixed_now):
        message = {
            "type": "ping",
            "signature": _expected("2024-01-15"),
            "timestamp": "2024-01-15T10:30:44Z",
        }
        outcome = validate_ping_message(message, fixed_now)
        assert outcome is ValidationOutcome.ACCEPTED
        assert outcome.accepted
        assert outcome.error_code is None

    def test_timestamp_optional_and_unchecked(self, fixed_now):
        """The client timestamp is never inspected."""
        message = {"type": "ping", "signature": _expected("2024-01-14"), "timestamp": "garbage"}
        assert validate_ping_message(message, fixed_now).accepted
        del message["timestamp"]
        assert validate_ping_message(message, fixed_now).accepted

    def test_wrong_type(self, fixed_now):
        message = {"type": "hello", "signature": _expected("2024-01-15")}
        outcome = validate_ping_message(message, fixed_now)
        assert outcome is ValidationOutcome.REJECTED_TYPE
        assert outcome.error_code == "invalid_type"

    def test_missing_type(self, fixed_now):
        message = {"signature": _expected("2024-01-15")}
        assert validate_ping_message(message, fixed_now) is ValidationOutcome.REJECTED_TYPE

    def test_null_message(self, fixed_now):
        """A JSON null decodes to an empty message, so the type is wrong."""
        assert validate_ping_message(None, fixed_now) is ValidationOutcome.REJECTED_TYPE

    def test_null_fields(self, fixed_now):
        """Null field values count as absent."""
        message = {"type": None, "signature": "x", "timestamp": None}
        assert validate_ping_message(message, fixed_now) is ValidationOutcome.REJECTED_TYPE

        message = {"type": "ping", "signature": None}
        assert validate_ping_message(message, fixed_now) is ValidationOutcome.REJECTED_SIGNATURE

    def test_bad_signature(self, fixed_now):
        message = {"type": "ping", "signature": "0000000000000000"}
        outcome = validate_ping_message(message, fixed_now)
        assert outcome is ValidationOutcome.REJECTED_SIGNATURE
        assert outcome.error_code == "invalid_signature"

    def test_missing_signature(self, fixed_now):
        outcome = validate_ping_message({"type": "ping"}, fixed_now)
        assert outcome is ValidationOutcome.REJECTED_SIGNATURE

    @pytest.mark.parametrize("message", [
        ["ping"],
        "ping",
        42,
        True,
        {"type": 1, "signature": "x"},
        {"type": "ping", "signature": 1234567890123456},
        {"type": "ping", "signature": "abc", "timestamp": 17},
    ])
    def test_format_errors(self, message, fixed_now):
        """Non-objects and non-string fields are format errors."""
        outcome = validate_ping_message(message, fixed_now)
        assert outcome is ValidationOutcome.REJECTED_FORMAT
        assert outcome.error_code == "invalid_format"
