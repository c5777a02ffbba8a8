"""
Tests for log processors.
"""
import pytest

from creator_ledger.monitoring.logging import add_app_context, mask_sensitive_fields


class TestLogProcessors:
    """Test suite for structlog processors."""

    @pytest.mark.unit
    def test_sensitive_fields_masked(self) -> None:
        """Account numbers and phones keep only their last four characters."""
        event = mask_sensitive_fields(
            None,
            "info",
            {
                "event": "payout_requested",
                "phone_number": "+254712345678",
                "account_details": {"account_number": "0123456789", "bank_code": "058"},
                "amount_minor": 2000,
            },
        )

        assert event["phone_number"] == "*********5678"
        assert event["account_details"] == {"account_number": "******6789", "bank_code": "058"}
        assert event["amount_minor"] == 2000

    @pytest.mark.unit
    def test_short_and_missing_values(self) -> None:
        """Short values are left readable and None is untouched."""
        event = mask_sensitive_fields(None, "info", {"payer_email": None, "client_secret": "abc"})

        assert event == {"payer_email": None, "client_secret": "abc"}

    @pytest.mark.unit
    def test_app_context(self) -> None:
        """Every event carries the application name and environment."""
        event = add_app_context(None, "info", {"event": "x"})

        assert event["app_name"] == "creator-ledger-test"
        assert event["app_env"] == "test"
