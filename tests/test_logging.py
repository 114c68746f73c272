"""
Structured logging tests - payload sanitization and operation records.
"""

import logging

import pytest
from unittest.mock import patch

from escrow.util.logging import StructuredLogger, sanitize_payload


@pytest.fixture
def structured_logger():
    return StructuredLogger("escrow_consensus_test")


class TestSanitizePayload:

    def test_redacts_tokens_and_changesets(self):
        payload = {"party_id": "p-1", "invitation_token": "abc123", "changeset": {"terms": {}}}

        sanitized = sanitize_payload(payload)

        assert sanitized == {"party_id": "p-1", "invitation_token": "[REDACTED]", "changeset": "[REDACTED]"}

    def test_nested_structures(self):
        sanitized = sanitize_payload({"context": {"token": "t"}, "items": [{"password": "p"}]})
        assert sanitized == {"context": {"token": "[REDACTED]"}, "items": [{"password": "[REDACTED]"}]}

    def test_truncates_long_strings(self):
        assert sanitize_payload("x" * 150) == "x" * 100 + "..."

    def test_reveal_sensitive(self):
        assert sanitize_payload({"token": "t"}, reveal_sensitive=True) == {"token": "t"}

    def test_custom_field_list(self):
        assert sanitize_payload({"email": "a@b.c"}, sensitive_fields=["email"]) == {"email": "[REDACTED]"}


class TestStructuredLogger:

    def test_log_operation_format(self, structured_logger):
        with patch.object(structured_logger.logger, "log") as mock_log:
            structured_logger.log_operation("delegation.granted", "success", {"delegation_id": "d-1"})

        level, message = mock_log.call_args.args
        assert level == logging.INFO
        assert message == "Operation: delegation.granted, Status: success, Details: {'delegation_id': 'd-1'}"

    def test_approval_check_status(self, structured_logger):
        with patch.object(structured_logger.logger, "log") as mock_log:
            structured_logger.log_approval_check("u-1", "FUND_RELEASE", False, "User not found")

        message = mock_log.call_args.args[1]
        assert "Operation: policy.can_approve, Status: denied" in message
        assert "User not found" in message

    def test_internal_failure_logged_at_error(self, structured_logger):
        with patch.object(structured_logger.logger, "log") as mock_log:
            structured_logger.log_internal_failure("invitation.accept", RuntimeError("boom"),
                                                   {"token": "secret-value"})

        level, message = mock_log.call_args.args
        assert level == logging.ERROR
        assert "RuntimeError" in message
        assert "secret-value" not in message

    def test_handler_installed_once(self):
        first = StructuredLogger("escrow_consensus_handlers")
        second = StructuredLogger("escrow_consensus_handlers")
        assert first.logger is second.logger
        assert len(second.logger.handlers) == 1
