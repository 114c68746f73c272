"""
Structured operation logging for the consensus engine.
Every log line carries the operation name, a status and sanitized details.
"""

import logging
from typing import Any, Dict, List

DEFAULT_SENSITIVE_FIELDS = ['invitation_token', 'token', 'secret', 'password', 'changeset']


class StructuredLogger:
    """Structured logger for delegation, amendment and invitation operations."""

    def __init__(self, name: str = "escrow_consensus"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {sanitize_payload(details)}"

        self.logger.log(level, message)

    def log_delegation_change(self, action: str, delegation_id: str, actor_id: str, details: Dict[str, Any] = None):
        """Log a grant, update or revoke of a delegation."""
        log_details = {"delegation_id": delegation_id, "actor_id": actor_id}
        if details:
            log_details.update(details)
        self.log_operation(f"delegation.{action}", "success", log_details)

    def log_approval_check(self, actor_id: str, action_type: str, allowed: bool, reason: str = None):
        """Log a canApprove evaluation."""
        log_details = {"actor_id": actor_id, "action_type": action_type}
        if reason:
            log_details["reason"] = reason[:100]
        self.log_operation("policy.can_approve", "allowed" if allowed else "denied", log_details)

    def log_amendment_transition(self, amendment_id: str, from_status: str, to_status: str, actor_id: str):
        """Log an amendment status change."""
        self.log_operation("amendment.transition", to_status, {
            "amendment_id": amendment_id,
            "from_status": from_status,
            "actor_id": actor_id
        })

    def log_invitation_event(self, action: str, party_id: str, deal_id: str, status: str = "success"):
        """Log an invitation accept or decline."""
        self.log_operation(f"invitation.{action}", status, {"party_id": party_id, "deal_id": deal_id})

    def log_deal_activation(self, deal_id: str, activated: bool, reason: str):
        self.log_operation("deal.activation", "activated" if activated else "skipped", {
            "deal_id": deal_id,
            "reason": reason
        })

    def log_internal_failure(self, operation: str, error: BaseException, context: Dict[str, Any] = None):
        """Log an unexpected failure with full context; callers only see a generic message."""
        log_details = {"error_type": type(error).__name__, "error": str(error)[:200]}
        if context:
            log_details["context"] = context
        self.log_operation(operation, "failed", log_details, level=logging.ERROR)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for logging."""
    if sensitive_fields is None:
        sensitive_fields = DEFAULT_SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload


# Global logger instance
logger = StructuredLogger()
