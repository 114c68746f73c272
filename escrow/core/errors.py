"""
Error taxonomy for the consensus engine.

NotFound, PermissionDenied, ValidationFailed and Conflict carry a stable
code and a human-readable reason. InternalError hides storage details from
callers; the full context only goes to the log. Idempotent repeats are not
errors and are reported through result flags instead.
"""

import functools
import inspect
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..api.schemas import ErrorResponse
from ..util.logging import logger

GENERIC_INTERNAL_MESSAGE = "An internal error occurred while processing the request"
FALLBACK_MESSAGE = "Unknown error"


def safe_message(error: Any, fallback: str = FALLBACK_MESSAGE) -> str:
    """Normalize any raised value into a non-empty message.

    Handles exceptions, bare strings, None, dicts carrying a "message" key
    and arbitrary objects that may or may not have a .message attribute.
    """
    if error is None:
        return fallback
    if isinstance(error, str):
        return error.strip() or fallback
    if isinstance(error, dict):
        message = error.get("message")
        return message.strip() if isinstance(message, str) and message.strip() else fallback
    message = getattr(error, "message", None)
    if isinstance(message, str) and message.strip():
        return message.strip()
    if isinstance(error, BaseException):
        text = str(error).strip()
        return text or fallback
    return fallback


class EngineError(Exception):
    """Base class for all errors surfaced by the engine."""

    code = "ENGINE_ERROR"

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        self.reason = safe_message(reason)
        self.details = details or {}
        super().__init__(self.reason)

    @property
    def message(self) -> str:
        return self.reason

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(error_type=self.code, message=self.reason, details=self.details or None)


class NotFound(EngineError):
    code = "NOT_FOUND"


class PermissionDenied(EngineError):
    code = "PERMISSION_DENIED"


class ValidationFailed(EngineError):
    code = "VALIDATION_ERROR"


class Conflict(EngineError):
    """Operation is not valid for the record's current state."""
    code = "CONFLICT"


class ImmutableStateError(Conflict):
    """The record reached a terminal state and can no longer change."""
    code = "IMMUTABLE_STATE"


class InternalError(EngineError):
    code = "INTERNAL_ERROR"

    def __init__(self, reason: str = GENERIC_INTERNAL_MESSAGE, details: Optional[Dict[str, Any]] = None):
        super().__init__(reason, details)


def _validation_reason(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "request"
        parts.append(f"{location}: {item.get('msg', 'invalid value')}")
    return "; ".join(parts) or "Invalid request"


def _call_context(signature: inspect.Signature, args: tuple, kwargs: dict) -> Dict[str, Any]:
    """Bound call arguments for the failure log; tokens are redacted by the logger."""
    try:
        bound = signature.bind(*args, **kwargs)
    except TypeError:
        return {"args": len(args), "kwargs": sorted(kwargs)}
    return {k: str(v) for k, v in bound.arguments.items() if k != "self"}


def engine_operation(name: str):
    """Wrap a public operation so only taxonomy errors reach the caller."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except EngineError:
                raise
            except ValidationError as e:
                raise ValidationFailed(_validation_reason(e)) from e
            except Exception as e:
                logger.log_internal_failure(name, e, _call_context(signature, args, kwargs))
                raise InternalError() from e

        signature = inspect.signature(func)
        return wrapper

    return decorator
