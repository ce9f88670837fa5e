from __future__ import annotations

import re
from typing import Any, Dict

from marketplace.ui_strings import error_message


class AppError(Exception):
    """Base for every error the API turns into a JSON body.

    ``code`` is the machine-readable ``error`` field, ``message_key`` selects the
    user-facing text from ``ui_strings`` and ``payload`` is merged into the body
    so clients get what they need to recover (allowed actions, the latest
    quotation id, the outstanding amount, ...).
    """

    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or code or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = self.default_critical if critical is None else bool(critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        return error_message(self.message_key, error_message(self.default_message_key))

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.user_message(), "request_id": request_id}
        body.update(self.payload)
        return body


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    default_code = "validation_error"
    default_message_key = "status_invalid"


class ConfirmationRequiredError(UserActionError):
    default_code = "confirmation_required"
    default_message_key = "confirmation_required"


class NotFoundError(UserActionError):
    default_code = "not_found"
    default_message_key = "not_found"
    default_http_status = 404


class PermissionError(UserActionError):
    default_code = "permission_denied"
    default_message_key = "permission_denied"
    default_http_status = 403


class StateConflictError(UserActionError):
    """The authoritative state moved on; payload carries what the client should re-fetch."""

    default_code = "state_conflict"
    default_message_key = "state_conflict"
    default_http_status = 409


class FlowActionError(StateConflictError):
    default_code = "action_not_allowed_for_status"
    default_message_key = "action_not_allowed_for_status"


class PaymentNotConfirmedError(UserActionError):
    default_code = "payment_not_confirmed"
    default_message_key = "payment_not_confirmed"
    default_http_status = 402


class RateLimitedError(UserActionError):
    default_code = "rate_limit_exceeded"
    default_message_key = "rate_limit_exceeded"
    default_http_status = 429


class IntegrationError(AppError):
    default_code = "payment_gateway_unavailable"
    default_message_key = "payment_gateway_unavailable"
    default_http_status = 502
    default_critical = False


class SystemError(AppError):
    pass


_GATEWAY_HTTP_STATUS = re.compile(r"gateway http\s+(\d{3})", re.IGNORECASE)

# Client errors the gateway may succeed on later.
_RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


def classify_gateway_failure(details: str | None, *, definitive: bool = False) -> tuple[str, int]:
    """Returns (error code, http status): a refusal by the provider is 422, anything transient 502."""
    if not definitive:
        match = _GATEWAY_HTTP_STATUS.search(details or "")
        status = int(match.group(1)) if match else 0
        definitive = 400 <= status < 500 and status not in _RETRYABLE_CLIENT_STATUSES
    if definitive:
        return "payment_gateway_rejected", 422
    return "payment_gateway_unavailable", 502
