"""Payment error taxonomy.

Every failure that crosses the gateway boundary is turned into one of these
before it reaches a route or the orchestrator. ``message`` is safe to show a
customer; ``detail`` is technical and only exposed when the app runs in Debug.
"""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    GATEWAY_AUTH = "gateway_auth"
    GATEWAY_TRANSPORT = "gateway_transport"
    GATEWAY_REJECTION = "gateway_rejection"
    PAYMENT_FAILED = "payment_failed"
    RECONCILIATION_ANOMALY = "reconciliation_anomaly"


class PaymentError(Exception):
    kind: ErrorKind

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self, include_detail: bool = False) -> dict:
        body = {"success": False, "message": self.message, "code": self.kind.value}
        if include_detail and self.detail:
            body["details"] = self.detail
        return body


class PaymentValidationError(PaymentError):
    kind = ErrorKind.VALIDATION


class GatewayAuthError(PaymentError):
    """Token acquisition failed or credentials were rejected (operator misconfiguration)."""
    kind = ErrorKind.GATEWAY_AUTH


class GatewayTransportError(PaymentError):
    kind = ErrorKind.GATEWAY_TRANSPORT

    def __init__(self, message: str, detail: str | None = None, *, timed_out: bool = False):
        super().__init__(message, detail)
        self.timed_out = timed_out


class GatewayRejection(PaymentError):
    kind = ErrorKind.GATEWAY_REJECTION

    def __init__(self, message: str, detail: str | None = None, *, error_code: str | None = None):
        super().__init__(message, detail)
        self.error_code = error_code


class PaymentFailed(PaymentError):
    """The provider reported a terminal failure for an already-initiated push."""
    kind = ErrorKind.PAYMENT_FAILED


class ReconciliationAnomaly(PaymentError):
    kind = ErrorKind.RECONCILIATION_ANOMALY


ERROR_CLASSES: dict[ErrorKind, type[PaymentError]] = {
    cls.kind: cls
    for cls in (
        PaymentValidationError,
        GatewayAuthError,
        GatewayTransportError,
        GatewayRejection,
        PaymentFailed,
        ReconciliationAnomaly,
    )
}


def error_from_code(code: str | None, message: str, detail: str | None = None) -> PaymentError:
    """Rebuild a typed error from the ``code`` field of an API error body."""
    try:
        kind = ErrorKind(code)
    except ValueError:
        return GatewayRejection(message, detail)
    return ERROR_CLASSES[kind](message, detail)
