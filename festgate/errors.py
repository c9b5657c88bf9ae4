"""Error taxonomy shared by the allocator, workflow, referral gate and
admission controller.

Every error carries a stable ``code`` that the HTTP layer returns verbatim,
so clients can branch on it (e.g. "resend" vs "re-enter" for OTP failures).
"""
from __future__ import annotations
from typing import Any, Dict, Optional


class FestgateError(Exception):
    code = "Error"
    status_code = 400

    def __init__(self, message: str = "",
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": False,
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            out["details"] = self.details
        return out


# ---- validation
class ValidationFailed(FestgateError):
    code = "ValidationFailed"
    status_code = 422


class InvalidQuantity(FestgateError):
    code = "InvalidQuantity"


class IncompleteGroupDetails(FestgateError):
    code = "IncompleteGroupDetails"


class MissingPaymentProof(FestgateError):
    code = "MissingPaymentProof"


class RejectionReasonRequired(FestgateError):
    code = "RejectionReasonRequired"


class InvalidDay(FestgateError):
    code = "InvalidDay"


# ---- store / state machine
class NotFound(FestgateError):
    code = "NotFound"
    status_code = 404


class DuplicateKey(FestgateError):
    """Unique index rejected a write; ``field`` names the index."""
    code = "DuplicateKey"
    status_code = 409

    def __init__(self, field: str, message: str = "") -> None:
        super().__init__(message or f"{field} already exists",
                         {"field": field})
        self.field = field


class StaleState(FestgateError):
    """A conditional update found the record in a different state."""
    code = "StaleState"
    status_code = 409

    def __init__(self, expected: Any = None, actual: Any = None,
                 message: str = "") -> None:
        super().__init__(
            message or "registration changed state; re-fetch and retry",
            {"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class AlreadySubmitted(FestgateError):
    code = "AlreadySubmitted"
    status_code = 409


class TicketAllocationExhausted(FestgateError):
    code = "TicketAllocationExhausted"
    status_code = 503


# ---- payment
class SignatureInvalid(FestgateError):
    code = "SignatureInvalid"


class GatewayError(FestgateError):
    code = "GatewayError"
    status_code = 502


class NotificationFailed(FestgateError):
    code = "NotificationFailed"
    status_code = 502


# ---- friend referral
class NotEligible(FestgateError):
    code = "NotEligible"
    status_code = 403


class InvalidOtp(FestgateError):
    code = "InvalidOtp"


class OtpExpired(FestgateError):
    code = "OtpExpired"


class OtpAlreadyConsumed(FestgateError):
    code = "OtpAlreadyConsumed"


class OtpAttemptsExceeded(FestgateError):
    code = "OtpAttemptsExceeded"


class TooManyOtpRequests(FestgateError):
    code = "TooManyOtpRequests"
    status_code = 429


# ---- admission
class UnknownTicket(FestgateError):
    code = "UnknownTicket"
    status_code = 404


class TicketNotActive(FestgateError):
    code = "TicketNotActive"
    status_code = 409


# ---- auth
class Unauthorized(FestgateError):
    code = "Unauthorized"
    status_code = 401
