"""
Error taxonomy for the credit and relay endpoints.

Every failure leaves the service as one of these, carrying an HTTP status,
a machine-readable code and enough context (ids, balances) for the caller.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CreditServiceError(Exception):
    status_code: int = 500
    error_code: str = "internal_error"
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.default_message
        self.context: Dict[str, Any] = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
        }
        body.update(self.context)
        return body


class ValidationError(CreditServiceError):
    status_code = 400
    error_code = "validation_error"
    default_message = "Invalid request payload"


class MissingParameter(ValidationError):
    error_code = "missing_parameter"
    default_message = "Missing required field"

    def __init__(self, field: str, **context: Any):
        super().__init__(f"{field} is required", field=field, **context)


class NotFoundError(CreditServiceError):
    status_code = 404
    error_code = "not_found"
    default_message = "Not found"


class RecordNotFound(NotFoundError):
    error_code = "record_not_found"
    default_message = "Feature record not found"


class ProfileNotFound(NotFoundError):
    error_code = "profile_not_found"
    default_message = "User profile not found"


class CreditsRecordNotFound(NotFoundError):
    error_code = "credits_record_not_found"
    default_message = "User credits not found"


class UserNotFound(NotFoundError):
    error_code = "user_not_found"
    default_message = "User not found"


class InsufficientCredits(CreditServiceError):
    status_code = 402
    error_code = "insufficient_credits"
    default_message = "Insufficient credits"


class DeductionRpcFailed(CreditServiceError):
    status_code = 500
    error_code = "deduction_failed"
    default_message = "Failed to deduct credits"


class ConfigurationError(CreditServiceError):
    status_code = 500
    error_code = "configuration_error"
    default_message = "Server configuration error"


class UpstreamError(CreditServiceError):
    status_code = 502
    error_code = "upstream_error"
    default_message = "Upstream service failed"


class InternalError(CreditServiceError):
    pass
