"""
Error taxonomy for the gateway, metering and webhook paths.
Each error carries the HTTP status it maps to and a short machine code.
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for all errors surfaced to API callers."""
    status_code = 500
    error_code = "INTERNAL"

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "code": self.error_code}
        body.update(self.extra)
        return body


class ValidationError(GatewayError):
    """Bad input shape or size. Never retried."""
    status_code = 400
    error_code = "VALIDATION"


class PayloadTooLarge(ValidationError):
    error_code = "PAYLOAD_TOO_LARGE"

    def __init__(self, message: str, index: int, kind: str = "image"):
        super().__init__(message, {"index": index, "kind": kind})
        self.index = index
        self.kind = kind


class MissingCredential(ValidationError):
    """BYO request without a stored personal key."""
    error_code = "MISSING_CREDENTIAL"


class AuthError(GatewayError):
    """Missing, invalid or expired caller credential."""
    status_code = 401
    error_code = "AUTH"


class AuthRejected(GatewayError):
    """Upstream provider rejected our credential (HTTP 403)."""
    status_code = 403
    error_code = "403"


class RestrictedFreeTier(AuthRejected):
    error_code = "RESTRICTED_FREE_TIER"


class InsufficientBalance(GatewayError):
    status_code = 402
    error_code = "402"

    def __init__(self, tokens_remaining: int):
        super().__init__(
            "Insufficient tokens",
            {
                "tokens_remaining": tokens_remaining,
                "message": "You have run out of tokens. Please purchase more to continue.",
            },
        )
        self.tokens_remaining = tokens_remaining


class ConfigurationError(GatewayError):
    """Missing service credential or config. Fails closed."""
    status_code = 500
    error_code = "CONFIGURATION"

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class UpstreamError(GatewayError):
    """Non-2xx response (or transport failure) from the provider."""
    error_code = "UPSTREAM"

    def __init__(self, status: int, body: str = "", message: Optional[str] = None):
        self.status = status
        self.body = (body or "")[:500]
        super().__init__(message or f"AI Gateway error: {status}", {"retryable": status >= 500})
        self.status_code = status
        self.error_code = str(status)


class RateLimited(UpstreamError):
    def __init__(self, body: str = ""):
        super().__init__(429, body, "Rate limited: try again later")
        self.extra["retryable"] = True


class LedgerError(GatewayError):
    """A balance or purchase ledger operation failed."""
    status_code = 500
    error_code = "LEDGER"


class InvalidSignature(GatewayError):
    status_code = 403
    error_code = "INVALID_SIGNATURE"


class MalformedEvent(GatewayError):
    """Webhook event is missing required metadata; retrying will not help."""
    status_code = 400
    error_code = "MALFORMED_EVENT"


class InternalError(GatewayError):
    status_code = 500
    error_code = "500"
