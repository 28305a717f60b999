"""
Shared error handling for the Access Engine.

Every error carries the HTTP status it maps to. Internal faults
(configuration, data integrity, storage) never expose their message to the
caller; ``to_response`` replaces it with a generic one.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    error: str
    code: str
    trace_id: Optional[str] = None
    current_tier: Optional[str] = None
    upgrade_required: Optional[bool] = None
    details: Dict[str, Any] = {}


def _current_trace_id() -> Optional[str]:
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            return f"{span_context.trace_id:032x}"
    return None


class AccessLayerException(Exception):
    """Base exception for Access Engine services."""

    status_code = 400
    internal = False

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        if self.internal:
            return ErrorResponse(
                error="Internal server error",
                code="INTERNAL_ERROR",
                trace_id=_current_trace_id()
            )

        return ErrorResponse(
            error=self.message,
            code=self.code,
            trace_id=_current_trace_id(),
            details=self.details
        )

    def response_headers(self) -> Dict[str, str]:
        return {}


# Authentication (401)

class AuthenticationError(AccessLayerException):
    """Missing, invalid or expired credential."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None,
                 code: str = "UNAUTHENTICATED"):
        super().__init__(code, message, details)


class TokenExpiredError(AuthenticationError):
    def __init__(self, message: str = "Token expired"):
        super().__init__(message, code="TOKEN_EXPIRED")


class InvalidTokenError(AuthenticationError):
    def __init__(self, message: str = "Invalid token"):
        super().__init__(message, code="INVALID_TOKEN")


class TokenRevokedError(AuthenticationError):
    def __init__(self, message: str = "Token revoked"):
        super().__init__(message, code="TOKEN_REVOKED")


class MalformedTokenError(AuthenticationError):
    def __init__(self, message: str = "Malformed token"):
        super().__init__(message, code="MALFORMED_TOKEN")


class SignatureInvalidError(AuthenticationError):
    def __init__(self, message: str = "Token signature invalid"):
        super().__init__(message, code="SIGNATURE_INVALID")


# Authorization (403)

class AuthorizationError(AccessLayerException):
    """Valid credential, insufficient permission."""

    status_code = 403

    def __init__(self, message: str = "Forbidden", details: Optional[Dict[str, Any]] = None,
                 code: str = "FORBIDDEN"):
        super().__init__(code, message, details)


class TierRestrictedError(AuthorizationError):
    """The caller's tier does not include the requested endpoint or feature."""

    def __init__(self, message: str, current_tier: str, code: str = "TIER_RESTRICTED",
                 details: Optional[Dict[str, Any]] = None):
        self.current_tier = current_tier
        super().__init__(message, details, code=code)

    def to_response(self) -> ErrorResponse:
        response = super().to_response()
        response.current_tier = self.current_tier
        response.upgrade_required = True
        return response


class QuotaExceededError(AccessLayerException):
    """Resource count over the tier limit. Always 403."""

    status_code = 403

    def __init__(self, resource: str, current: int, limit: int, current_tier: Optional[str] = None):
        self.resource = resource
        self.current = current
        self.limit = limit
        self.current_tier = current_tier
        super().__init__(
            "QUOTA_EXCEEDED",
            f"{resource} limit reached ({current}/{limit})",
            {"resource": resource, "current": current, "limit": limit}
        )

    def to_response(self) -> ErrorResponse:
        response = super().to_response()
        response.current_tier = self.current_tier
        response.upgrade_required = True
        return response


class RateLimitError(AccessLayerException):
    """Rate limiting errors."""

    status_code = 429

    def __init__(self, retry_after_seconds: int, limit: int, message: str = "Rate limit exceeded"):
        self.retry_after_seconds = retry_after_seconds
        self.limit = limit
        super().__init__(
            "RATE_LIMITED",
            message,
            {"retry_after_seconds": retry_after_seconds, "limit": limit}
        )

    def response_headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after_seconds)}


# Caller errors

class ValidationError(AccessLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(AccessLayerException):
    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConflictError(AccessLayerException):
    status_code = 409

    def __init__(self, message: str = "Conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT", message, details)


# Internal faults (500/503)

class ConfigurationError(AccessLayerException):
    """Fatal configuration fault."""

    status_code = 500
    internal = True

    def __init__(self, message: str = "Configuration error", details: Optional[Dict[str, Any]] = None,
                 code: str = "CONFIGURATION_ERROR"):
        super().__init__(code, message, details)


class UnknownTierError(ConfigurationError):
    def __init__(self, tier: str):
        self.tier = tier
        super().__init__(f"Tier '{tier}' is not configured", {"tier": tier}, code="UNKNOWN_TIER")


class DataIntegrityError(AccessLayerException):
    """Stored records violate an ownership invariant."""

    status_code = 500
    internal = True

    def __init__(self, message: str = "Data integrity error", details: Optional[Dict[str, Any]] = None,
                 code: str = "DATA_INTEGRITY_ERROR"):
        super().__init__(code, message, details)


class CyclicOwnershipError(DataIntegrityError):
    def __init__(self, account_id: str, chain: list):
        super().__init__(
            f"Cyclic ownership detected at account {account_id}",
            {"account_id": account_id, "chain": chain},
            code="CYCLIC_OWNERSHIP"
        )


class OwnershipDepthError(DataIntegrityError):
    def __init__(self, account_id: str, chain: list):
        super().__init__(
            f"Ownership chain of account {account_id} exceeds the maximum depth",
            {"account_id": account_id, "chain": chain},
            code="OWNERSHIP_DEPTH_EXCEEDED"
        )


class StoreError(AccessLayerException):
    """Storage backend failure."""

    status_code = 503
    internal = True

    def __init__(self, message: str = "Store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_ERROR", message, details)
