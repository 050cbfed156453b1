"""
Domain errors for the Institutions Service.

Each error maps onto one of the shared families so the base service renders
it with the right HTTP status and a stable ``code``.
"""

from typing import Any, Dict, Optional

from shared.errors import (
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    ExternalServiceError,
    ValidationError,
)


# Provisioning tokens

class MissingIdentityFieldError(ConfigurationError):
    """A locked identity field is blank at issuance time."""

    status_code = 400

    def __init__(self, field: str):
        super().__init__(f"{field} is required", {"field": field}, code="MISSING_IDENTITY_FIELD")


class TokenExpiredError(AuthenticationError):
    def __init__(self, message: str = "Token expired"):
        super().__init__(message, code="TOKEN_EXPIRED")


class TokenInvalidError(AuthenticationError):
    def __init__(self, message: str = "Invalid token", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="TOKEN_INVALID")


class InvalidTokenTypeError(AuthenticationError):
    def __init__(self, message: str = "Invalid token type"):
        super().__init__(message, code="INVALID_TOKEN_TYPE")


class AudienceMismatchError(AuthenticationError):
    def __init__(self, message: str = "Token audience mismatch"):
        super().__init__(message, code="AUDIENCE_MISMATCH")


class IssuerMismatchError(AuthenticationError):
    def __init__(self, message: str = "Token issuer mismatch"):
        super().__init__(message, code="ISSUER_MISMATCH")


# Onboarding

class MissingUserDataError(ValidationError):
    def __init__(self, message: str = "Missing user data"):
        super().__init__(message, code="MISSING_USER_DATA")


class NoBackendError(ValidationError):
    """The institution has no institutional backend registered."""

    def __init__(self, institution_id: Optional[str] = None):
        message = "Your institution has not configured an institutional backend"
        super().__init__(message, {"institutionId": institution_id}, code="NO_BACKEND_CONFIGURED")


class BackendUnreachableError(ExternalServiceError):
    """Transport failure or non-2xx answer from an institutional backend."""

    def __init__(self, message: str = "Could not reach institutional backend",
                 status: Optional[int] = None, body: Optional[str] = None):
        details: Dict[str, Any] = {}
        if status is not None:
            details["status"] = status
        if body:
            details["body"] = body
        super().__init__("institutional-backend", message, details, code="BACKEND_UNREACHABLE")
        self.status = status
        self.body = body


class InvalidResponseError(ExternalServiceError):
    def __init__(self, message: str = "Invalid response from institutional backend"):
        super().__init__("institutional-backend", message, code="INVALID_BACKEND_RESPONSE")


class PollingCancelledError(ConflictError):
    """A status polling loop was cancelled by its caller."""

    def __init__(self, message: str = "Polling cancelled", session_id: Optional[str] = None):
        super().__init__(message, {"sessionId": session_id} if session_id else None, code="POLLING_CANCELLED")


# On-chain registry

class RegistryUnavailableError(ExternalServiceError):
    def __init__(self, message: str = "Institution registry unavailable"):
        super().__init__("institution-registry", message, code="REGISTRY_UNAVAILABLE")


class RegistryTransactionError(ExternalServiceError):
    """A registry write reverted or its receipt reported failure."""

    def __init__(self, message: str):
        super().__init__("institution-registry", message, code="REGISTRY_TRANSACTION_FAILED")
        self.reason = message


__all__ = [
    "ConfigurationError",
    "MissingIdentityFieldError",
    "TokenExpiredError",
    "TokenInvalidError",
    "InvalidTokenTypeError",
    "AudienceMismatchError",
    "IssuerMismatchError",
    "MissingUserDataError",
    "NoBackendError",
    "BackendUnreachableError",
    "InvalidResponseError",
    "PollingCancelledError",
    "RegistryUnavailableError",
    "RegistryTransactionError",
]
