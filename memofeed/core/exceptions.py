"""
Custom exception classes for memofeed.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class MemoFeedException(Exception):
    """Base exception class for memofeed."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(MemoFeedException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class ValidationError(MemoFeedException):
    """Raised when data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class NoEndpointAvailableError(MemoFeedException):
    """Raised when every gateway endpoint is cooling down or failed its probe."""

    def __init__(self, message: str = "No gateway endpoint available", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NO_ENDPOINT_AVAILABLE", details)


class AuthDeniedError(ConfigurationError):
    """Raised when a gateway rejects our credentials or origin."""

    def __init__(self, url: str, reason: str = ""):
        super().__init__(
            f"Gateway denied access: {url}. Check the API key and allowed origins for this endpoint.",
            {"url": url, "reason": reason}
        )
        self.code = "AUTH_DENIED"


# Gateway faults below are absorbed by the pool, poller and paginator.
class GatewayError(MemoFeedException):
    """Base for a single failed gateway call."""

    def __init__(self, message: str, code: str = "GATEWAY_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code, details)


class RateLimitedError(GatewayError):
    """Raised when a gateway answers 429 / too many requests."""

    def __init__(self, url: str, reason: str = ""):
        super().__init__(f"Rate limited by {url}", "RATE_LIMITED", {"url": url, "reason": reason})


class EndpointDeniedError(GatewayError):
    """Raised when one endpoint refuses a call with 401/403."""

    def __init__(self, url: str, reason: str = ""):
        super().__init__(f"Access denied by {url}", "ENDPOINT_DENIED", {"url": url, "reason": reason})


class GatewayTimeoutError(GatewayError):
    """Raised when a gateway call exceeds its timeout."""

    def __init__(self, url: str, reason: str = ""):
        super().__init__(f"Timed out calling {url}", "GATEWAY_TIMEOUT", {"url": url, "reason": reason})


class TransientGatewayError(GatewayError):
    """Raised for any other retryable gateway fault."""

    def __init__(self, url: str, reason: str = ""):
        super().__init__(f"Gateway call failed on {url}: {reason}", "GATEWAY_TRANSIENT", {"url": url, "reason": reason})


# Signer-class exceptions
class SignerUnavailableError(MemoFeedException):
    """Raised when a write is attempted without a signing capability."""

    def __init__(self, message: str = "No signer available; connect a wallet first"):
        super().__init__(message, "SIGNER_UNAVAILABLE")


class SignerError(MemoFeedException):
    """Raised when the signer fails for a reason other than cancellation."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SIGNER_ERROR", details)


class UserCancelled(MemoFeedException):
    """The user declined to sign. A distinct outcome, not a fault."""

    def __init__(self, message: str = "Signing was cancelled by the user"):
        super().__init__(message, "USER_CANCELLED")
