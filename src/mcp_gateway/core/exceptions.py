"""
Exception classes for MCP Gateway.

Every component fails fast with a typed error from this hierarchy; the HTTP
layer maps each class to a status code and a response body.
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base exception for all MCP Gateway errors."""

    status_code: int = 500
    public_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize GatewayError.

        Args:
            message: Error message
            error_code: Optional error code for categorization
            details: Optional additional error details (server-side only)
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    @property
    def client_message(self) -> str:
        """Message that is safe to return to an API caller."""
        return self.public_message or self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary representation."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ConfigError(GatewayError):
    """Configuration-related errors."""

    public_message = "Internal server error"


class Unauthenticated(GatewayError):
    """Missing, invalid or revoked API credential."""

    status_code = 401
    public_message = "Unauthorized: Invalid API key"


class InvalidCredentialFormat(Unauthenticated):
    """Presented credential does not have the shape of an issued key."""


class InvalidRequest(GatewayError):
    """Missing query parameter or malformed identifier."""

    status_code = 400


class NotFound(GatewayError):
    """Nothing resolvable under the caller's profile."""

    status_code = 404


class CredentialDecryptionFailed(GatewayError):
    """Stored connection parameters could not be decrypted."""

    public_message = "Internal server error"


class InstallFailed(GatewayError):
    """Package installation for a connection did not complete."""

    public_message = "Internal server error"


class ValidationError(GatewayError):
    """Data validation errors."""

    status_code = 400
