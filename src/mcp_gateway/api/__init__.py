"""
API module for MCP Gateway.

Provides API-key authentication and the REST surface for capability
resolution. The server lives in ``mcp_gateway.api.server``.
"""

from .auth import ApiKeyAuthenticator, ApiKeyInfo, IssuedApiKey
from .middleware import (
    ErrorHandlingMiddleware,
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityMiddleware,
)

__all__ = [
    "ApiKeyAuthenticator",
    "ApiKeyInfo",
    "IssuedApiKey",
    "ErrorHandlingMiddleware",
    "RateLimitMiddleware",
    "RequestLoggingMiddleware",
    "SecurityMiddleware",
]
