"""Core MCP Gateway functionality."""

from mcp_gateway.core.exceptions import (
    ConfigError,
    CredentialDecryptionFailed,
    GatewayError,
    InstallFailed,
    InvalidRequest,
    NotFound,
    Unauthenticated,
)
from mcp_gateway.core.models import CapabilityKind, ConnectionStatus, ConnectionType

__all__ = [
    "GatewayError",
    "ConfigError",
    "CredentialDecryptionFailed",
    "InstallFailed",
    "InvalidRequest",
    "NotFound",
    "Unauthenticated",
    "CapabilityKind",
    "ConnectionStatus",
    "ConnectionType",
]
