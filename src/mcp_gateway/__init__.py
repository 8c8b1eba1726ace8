"""
MCP Gateway - capability resolution and connection gateway.

Authenticates API keys, resolves tool, prompt and resource names to the
active backend connection that owns them, decrypts the connection's stored
parameters and hands back a runnable connection descriptor.
"""

__version__ = "0.1.0"
__description__ = "Capability resolution and connection gateway for MCP servers"

# Public API
from mcp_gateway.core.exceptions import GatewayError
from mcp_gateway.core.models import CapabilityKind, ConnectionDescriptor, ConnectionType

__all__ = [
    "__version__",
    "__description__",
    "GatewayError",
    "CapabilityKind",
    "ConnectionDescriptor",
    "ConnectionType",
]
