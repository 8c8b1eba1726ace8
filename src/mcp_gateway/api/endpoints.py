"""
REST API endpoints for MCP Gateway.

Each handler receives the already authenticated profile and shapes gateway
results into MCP-compatible response bodies.
"""

import re
from typing import Any, Dict, List, Optional

from mcp_gateway import __version__
from mcp_gateway.api.models import (
    HealthCheckResponse,
    ProfileCapabilitiesResponse,
    PromptEntry,
    ResourceEntry,
    ResourceTemplateEntry,
    ToolEntry,
    ToolsResponse,
)
from mcp_gateway.core.exceptions import InvalidRequest
from mcp_gateway.core.gateway import ResolutionGateway
from mcp_gateway.core.models import CapabilityKind, ConnectionDescriptor, Profile
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)


def sanitize_server_name(name: Optional[str]) -> str:
    """Lowercase a connection name into a tool-name prefix."""
    if not name:
        return "unknown_server"
    sanitized = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    return sanitized or "unknown_server"


def _metadata(definition: Any) -> Dict[str, Any]:
    return definition if isinstance(definition, dict) else {}


class APIEndpoints:
    """Main API endpoints controller."""

    def __init__(self, gateway: ResolutionGateway):
        self.gateway = gateway

    async def health_check(self) -> HealthCheckResponse:
        return HealthCheckResponse(status="healthy", version=__version__)

    async def resolve(
        self,
        profile: Profile,
        kind: CapabilityKind,
        name_or_uri: Optional[str],
        parameter: str,
    ) -> ConnectionDescriptor:
        """Resolve a capability; a missing query parameter is a bad request."""
        if not name_or_uri:
            raise InvalidRequest(f"Missing required query parameter: {parameter}")
        return await self.gateway.resolve_for_profile(profile, kind, name_or_uri)

    async def list_prompts(self, profile: Profile) -> List[PromptEntry]:
        entries = []
        for item in self.gateway.list_for_profile(profile, CapabilityKind.PROMPT):
            arguments = item.capability.definition
            entries.append(PromptEntry(
                name=item.capability.name,
                description=item.capability.description,
                arguments=arguments if isinstance(arguments, list) else [],
            ))
        return entries

    async def list_tools(self, profile: Profile) -> ToolsResponse:
        tools = []
        for item in self.gateway.list_for_profile(profile, CapabilityKind.TOOL):
            schema = item.capability.definition
            tools.append(ToolEntry(
                name=f"{sanitize_server_name(item.connection.name)}_{item.capability.name}",
                description=item.capability.description,
                inputSchema=schema if isinstance(schema, dict) else {"type": "object"},
                server_uuid=item.connection.uuid,
            ))
        return ToolsResponse(tools=tools)

    async def list_resources(self, profile: Profile) -> List[ResourceEntry]:
        entries = []
        for item in self.gateway.list_for_profile(profile, CapabilityKind.RESOURCE):
            meta = _metadata(item.capability.definition)
            entries.append(ResourceEntry(
                uri=item.capability.name,
                name=meta.get("name") or item.capability.name,
                description=item.capability.description,
                mimeType=meta.get("mimeType"),
            ))
        return entries

    async def list_resource_templates(self, profile: Profile) -> List[ResourceTemplateEntry]:
        entries = []
        for item in self.gateway.list_for_profile(profile, CapabilityKind.RESOURCE_TEMPLATE):
            meta = _metadata(item.capability.definition)
            entries.append(ResourceTemplateEntry(
                uriTemplate=item.capability.name,
                name=meta.get("name"),
                description=item.capability.description,
                mimeType=meta.get("mimeType"),
            ))
        return entries

    async def profile_capabilities(self, profile: Profile) -> ProfileCapabilitiesResponse:
        return ProfileCapabilitiesResponse(
            profileCapabilities=list(profile.enabled_capabilities)
        )
