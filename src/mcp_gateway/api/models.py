"""
API models for MCP Gateway REST endpoints.

Response shapes follow the MCP list results (``ListPromptsResult``,
``ListToolsResult`` and so on) so a proxy can pass them straight through.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from mcp_gateway.core.models import CapabilityKind


class ErrorResponse(BaseModel):
    """Body of every error response."""

    error: str = Field(description="Error message")


class HealthCheckResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status")
    version: str = Field(description="Gateway version")


class PromptEntry(BaseModel):
    """Prompt as listed by ``prompts/list``."""

    name: str
    description: Optional[str] = None
    arguments: List[Any] = Field(default_factory=list)


class ToolEntry(BaseModel):
    """Tool as listed by ``tools/list``, tagged with its owning connection."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(description="Tool name prefixed with the connection name")
    description: Optional[str] = None
    inputSchema: Any = Field(default_factory=lambda: {"type": "object"})
    server_uuid: str = Field(alias="_serverUuid")


class ToolsResponse(BaseModel):
    tools: List[ToolEntry]


class ResourceEntry(BaseModel):
    """Static resource as listed by ``resources/list``."""

    uri: str
    name: Optional[str] = None
    description: Optional[str] = None
    mimeType: Optional[str] = None


class ResourceTemplateEntry(BaseModel):
    """Resource template as listed by ``resources/templates/list``."""

    uriTemplate: str
    name: Optional[str] = None
    description: Optional[str] = None
    mimeType: Optional[str] = None


class ProfileCapabilitiesResponse(BaseModel):
    profileCapabilities: List[CapabilityKind]
