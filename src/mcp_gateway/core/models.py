"""
Data models for MCP Gateway.

Pydantic models for projects, profiles, connections, discovered
capabilities and API credentials, plus the value types that flow between
the gateway components.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CapabilityKind(str, Enum):
    """Kinds of capability a connection can expose."""

    TOOL = "tool"
    PROMPT = "prompt"
    RESOURCE = "resource"
    RESOURCE_TEMPLATE = "resource_template"


ALL_CAPABILITY_KINDS = list(CapabilityKind)


class ConnectionType(str, Enum):
    """Transport used to reach a connection."""

    STDIO = "STDIO"
    STREAMABLE_HTTP = "STREAMABLE_HTTP"
    SSE = "SSE"


class ConnectionStatus(str, Enum):
    """Activation state of a connection."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class ConnectionSource(str, Enum):
    """Where a connection definition came from."""

    SELF = "SELF"            # Declared by the user
    REGISTRY = "REGISTRY"    # Imported from the server registry
    COMMUNITY = "COMMUNITY"  # Imported from a community listing


@dataclass(frozen=True)
class EncryptedField(Generic[T]):
    """
    One independently encrypted column.

    ``ciphertext`` is None when the underlying value is absent, so optional
    parameters stay representable without encrypting placeholder values.
    """

    ciphertext: Optional[str] = None

    @classmethod
    def null(cls) -> "EncryptedField[T]":
        return cls(None)

    @property
    def is_null(self) -> bool:
        return self.ciphertext is None


class Project(BaseModel):
    """Project owning profiles and API keys."""

    uuid: str
    name: str
    active_profile_uuid: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Profile(BaseModel):
    """Tenant-scoped configuration unit."""

    uuid: str
    name: str
    project_uuid: str
    enabled_capabilities: List[CapabilityKind] = Field(
        default_factory=lambda: list(ALL_CAPABILITY_KINDS)
    )
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("enabled_capabilities")
    @classmethod
    def dedupe_capabilities(cls, v: List[CapabilityKind]) -> List[CapabilityKind]:
        """Keep first occurrence order, drop duplicates."""
        seen: List[CapabilityKind] = []
        for kind in v:
            if kind not in seen:
                seen.append(kind)
        return seen

    def is_enabled(self, kind: CapabilityKind) -> bool:
        return kind in self.enabled_capabilities


class ConnectionParams(BaseModel):
    """Plaintext run parameters of a connection."""

    command: Optional[str] = None
    args: Optional[List[str]] = None
    env: Optional[Dict[str, str]] = None
    url: Optional[str] = None


class EncryptedParams(BaseModel):
    """Run parameters with every field encrypted on its own."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    command: EncryptedField = Field(default_factory=EncryptedField)
    args: EncryptedField = Field(default_factory=EncryptedField)
    env: EncryptedField = Field(default_factory=EncryptedField)
    url: EncryptedField = Field(default_factory=EncryptedField)


class Connection(BaseModel):
    """A registered backend server owned by a profile."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    uuid: str
    profile_uuid: str
    name: str
    type: ConnectionType = ConnectionType.STDIO
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    params: EncryptedParams = Field(default_factory=EncryptedParams)
    source: ConnectionSource = ConnectionSource.SELF
    external_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    created_seq: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE

    def __str__(self) -> str:
        return f"{self.name} ({self.uuid})"


class DiscoveredCapability(BaseModel):
    """Tool, prompt, resource or resource template declared by a connection."""

    uuid: str
    connection_uuid: str
    kind: CapabilityKind
    name: str = Field(description="Name, resource URI or URI template")
    description: Optional[str] = None
    definition: Any = Field(
        default=None,
        description="Input schema, prompt arguments or resource metadata",
    )
    active: bool = True
    created_seq: int = 0

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v:
            raise ValueError("Capability name cannot be empty")
        return v


class ResolvedCapability(BaseModel):
    """A capability together with the connection that owns it."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    capability: DiscoveredCapability
    connection: Connection
    contenders: List[str] = Field(
        default_factory=list,
        description="Other active connections declaring the same capability",
    )


class ApiCredential(BaseModel):
    """Stored API key metadata. The raw token is never persisted."""

    uuid: str
    project_uuid: str
    name: str = "API Key"
    key_id: str
    salt: str
    key_hash: str
    created_at: datetime = Field(default_factory=utcnow)


class ConnectionDescriptor(BaseModel):
    """Fully materialized connection handed back to the caller."""

    uuid: str
    name: str
    type: ConnectionType
    command: Optional[str] = None
    args: Optional[List[str]] = None
    env: Optional[Dict[str, str]] = None
    url: Optional[str] = None
