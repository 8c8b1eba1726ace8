"""
Capability index.

Maps a capability name or resource URI to the active connection that owns it
within a profile. One resolver serves every capability kind.
"""

from typing import List, Tuple

from mcp_gateway.core.exceptions import NotFound
from mcp_gateway.core.models import (
    CapabilityKind,
    Connection,
    DiscoveredCapability,
    Profile,
    ResolvedCapability,
)
from mcp_gateway.core.store import GatewayStore
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)


class CapabilityIndex:
    """Resolves capabilities against the store on every call."""

    def __init__(self, store: GatewayStore):
        self.store = store

    def resolve(
        self,
        profile: Profile,
        kind: CapabilityKind,
        name_or_uri: str,
    ) -> ResolvedCapability:
        """
        Find the connection owning a capability.

        When several active connections declare the same capability, the
        earliest-created connection wins.

        Args:
            profile: Profile the caller is bound to
            kind: Capability kind
            name_or_uri: Tool or prompt name, resource URI or URI template

        Returns:
            The capability and its owning connection

        Raises:
            NotFound: Nothing resolvable under the profile
        """
        kind = CapabilityKind(kind)
        label = _kind_label(kind)

        if not profile.is_enabled(kind):
            raise NotFound(
                f"{label} not found: {name_or_uri}",
                error_code="CAPABILITY_DISABLED",
                details={"profile_uuid": profile.uuid, "kind": kind.value},
            )

        matches = self.store.find_capabilities(profile.uuid, kind, name_or_uri)
        if not matches:
            raise NotFound(
                f"{label} not found: {name_or_uri}",
                error_code="CAPABILITY_NOT_FOUND",
                details={"profile_uuid": profile.uuid, "kind": kind.value},
            )

        matches.sort(key=lambda m: (m[1].created_seq, m[0].created_seq))
        capability, connection = matches[0]
        contenders = []
        for _, other in matches[1:]:
            if other.uuid != connection.uuid and other.uuid not in contenders:
                contenders.append(other.uuid)

        if contenders:
            logger.warning(
                f"{label} '{name_or_uri}' is declared by several active connections; "
                f"using {connection.uuid}",
                extra={
                    "profile_uuid": profile.uuid,
                    "kind": kind.value,
                    "chosen_connection": connection.uuid,
                    "contenders": contenders,
                },
            )

        return ResolvedCapability(
            capability=capability,
            connection=connection,
            contenders=contenders,
        )

    def list_capabilities(
        self,
        profile: Profile,
        kind: CapabilityKind,
    ) -> List[DiscoveredCapability]:
        """Everything resolvable for a kind, ordered by name."""
        return [capability for capability, _ in self.list_with_connections(profile, kind)]

    def list_with_connections(
        self,
        profile: Profile,
        kind: CapabilityKind,
    ) -> List[Tuple[DiscoveredCapability, Connection]]:
        """Like list_capabilities but keeps each capability's connection."""
        kind = CapabilityKind(kind)
        if not profile.is_enabled(kind):
            return []
        matches = self.store.find_capabilities(profile.uuid, kind)
        matches.sort(key=lambda m: (m[0].name, m[1].created_seq, m[0].created_seq))
        return matches


def _kind_label(kind: CapabilityKind) -> str:
    return {
        CapabilityKind.TOOL: "Tool",
        CapabilityKind.PROMPT: "Prompt",
        CapabilityKind.RESOURCE: "Resource",
        CapabilityKind.RESOURCE_TEMPLATE: "Resource template",
    }[kind]
