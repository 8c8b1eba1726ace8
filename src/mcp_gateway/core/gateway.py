"""
Resolution gateway.

Orchestrates a request end to end: authenticate the API key, resolve the
capability to its owning connection, decrypt the connection's parameters and,
for local-execution connections, rewrite the command to a local install.
"""

import asyncio
import os
from typing import Dict, List, Optional

from mcp_gateway.api.auth import ApiKeyAuthenticator
from mcp_gateway.core.exceptions import InvalidRequest
from mcp_gateway.core.models import (
    CapabilityKind,
    Connection,
    ConnectionDescriptor,
    ConnectionParams,
    ConnectionType,
    Profile,
    ResolvedCapability,
)
from mcp_gateway.core.packages import CommandRunner, ConcreteCommand, PackageCommandTransformer
from mcp_gateway.core.resolver import CapabilityIndex
from mcp_gateway.core.store import GatewayStore
from mcp_gateway.core.vault import CredentialVault
from mcp_gateway.utils.config import Config
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)


def merge_environment(
    connection_env: Optional[Dict[str, str]],
    transformed: ConcreteCommand,
) -> Optional[Dict[str, str]]:
    """
    Layer a connection's own env over the install env.

    The connection's values win, except PATH: the install's directories are
    always put in front of it.
    """
    if not transformed.env and connection_env is None:
        return None

    env = dict(transformed.env)
    env.update(connection_env or {})
    if connection_env and "PATH" in connection_env and transformed.path_prefix:
        env["PATH"] = os.pathsep.join(transformed.path_prefix + [connection_env["PATH"]])
    return env


class ResolutionGateway:
    """Turns (API key, capability) into a runnable connection descriptor."""

    def __init__(
        self,
        store: GatewayStore,
        vault: CredentialVault,
        transformer: PackageCommandTransformer,
        authenticator: Optional[ApiKeyAuthenticator] = None,
        transform_on_resolve: bool = True,
    ):
        self.store = store
        self.vault = vault
        self.transformer = transformer
        self.authenticator = authenticator or ApiKeyAuthenticator(store)
        self.index = CapabilityIndex(store)
        self.transform_on_resolve = transform_on_resolve

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: Optional[GatewayStore] = None,
        runner: Optional[CommandRunner] = None,
    ) -> "ResolutionGateway":
        """Wire every component from configuration."""
        store = store or GatewayStore(config.database_path)
        return cls(
            store=store,
            vault=CredentialVault.from_config(config),
            transformer=PackageCommandTransformer.from_config(config, runner=runner),
            authenticator=ApiKeyAuthenticator(store, key_prefix=config.auth.key_prefix),
            transform_on_resolve=config.packages.transform_on_resolve,
        )

    async def resolve(
        self,
        token: str,
        kind: CapabilityKind,
        name_or_uri: str,
    ) -> ConnectionDescriptor:
        """
        Resolve a capability for the holder of an API key.

        Raises:
            Unauthenticated: Bad or orphaned key
            InvalidRequest: Empty name or URI
            NotFound: Nothing resolvable under the key's profile
            CredentialDecryptionFailed: Stored parameters do not decrypt
            InstallFailed: The connection's package could not be installed
        """
        profile = self.authenticator.authenticate(token)
        return await self.resolve_for_profile(profile, kind, name_or_uri)

    async def resolve_for_profile(
        self,
        profile: Profile,
        kind: CapabilityKind,
        name_or_uri: str,
    ) -> ConnectionDescriptor:
        if not name_or_uri:
            raise InvalidRequest("Capability name or URI is required")

        resolved = self.index.resolve(profile, kind, name_or_uri)
        logger.info(f"Resolved {CapabilityKind(kind).value} '{name_or_uri}'", extra={
            "profile_uuid": profile.uuid,
            "connection_uuid": resolved.connection.uuid,
        })
        return await self.materialize(resolved.connection)

    async def materialize(self, connection: Connection) -> ConnectionDescriptor:
        """Decrypt a connection and make its command runnable."""
        # Key derivation is CPU bound; keep it off the event loop
        params = await asyncio.to_thread(self.vault.decrypt, connection)

        if (
            self.transform_on_resolve
            and connection.type == ConnectionType.STDIO
            and params.command
        ):
            params = await self._transform(connection, params)

        return ConnectionDescriptor(
            uuid=connection.uuid,
            name=connection.name,
            type=connection.type,
            command=params.command,
            args=params.args,
            env=params.env,
            url=params.url,
        )

    async def _transform(self, connection: Connection, params: ConnectionParams) -> ConnectionParams:
        transformed = await self.transformer.transform(
            params.command, params.args or [], connection.uuid
        )
        if not transformed.installed:
            return params

        logger.debug("Command rewritten to local install", extra={
            "connection_uuid": connection.uuid,
            "manager": transformed.manager,
        })
        return ConnectionParams(
            command=transformed.command,
            args=transformed.args,
            env=merge_environment(params.env, transformed),
            url=params.url,
        )

    def list_capabilities(self, token: str, kind: CapabilityKind) -> List[ResolvedCapability]:
        """Everything resolvable for a kind, with owning connections."""
        profile = self.authenticator.authenticate(token)
        return self.list_for_profile(profile, kind)

    def list_for_profile(self, profile: Profile, kind: CapabilityKind) -> List[ResolvedCapability]:
        return [
            ResolvedCapability(capability=capability, connection=connection)
            for capability, connection in self.index.list_with_connections(profile, kind)
        ]

    def profile_capabilities(self, token: str) -> List[CapabilityKind]:
        """Capability kinds enabled for the key's profile."""
        return list(self.authenticator.authenticate(token).enabled_capabilities)
