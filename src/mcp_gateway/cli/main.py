"""
Main CLI interface for MCP Gateway.

Administers projects, profiles, connections and API keys in the gateway
database and runs the HTTP server.
"""

import asyncio
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from mcp_gateway import __version__
from mcp_gateway.api.auth import ApiKeyAuthenticator
from mcp_gateway.cli.helpers import abbreviate, handle_errors, parse_env_pairs, parse_json_option
from mcp_gateway.core.exceptions import NotFound
from mcp_gateway.core.gateway import ResolutionGateway
from mcp_gateway.core.models import (
    ALL_CAPABILITY_KINDS,
    CapabilityKind,
    Connection,
    ConnectionParams,
    ConnectionStatus,
    ConnectionType,
)
from mcp_gateway.core.store import GatewayStore
from mcp_gateway.core.vault import CredentialVault
from mcp_gateway.utils.config import Config, get_config, reload_config
from mcp_gateway.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)

KIND_CHOICE = click.Choice([k.value for k in CapabilityKind], case_sensitive=False)


class CLIContext:
    """CLI context for passing state between commands."""

    def __init__(self, config: Config):
        self.config = config
        self._store: Optional[GatewayStore] = None
        self._gateway: Optional[ResolutionGateway] = None

    def get_store(self) -> GatewayStore:
        if self._store is None:
            self._store = GatewayStore(self.config.database_path)
        return self._store

    def get_vault(self) -> CredentialVault:
        return self.get_gateway().vault

    def get_authenticator(self) -> ApiKeyAuthenticator:
        return ApiKeyAuthenticator(self.get_store(), key_prefix=self.config.auth.key_prefix)

    def get_gateway(self) -> ResolutionGateway:
        """Full gateway; needs the vault master secret."""
        if self._gateway is None:
            self._gateway = ResolutionGateway.from_config(self.config, store=self.get_store())
        return self._gateway

    def require_connection(self, connection_uuid: str) -> Connection:
        connection = self.get_store().get_connection_record(connection_uuid)
        if connection is None:
            raise NotFound(f"Connection {connection_uuid} not found")
        return connection


pass_context = click.make_pass_decorator(CLIContext)


@click.group()
@click.option(
    "--debug", "-d",
    is_flag=True,
    help="Enable debug logging"
)
@click.option(
    "--config", "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file (TOML)"
)
@click.version_option(version=__version__, prog_name="MCP Gateway")
@click.pass_context
def cli(ctx: click.Context, debug: bool, config_file: Optional[str]):
    """
    Capability resolution and connection gateway for MCP servers.

    Maps tool, prompt and resource names to the connection that serves them
    and hands back a runnable, decrypted connection descriptor.
    """
    config = reload_config([config_file]) if config_file else get_config()

    setup_logging(
        enabled=config.logging.enabled,
        level=config.logging.level,
        console_level="DEBUG" if debug or config.debug else "WARNING",
        log_file=config.get_log_file(),
        format_type=config.logging.format_type,
        enable_rich=config.logging.enable_rich,
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count,
        suppress_http=config.logging.suppress_http,
    )

    ctx.obj = CLIContext(config)


@cli.command()
@click.option("--host", help="Bind address (defaults to config)")
@click.option("--port", type=int, help="Bind port (defaults to config)")
@pass_context
@handle_errors
def serve(context: CLIContext, host: Optional[str], port: Optional[int]):
    """Run the HTTP API server."""
    from mcp_gateway.api.server import create_api_server

    server = create_api_server(context.config, context.get_gateway())
    server.run(host=host, port=port)


@cli.command("init-db")
@pass_context
@handle_errors
def init_db(context: CLIContext):
    """Create the gateway database if it does not exist."""
    store = context.get_store()
    console.print(f"[green]✅ Database ready at {store.db_path}[/green]")


# Projects

@cli.group()
def project():
    """Manage projects."""


@project.command("create")
@click.argument("name")
@click.option("--profile-name", default="Default", show_default=True,
              help="Name of the initial active profile")
@pass_context
@handle_errors
def project_create(context: CLIContext, name: str, profile_name: str):
    """Create a project with an active profile."""
    store = context.get_store()
    created = store.create_project(name)
    profile = store.create_profile(created.uuid, profile_name)

    console.print(f"[green]✅ Created project '{name}'[/green]")
    console.print(f"[dim]Project: {created.uuid}[/dim]")
    console.print(f"[dim]Active profile: {profile.uuid} ({profile.name})[/dim]")


@project.command("list")
@pass_context
@handle_errors
def project_list(context: CLIContext):
    """List projects."""
    projects = context.get_store().list_projects()
    if not projects:
        console.print("[yellow]No projects yet[/yellow]")
        return

    table = Table(title=f"Projects ({len(projects)} total)", header_style="bold cyan")
    table.add_column("UUID", style="dim")
    table.add_column("Name", style="green")
    table.add_column("Active profile", style="yellow")
    for item in projects:
        table.add_row(item.uuid, item.name, item.active_profile_uuid or "-")
    console.print(table)


# Profiles

@cli.group()
def profile():
    """Manage profiles."""


@profile.command("create")
@click.argument("project_uuid")
@click.argument("name")
@click.option("--capability", "-c", "capabilities", multiple=True, type=KIND_CHOICE,
              help="Enabled capability kind (repeatable, defaults to all)")
@click.option("--activate/--no-activate", default=True, show_default=True,
              help="Make it the project's active profile")
@pass_context
@handle_errors
def profile_create(
    context: CLIContext,
    project_uuid: str,
    name: str,
    capabilities: Tuple[str, ...],
    activate: bool,
):
    """Create a profile under a project."""
    kinds = [CapabilityKind(c.lower()) for c in capabilities] or None
    created = context.get_store().create_profile(
        project_uuid, name, enabled_capabilities=kinds, make_active=activate
    )
    console.print(f"[green]✅ Created profile '{name}'[/green]")
    console.print(f"[dim]Profile: {created.uuid}[/dim]")
    console.print(f"[dim]Capabilities: {', '.join(k.value for k in created.enabled_capabilities)}[/dim]")


@profile.command("capabilities")
@click.argument("profile_uuid")
@click.argument("kinds", nargs=-1, type=KIND_CHOICE)
@click.option("--none", "disable_all", is_flag=True, help="Disable every capability kind")
@pass_context
@handle_errors
def profile_capabilities(
    context: CLIContext,
    profile_uuid: str,
    kinds: Tuple[str, ...],
    disable_all: bool,
):
    """Show or set the capability kinds a profile exposes."""
    store = context.get_store()
    if kinds or disable_all:
        selected: List[CapabilityKind] = [CapabilityKind(k.lower()) for k in kinds]
        current = store.set_enabled_capabilities(profile_uuid, selected)
    else:
        current = store.get_profile(profile_uuid)
        if current is None:
            raise NotFound(f"Profile {profile_uuid} not found")

    table = Table(title=f"Capabilities of '{current.name}'", header_style="bold cyan")
    table.add_column("Kind", style="blue")
    table.add_column("Status")
    for kind in ALL_CAPABILITY_KINDS:
        status = "✅ Enabled" if current.is_enabled(kind) else "❌ Disabled"
        table.add_row(kind.value, status)
    console.print(table)


@profile.command("delete")
@click.argument("profile_uuid")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
@pass_context
@handle_errors
def profile_delete(context: CLIContext, profile_uuid: str, force: bool):
    """Delete a profile with its connections."""
    store = context.get_store()
    if store.get_profile(profile_uuid) is None:
        raise NotFound(f"Profile {profile_uuid} not found")

    if not force and not click.confirm(f"Delete profile {profile_uuid} and its connections?"):
        console.print("[dim]Deletion cancelled[/dim]")
        return

    connections = store.list_connections(profile_uuid)
    store.delete_profile(profile_uuid)

    transformer = context.get_gateway().transformer
    for connection in connections:
        asyncio.run(transformer.cleanup(connection.uuid))

    console.print(f"[green]✅ Deleted profile {profile_uuid}[/green]")


# API keys

@cli.group()
def keys():
    """Manage API keys."""


@keys.command("issue")
@click.argument("project_uuid")
@click.option("--name", help="Display name")
@pass_context
@handle_errors
def keys_issue(context: CLIContext, project_uuid: str, name: Optional[str]):
    """Issue an API key for a project."""
    issued = context.get_authenticator().issue_api_key(project_uuid, name=name)
    console.print(f"[green]✅ Issued API key '{issued.name}'[/green]")
    console.print(f"[dim]Key: {issued.uuid}[/dim]")
    console.print("[yellow]Store this token now, it is not shown again:[/yellow]")
    # Plain print keeps the token copyable
    click.echo(issued.token)


@keys.command("list")
@click.argument("project_uuid")
@pass_context
@handle_errors
def keys_list(context: CLIContext, project_uuid: str):
    """List API keys of a project."""
    issued = context.get_authenticator().list_api_keys(project_uuid)
    if not issued:
        console.print("[yellow]No API keys for this project[/yellow]")
        return

    table = Table(title=f"API keys ({len(issued)} total)", header_style="bold cyan")
    table.add_column("UUID", style="dim")
    table.add_column("Name", style="green")
    table.add_column("Key ID", style="blue")
    table.add_column("Created", style="white")
    for info in issued:
        table.add_row(info.uuid, info.name, info.key_id, info.created_at.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


@keys.command("revoke")
@click.argument("key_uuid")
@pass_context
@handle_errors
def keys_revoke(context: CLIContext, key_uuid: str):
    """Revoke an API key."""
    if not context.get_authenticator().revoke_api_key(key_uuid):
        raise NotFound(f"API key {key_uuid} not found")
    console.print(f"[green]✅ Revoked API key {key_uuid}[/green]")


# Connections

@cli.group()
def connection():
    """Manage connections."""


@connection.command("add")
@click.argument("profile_uuid")
@click.argument("name")
@click.option("--type", "connection_type", default=ConnectionType.STDIO.value, show_default=True,
              type=click.Choice([t.value for t in ConnectionType], case_sensitive=False),
              help="Transport")
@click.option("--command", "-c", help="Command to launch (STDIO)")
@click.option("--arg", "-a", "args", multiple=True, help="Command argument (repeatable)")
@click.option("--env", "-e", multiple=True, help="Environment variable as KEY=VALUE (repeatable)")
@click.option("--url", help="Endpoint URL (STREAMABLE_HTTP/SSE)")
@click.option("--inactive", is_flag=True, help="Register without activating")
@pass_context
@handle_errors
def connection_add(
    context: CLIContext,
    profile_uuid: str,
    name: str,
    connection_type: str,
    command: Optional[str],
    args: Tuple[str, ...],
    env: Tuple[str, ...],
    url: Optional[str],
    inactive: bool,
):
    """Register a connection with encrypted run parameters."""
    store = context.get_store()
    if store.get_profile(profile_uuid) is None:
        raise NotFound(f"Profile {profile_uuid} not found")

    params = ConnectionParams(
        command=command,
        args=list(args) or None,
        env=parse_env_pairs(env),
        url=url,
    )
    created = store.register_connection(
        context.get_vault(),
        profile_uuid,
        name,
        params,
        type=ConnectionType(connection_type.upper()),
        status=ConnectionStatus.INACTIVE if inactive else ConnectionStatus.ACTIVE,
    )
    console.print(f"[green]✅ Added connection '{name}'[/green]")
    console.print(f"[dim]Connection: {created.uuid}[/dim]")
    console.print(f"[dim]Type: {created.type.value}, status: {created.status.value}[/dim]")


@connection.command("list")
@click.argument("profile_uuid")
@pass_context
@handle_errors
def connection_list(context: CLIContext, profile_uuid: str):
    """List connections of a profile in resolution order."""
    connections = context.get_store().list_connections(profile_uuid)
    if not connections:
        console.print("[yellow]No connections in this profile[/yellow]")
        return

    table = Table(title=f"Connections ({len(connections)} total)", header_style="bold cyan")
    table.add_column("UUID", style="dim")
    table.add_column("Name", style="green")
    table.add_column("Type", style="blue")
    table.add_column("Status")
    for item in connections:
        status = "✅ Active" if item.is_active else "❌ Inactive"
        table.add_row(item.uuid, item.name, item.type.value, status)
    console.print(table)


def _set_status(context: CLIContext, connection_uuid: str, status: ConnectionStatus):
    context.get_store().set_connection_status(connection_uuid, status)
    console.print(f"[green]✅ Connection {connection_uuid} is now {status.value}[/green]")


@connection.command("activate")
@click.argument("connection_uuid")
@pass_context
@handle_errors
def connection_activate(context: CLIContext, connection_uuid: str):
    """Make a connection eligible for resolution."""
    _set_status(context, connection_uuid, ConnectionStatus.ACTIVE)


@connection.command("deactivate")
@click.argument("connection_uuid")
@pass_context
@handle_errors
def connection_deactivate(context: CLIContext, connection_uuid: str):
    """Exclude a connection from resolution."""
    _set_status(context, connection_uuid, ConnectionStatus.INACTIVE)


@connection.command("remove")
@click.argument("connection_uuid")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
@pass_context
@handle_errors
def connection_remove(context: CLIContext, connection_uuid: str, force: bool):
    """Delete a connection, its capabilities and its package installs."""
    target = context.require_connection(connection_uuid)

    if not force and not click.confirm(f"Remove connection '{target.name}'?"):
        console.print("[dim]Removal cancelled[/dim]")
        return

    context.get_store().delete_connection(connection_uuid)
    asyncio.run(context.get_gateway().transformer.cleanup(connection_uuid))
    console.print(f"[green]✅ Removed connection '{target.name}'[/green]")


# Capabilities

@cli.group()
def capability():
    """Manage discovered capabilities."""


@capability.command("add")
@click.argument("connection_uuid")
@click.argument("kind", type=KIND_CHOICE)
@click.argument("name")
@click.option("--description", help="Capability description")
@click.option("--definition", help="Input schema, prompt arguments or resource metadata (JSON)")
@click.option("--inactive", is_flag=True, help="Record without activating")
@pass_context
@handle_errors
def capability_add(
    context: CLIContext,
    connection_uuid: str,
    kind: str,
    name: str,
    description: Optional[str],
    definition: Optional[str],
    inactive: bool,
):
    """Record a tool, prompt, resource or resource template of a connection."""
    context.require_connection(connection_uuid)
    created = context.get_store().add_capability(
        connection_uuid,
        CapabilityKind(kind.lower()),
        name,
        description=description,
        definition=parse_json_option(definition, "--definition"),
        active=not inactive,
    )
    console.print(f"[green]✅ Added {created.kind.value} '{created.name}'[/green]")
    console.print(f"[dim]Capability: {created.uuid}[/dim]")


# Package transform

@cli.command()
@click.argument("connection_uuid")
@click.option("--show-env", is_flag=True, help="Print environment values, not just names")
@pass_context
@handle_errors
def transform(context: CLIContext, connection_uuid: str, show_env: bool):
    """Install a connection's package and show the command it resolves to."""
    target = context.require_connection(connection_uuid)
    gateway = context.get_gateway()

    with console.status(f"Materializing '{target.name}'..."):
        descriptor = asyncio.run(gateway.materialize(target))

    table = Table(title=f"Connection '{descriptor.name}'", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Type", descriptor.type.value)
    table.add_row("Command", descriptor.command or "-")
    table.add_row("Args", abbreviate(descriptor.args, limit=10) or "-")
    if descriptor.url:
        table.add_row("URL", descriptor.url)
    for key, value in sorted((descriptor.env or {}).items()):
        table.add_row(f"env {key}", value if show_env else "***")
    console.print(table)


# Vault maintenance

@cli.group()
def vault():
    """Credential vault maintenance."""


@vault.command("rotate")
@pass_context
@handle_errors
def vault_rotate(context: CLIContext):
    """Re-encrypt every connection under the current master secret."""
    store = context.get_store()
    credential_vault = context.get_vault()

    rotated = 0
    for item in store.list_projects():
        for prof in store.list_profiles(item.uuid):
            for conn in store.list_connections(prof.uuid):
                store.update_connection_params(
                    conn.uuid, credential_vault.rotate_params(prof.uuid, conn.params)
                )
                rotated += 1

    logger.info("Vault rotation finished", extra={"connections": rotated})
    console.print(f"[green]✅ Re-encrypted {rotated} connection(s)[/green]")


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
