"""
Test end-to-end resolution through the gateway.
"""

import os
import threading
from unittest.mock import patch

import pytest

from mcp_gateway.core.exceptions import (
    CredentialDecryptionFailed,
    InstallFailed,
    InvalidRequest,
    NotFound,
    Unauthenticated,
)
from mcp_gateway.core.gateway import ResolutionGateway, merge_environment
from mcp_gateway.core.models import (
    CapabilityKind,
    ConnectionParams,
    ConnectionStatus,
    ConnectionType,
)
from mcp_gateway.core.packages import ConcreteCommand
from mcp_gateway.core.vault import CredentialVault

from conftest import KDF_ITERATIONS, fake_image_id


class TestMergeEnvironment:
    """Test layering of connection env over install env."""

    def setup_method(self):
        self.transformed = ConcreteCommand(
            command="/store/bin/server",
            env={"NODE_PATH": "/store/node_modules", "PATH": "/store/bin:/usr/bin"},
            path_prefix=["/store/bin"],
            installed=True,
        )

    def test_connection_values_win(self):
        env = merge_environment({"NODE_PATH": "/custom", "TOKEN": "x"}, self.transformed)

        assert env["NODE_PATH"] == "/custom"
        assert env["TOKEN"] == "x"
        assert env["PATH"] == "/store/bin:/usr/bin"

    def test_install_dirs_lead_connection_path(self):
        env = merge_environment({"PATH": "/opt/tools"}, self.transformed)

        assert env["PATH"] == os.pathsep.join(["/store/bin", "/opt/tools"])

    def test_no_connection_env(self):
        assert merge_environment(None, self.transformed) == self.transformed.env

    def test_nothing_to_merge(self):
        assert merge_environment(None, ConcreteCommand(command="python")) is None


class TestResolve:
    """Test the resolve flow."""

    @pytest.mark.asyncio
    async def test_resolve_transforms_package_command(self, gateway, store, runner,
                                                      add_connection, api_token):
        connection = add_connection(
            "filesystem",
            command="npx",
            args=["-y", "@modelcontextprotocol/server-filesystem", "/data"],
            env={"TOKEN": "sk-123"},
        )
        store.add_capability(connection.uuid, CapabilityKind.TOOL, "read_file")

        descriptor = await gateway.resolve(api_token, CapabilityKind.TOOL, "read_file")

        assert descriptor.uuid == connection.uuid
        assert descriptor.name == "filesystem"
        assert descriptor.type == ConnectionType.STDIO
        assert descriptor.command.endswith(os.path.join("node_modules", ".bin", "server-filesystem"))
        assert descriptor.args == ["/data"]
        assert descriptor.env["TOKEN"] == "sk-123"
        assert "NODE_PATH" in descriptor.env
        assert len(runner.calls) == 1

    @pytest.mark.asyncio
    async def test_repeated_resolution_installs_once(self, gateway, store, runner,
                                                     add_connection, api_token):
        connection = add_connection("memory", command="npx", args=["-y", "server-memory"])
        store.add_capability(connection.uuid, CapabilityKind.TOOL, "remember")

        first = await gateway.resolve(api_token, CapabilityKind.TOOL, "remember")
        second = await gateway.resolve(api_token, CapabilityKind.TOOL, "remember")

        assert first == second
        assert len(runner.calls) == 1

    @pytest.mark.asyncio
    async def test_plain_command_is_returned_as_declared(self, gateway, store, runner,
                                                         add_connection, api_token):
        connection = add_connection("local", command="python", args=["server.py"])
        store.add_capability(connection.uuid, CapabilityKind.PROMPT, "summarize")

        descriptor = await gateway.resolve(api_token, CapabilityKind.PROMPT, "summarize")

        assert descriptor.command == "python"
        assert descriptor.args == ["server.py"]
        assert descriptor.env is None
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_deactivated_connection_stops_resolving(self, gateway, store,
                                                          add_connection, api_token):
        connection = add_connection("C1", command="python", args=["server.py"])
        store.add_capability(connection.uuid, CapabilityKind.PROMPT, "summarize")

        descriptor = await gateway.resolve(api_token, CapabilityKind.PROMPT, "summarize")
        assert descriptor.uuid == connection.uuid

        store.set_connection_status(connection.uuid, ConnectionStatus.INACTIVE)

        with pytest.raises(NotFound):
            await gateway.resolve(api_token, CapabilityKind.PROMPT, "summarize")

    @pytest.mark.asyncio
    async def test_docker_connection_is_pinned(self, gateway, store, runner,
                                               add_connection, api_token):
        connection = add_connection(
            "github",
            command="docker",
            args=["run", "-i", "--rm", "-e", "GITHUB_TOKEN", "mcp/github"],
            env={"GITHUB_TOKEN": "ghp_123"},
        )
        store.add_capability(connection.uuid, CapabilityKind.TOOL, "search_repos")

        descriptor = await gateway.resolve(api_token, CapabilityKind.TOOL, "search_repos")

        assert descriptor.command == "docker"
        assert descriptor.args[0] == "run"
        assert descriptor.args[-1] == fake_image_id("mcp/github")
        assert "mcp/github" not in descriptor.args
        assert descriptor.env == {"GITHUB_TOKEN": "ghp_123"}
        assert runner.calls[0] == ["docker", "pull", "mcp/github"]

    @pytest.mark.asyncio
    async def test_decryption_runs_off_the_event_loop(self, gateway, store,
                                                      add_connection, api_token):
        connection = add_connection("local", command="python")
        store.add_capability(connection.uuid, CapabilityKind.TOOL, "run")
        decrypt = gateway.vault.decrypt
        threads = []

        def recording_decrypt(conn):
            threads.append(threading.get_ident())
            return decrypt(conn)

        with patch.object(gateway.vault, "decrypt", side_effect=recording_decrypt):
            descriptor = await gateway.resolve(api_token, CapabilityKind.TOOL, "run")

        assert descriptor.command == "python"
        assert threads and threads[0] != threading.get_ident()

    @pytest.mark.asyncio
    async def test_remote_connection_is_not_transformed(self, gateway, store, runner,
                                                        add_connection, api_token):
        connection = add_connection(
            "remote",
            url="https://mcp.example.com/mcp",
            type=ConnectionType.STREAMABLE_HTTP,
        )
        store.add_capability(connection.uuid, CapabilityKind.RESOURCE, "docs://index")

        descriptor = await gateway.resolve(api_token, CapabilityKind.RESOURCE, "docs://index")

        assert descriptor.type == ConnectionType.STREAMABLE_HTTP
        assert descriptor.url == "https://mcp.example.com/mcp"
        assert descriptor.command is None
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_transform_can_be_disabled(self, store, vault, transformer, authenticator,
                                             runner, add_connection, api_token):
        gateway = ResolutionGateway(store, vault, transformer, authenticator,
                                    transform_on_resolve=False)
        connection = add_connection("memory", command="npx", args=["-y", "server-memory"])
        store.add_capability(connection.uuid, CapabilityKind.TOOL, "remember")

        descriptor = await gateway.resolve(api_token, CapabilityKind.TOOL, "remember")

        assert descriptor.command == "npx"
        assert descriptor.args == ["-y", "server-memory"]
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_empty_name(self, gateway, api_token):
        with pytest.raises(InvalidRequest):
            await gateway.resolve(api_token, CapabilityKind.TOOL, "")

    @pytest.mark.asyncio
    async def test_bad_token(self, gateway):
        with pytest.raises(Unauthenticated):
            await gateway.resolve("mgw_nope.nope", CapabilityKind.TOOL, "anything")

    @pytest.mark.asyncio
    async def test_unknown_capability(self, gateway, api_token):
        with pytest.raises(NotFound):
            await gateway.resolve(api_token, CapabilityKind.TOOL, "missing")

    @pytest.mark.asyncio
    async def test_undecryptable_connection(self, gateway, store, profile, api_token):
        foreign = CredentialVault("some-other-secret", iterations=KDF_ITERATIONS)
        connection = store.register_connection(
            foreign, profile.uuid, "foreign", ConnectionParams(command="python")
        )
        store.add_capability(connection.uuid, CapabilityKind.TOOL, "run")

        with pytest.raises(CredentialDecryptionFailed):
            await gateway.resolve(api_token, CapabilityKind.TOOL, "run")

    @pytest.mark.asyncio
    async def test_install_failure_propagates(self, gateway, store, runner,
                                              add_connection, api_token):
        runner.fail = True
        connection = add_connection("broken", command="npx", args=["-y", "missing-pkg"])
        store.add_capability(connection.uuid, CapabilityKind.TOOL, "broken_tool")

        with pytest.raises(InstallFailed):
            await gateway.resolve(api_token, CapabilityKind.TOOL, "broken_tool")


class TestListing:
    """Test capability listings."""

    def test_list_capabilities(self, gateway, store, add_connection, api_token):
        github = add_connection("GitHub", command="python")
        store.add_capability(github.uuid, CapabilityKind.TOOL, "search",
                             definition={"type": "object", "properties": {"q": {"type": "string"}}})
        store.add_capability(github.uuid, CapabilityKind.PROMPT, "triage")

        tools = gateway.list_capabilities(api_token, CapabilityKind.TOOL)

        assert [t.capability.name for t in tools] == ["search"]
        assert tools[0].connection.uuid == github.uuid

    def test_profile_capabilities(self, gateway, store, profile, api_token):
        store.set_enabled_capabilities(profile.uuid, [CapabilityKind.TOOL])

        assert gateway.profile_capabilities(api_token) == [CapabilityKind.TOOL]
