"""
Test the gateway store and capability resolution.
"""

from unittest.mock import patch

import pytest

from mcp_gateway.core.exceptions import NotFound, ValidationError
from mcp_gateway.core.models import CapabilityKind, ConnectionParams, ConnectionStatus
from mcp_gateway.core.resolver import CapabilityIndex


class TestStore:
    """Test persistence of projects, profiles and connections."""

    def test_new_profile_becomes_active(self, store, project, profile):
        assert project.active_profile_uuid == profile.uuid
        assert profile.enabled_capabilities == list(CapabilityKind)

    def test_profile_requires_project(self, store):
        with pytest.raises(NotFound):
            store.create_profile("missing-project", "Default")

    def test_connections_keep_creation_order(self, store, profile, add_connection):
        first = add_connection("first", command="echo")
        second = add_connection("second", command="echo")

        listed = store.list_connections(profile.uuid)

        assert [c.uuid for c in listed] == [first.uuid, second.uuid]
        assert first.created_seq < second.created_seq

    def test_params_are_stored_encrypted(self, store, add_connection):
        connection = add_connection("secret", command="npx", env={"TOKEN": "sk-123"})

        with store.get_connection() as conn:
            row = conn.execute(
                "SELECT env_encrypted FROM connections WHERE uuid = ?", (connection.uuid,)
            ).fetchone()

        assert row[0] is not None
        assert "sk-123" not in row[0]

    def test_duplicate_capability_rejected(self, store, add_connection):
        connection = add_connection("github", command="echo")
        store.add_capability(connection.uuid, CapabilityKind.TOOL, "search")

        with pytest.raises(ValidationError):
            store.add_capability(connection.uuid, CapabilityKind.TOOL, "search")

    def test_delete_profile_cascades(self, store, project, profile, add_connection):
        connection = add_connection("github", command="echo")
        store.add_capability(connection.uuid, CapabilityKind.TOOL, "search")

        assert store.delete_profile(profile.uuid) is True

        assert store.get_connection_record(connection.uuid) is None
        assert store.list_connection_capabilities(connection.uuid) == []
        assert store.get_project(project.uuid).active_profile_uuid is None

    def test_set_enabled_capabilities_dedupes(self, store, profile):
        updated = store.set_enabled_capabilities(
            profile.uuid, [CapabilityKind.TOOL, CapabilityKind.TOOL, CapabilityKind.PROMPT]
        )

        assert updated.enabled_capabilities == [CapabilityKind.TOOL, CapabilityKind.PROMPT]
        assert store.get_profile(profile.uuid).enabled_capabilities == updated.enabled_capabilities

    def test_set_status_of_missing_connection(self, store):
        with pytest.raises(NotFound):
            store.set_connection_status("missing", ConnectionStatus.INACTIVE)

    def test_connection_vanishing_after_insert(self, store, vault, profile):
        with patch.object(store, "get_connection_record", return_value=None):
            with pytest.raises(NotFound):
                store.register_connection(vault, profile.uuid, "racy", ConnectionParams(command="echo"))

    def test_connection_vanishing_after_update(self, store, vault, add_connection):
        connection = add_connection("racy", command="echo")
        params = vault.encrypt(connection.profile_uuid, ConnectionParams(command="true"))

        with patch.object(store, "get_connection_record", return_value=None):
            with pytest.raises(NotFound):
                store.update_connection_params(connection.uuid, params)

    def test_update_params_of_missing_connection(self, store, vault, profile):
        params = vault.encrypt(profile.uuid, ConnectionParams(command="true"))

        with pytest.raises(NotFound):
            store.update_connection_params("missing", params)


class TestCapabilityIndex:
    """Test name and URI resolution."""

    @pytest.fixture(autouse=True)
    def _index(self, store):
        self.index = CapabilityIndex(store)

    def test_resolve_tool(self, store, profile, add_connection):
        connection = add_connection("github", command="echo")
        store.add_capability(connection.uuid, CapabilityKind.TOOL, "create_issue")

        resolved = self.index.resolve(profile, CapabilityKind.TOOL, "create_issue")

        assert resolved.connection.uuid == connection.uuid
        assert resolved.capability.name == "create_issue"
        assert resolved.contenders == []

    def test_resolve_resource_by_uri(self, store, profile, add_connection):
        connection = add_connection("files", command="echo")
        store.add_capability(connection.uuid, CapabilityKind.RESOURCE, "file:///docs/readme.md",
                             definition={"name": "readme", "mimeType": "text/markdown"})

        resolved = self.index.resolve(profile, CapabilityKind.RESOURCE, "file:///docs/readme.md")

        assert resolved.connection.uuid == connection.uuid

    def test_names_are_case_sensitive(self, store, profile, add_connection):
        connection = add_connection("github", command="echo")
        store.add_capability(connection.uuid, CapabilityKind.TOOL, "Search")

        with pytest.raises(NotFound):
            self.index.resolve(profile, CapabilityKind.TOOL, "search")

    def test_kinds_do_not_mix(self, store, profile, add_connection):
        connection = add_connection("github", command="echo")
        store.add_capability(connection.uuid, CapabilityKind.PROMPT, "summarize")

        with pytest.raises(NotFound) as exc_info:
            self.index.resolve(profile, CapabilityKind.TOOL, "summarize")

        assert str(exc_info.value.message) == "Tool not found: summarize"

    def test_earliest_connection_wins(self, store, profile, add_connection):
        first = add_connection("first", command="echo")
        second = add_connection("second", command="echo")
        # Declared on the later connection first
        store.add_capability(second.uuid, CapabilityKind.TOOL, "search")
        store.add_capability(first.uuid, CapabilityKind.TOOL, "search")

        resolved = self.index.resolve(profile, CapabilityKind.TOOL, "search")

        assert resolved.connection.uuid == first.uuid
        assert resolved.contenders == [second.uuid]

    def test_inactive_connection_is_skipped(self, store, profile, add_connection):
        first = add_connection("first", command="echo")
        second = add_connection("second", command="echo")
        store.add_capability(first.uuid, CapabilityKind.TOOL, "search")
        store.add_capability(second.uuid, CapabilityKind.TOOL, "search")

        store.set_connection_status(first.uuid, ConnectionStatus.INACTIVE)

        resolved = self.index.resolve(profile, CapabilityKind.TOOL, "search")
        assert resolved.connection.uuid == second.uuid

    def test_only_inactive_connection_is_not_found(self, store, profile, add_connection):
        connection = add_connection("github", command="echo", status=ConnectionStatus.INACTIVE)
        store.add_capability(connection.uuid, CapabilityKind.TOOL, "search")

        with pytest.raises(NotFound):
            self.index.resolve(profile, CapabilityKind.TOOL, "search")

    def test_inactive_capability_is_skipped(self, store, profile, add_connection):
        connection = add_connection("github", command="echo")
        capability = store.add_capability(connection.uuid, CapabilityKind.TOOL, "search")
        store.set_capability_active(capability.uuid, False)

        with pytest.raises(NotFound):
            self.index.resolve(profile, CapabilityKind.TOOL, "search")

    def test_disabled_kind_is_not_found(self, store, profile, add_connection):
        connection = add_connection("github", command="echo")
        store.add_capability(connection.uuid, CapabilityKind.TOOL, "search")
        profile = store.set_enabled_capabilities(profile.uuid, [CapabilityKind.PROMPT])

        with pytest.raises(NotFound) as exc_info:
            self.index.resolve(profile, CapabilityKind.TOOL, "search")

        assert exc_info.value.error_code == "CAPABILITY_DISABLED"
        assert self.index.list_capabilities(profile, CapabilityKind.TOOL) == []

    def test_other_profile_is_invisible(self, store, project, vault, add_connection):
        connection = add_connection("github", command="echo")
        store.add_capability(connection.uuid, CapabilityKind.TOOL, "search")
        other = store.create_profile(project.uuid, "Staging", make_active=False)

        with pytest.raises(NotFound):
            self.index.resolve(other, CapabilityKind.TOOL, "search")

    def test_list_is_sorted_by_name(self, store, profile, add_connection):
        connection = add_connection("github", command="echo")
        for name in ("zeta", "alpha", "mid"):
            store.add_capability(connection.uuid, CapabilityKind.TOOL, name)

        names = [c.name for c in self.index.list_capabilities(profile, CapabilityKind.TOOL)]

        assert names == ["alpha", "mid", "zeta"]
