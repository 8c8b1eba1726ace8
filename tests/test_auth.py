"""
Test API key issuing and authentication.
"""

import pytest

from mcp_gateway.api.auth import ApiKeyAuthenticator, hash_secret
from mcp_gateway.core.exceptions import InvalidCredentialFormat, Unauthenticated

from conftest import KEY_PREFIX


class TestIssueApiKey:
    """Test key creation."""

    def test_token_shape(self, authenticator, project):
        issued = authenticator.issue_api_key(project.uuid, name="ci")

        assert issued.token.startswith(KEY_PREFIX)
        key_id, _, secret = issued.token[len(KEY_PREFIX):].partition(".")
        assert key_id == issued.key_id
        assert secret

    def test_secret_is_not_stored(self, store, authenticator, project):
        issued = authenticator.issue_api_key(project.uuid)
        secret = issued.token.rsplit(".", 1)[1]

        stored = store.get_api_key_by_key_id(issued.key_id)

        assert stored.key_hash == hash_secret(stored.salt, secret)
        assert secret not in stored.key_hash

    def test_keys_are_unique(self, authenticator, project):
        first = authenticator.issue_api_key(project.uuid)
        second = authenticator.issue_api_key(project.uuid)

        assert first.token != second.token
        assert len(authenticator.list_api_keys(project.uuid)) == 2


class TestAuthenticate:
    """Test binding tokens to profiles."""

    def test_resolves_active_profile(self, authenticator, profile, api_token):
        assert authenticator.authenticate(api_token).uuid == profile.uuid

    def test_follows_active_profile_switch(self, store, authenticator, project, api_token):
        staging = store.create_profile(project.uuid, "Staging")

        assert authenticator.authenticate(api_token).uuid == staging.uuid

    @pytest.mark.parametrize("token", [
        "",
        "no-prefix",
        f"{KEY_PREFIX}missing-secret",
        f"{KEY_PREFIX}.secret",
        f"{KEY_PREFIX}bad id.secret",
    ])
    def test_malformed_tokens(self, authenticator, token):
        with pytest.raises(InvalidCredentialFormat):
            authenticator.authenticate(token)

    def test_unknown_key(self, authenticator):
        with pytest.raises(Unauthenticated) as exc_info:
            authenticator.authenticate(f"{KEY_PREFIX}unknownkey.secretsecret")

        assert exc_info.value.error_code == "UNKNOWN_KEY"

    def test_wrong_secret(self, authenticator, api_token):
        forged = api_token.rsplit(".", 1)[0] + ".wrongsecret"

        with pytest.raises(Unauthenticated):
            authenticator.authenticate(forged)

    def test_revoked_key(self, authenticator, project):
        issued = authenticator.issue_api_key(project.uuid)

        assert authenticator.revoke_api_key(issued.uuid) is True
        assert authenticator.revoke_api_key(issued.uuid) is False

        with pytest.raises(Unauthenticated):
            authenticator.authenticate(issued.token)

    def test_project_without_profile(self, store, authenticator):
        bare = store.create_project("Bare")
        issued = authenticator.issue_api_key(bare.uuid)

        with pytest.raises(Unauthenticated) as exc_info:
            authenticator.authenticate(issued.token)

        assert exc_info.value.error_code == "NO_PROFILE"

    def test_all_failures_share_client_message(self, authenticator, api_token):
        """Callers cannot tell why a key was rejected."""
        messages = set()
        for token in ("garbage", f"{KEY_PREFIX}unknownkey.secret", api_token + "x"):
            with pytest.raises(Unauthenticated) as exc_info:
                authenticator.authenticate(token)
            messages.add(exc_info.value.client_message)

        assert messages == {"Unauthorized: Invalid API key"}


class TestAuthorizationHeader:
    """Test bearer header parsing."""

    def test_bearer_header(self, authenticator, profile, api_token):
        assert authenticator.authenticate_header(f"Bearer {api_token}").uuid == profile.uuid

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer "])
    def test_bad_headers(self, authenticator, header):
        with pytest.raises(Unauthenticated):
            authenticator.authenticate_header(header)

    def test_custom_prefix(self, store, project):
        custom = ApiKeyAuthenticator(store, key_prefix="corp_")
        issued = custom.issue_api_key(project.uuid)

        assert issued.token.startswith("corp_")
        assert custom.authenticate(issued.token).project_uuid == project.uuid
