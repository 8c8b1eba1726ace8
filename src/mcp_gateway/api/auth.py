"""
API key authentication for MCP Gateway.

Issues opaque bearer tokens of the form ``<prefix><key_id>.<secret>`` and
binds a presented token to the active profile of the key's project. Only a
salted hash of the secret is stored.
"""

import hashlib
import hmac
import re
import secrets
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from mcp_gateway.core.exceptions import InvalidCredentialFormat, Unauthenticated
from mcp_gateway.core.models import ApiCredential, Profile
from mcp_gateway.core.store import GatewayStore
from mcp_gateway.utils.config import get_config
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)

_TOKEN_PART = re.compile(r"^[A-Za-z0-9_-]+$")
_DUMMY_SALT = "0" * 32
_DUMMY_HASH = hashlib.sha256(b"mcp-gateway-dummy").hexdigest()


class IssuedApiKey(BaseModel):
    """A freshly issued key. ``token`` is never available again."""

    uuid: str
    project_uuid: str
    name: str
    key_id: str
    token: str
    created_at: datetime


class ApiKeyInfo(BaseModel):
    """Key metadata safe to show to an operator."""

    uuid: str
    project_uuid: str
    name: str
    key_id: str
    created_at: datetime


def hash_secret(salt: str, secret: str) -> str:
    return hashlib.sha256((salt + secret).encode("utf-8")).hexdigest()


class ApiKeyAuthenticator:
    """Issues, verifies and revokes API keys."""

    def __init__(self, store: GatewayStore, key_prefix: Optional[str] = None):
        self.store = store
        self.key_prefix = key_prefix or get_config().auth.key_prefix

    def issue_api_key(self, project_uuid: str, name: Optional[str] = None) -> IssuedApiKey:
        """
        Create a key for a project.

        Args:
            project_uuid: Project the key belongs to
            name: Display name

        Returns:
            The key metadata and the raw token, shown once
        """
        key_id = secrets.token_urlsafe(12)
        secret = secrets.token_urlsafe(32)
        salt = secrets.token_hex(16)

        credential = self.store.create_api_key(
            project_uuid=project_uuid,
            name=name or "API Key",
            key_id=key_id,
            salt=salt,
            key_hash=hash_secret(salt, secret),
        )

        logger.info("API key issued", extra={
            "key_uuid": credential.uuid,
            "key_id": key_id,
            "project_uuid": project_uuid,
        })

        return IssuedApiKey(
            uuid=credential.uuid,
            project_uuid=project_uuid,
            name=credential.name,
            key_id=key_id,
            token=f"{self.key_prefix}{key_id}.{secret}",
            created_at=credential.created_at,
        )

    def _parse(self, token: str):
        if not token or not token.startswith(self.key_prefix):
            raise InvalidCredentialFormat("API key has an unexpected format",
                                          error_code="BAD_KEY_FORMAT")
        key_id, sep, secret = token[len(self.key_prefix):].partition(".")
        if not sep or not _TOKEN_PART.match(key_id) or not _TOKEN_PART.match(secret):
            raise InvalidCredentialFormat("API key has an unexpected format",
                                          error_code="BAD_KEY_FORMAT")
        return key_id, secret

    def verify(self, token: str) -> ApiCredential:
        """
        Check a token against the stored hash.

        Raises:
            InvalidCredentialFormat: Token is not shaped like an issued key
            Unauthenticated: Unknown key or wrong secret
        """
        key_id, secret = self._parse(token)
        credential = self.store.get_api_key_by_key_id(key_id)

        if credential is None:
            # Same work as a real comparison
            hmac.compare_digest(hash_secret(_DUMMY_SALT, secret), _DUMMY_HASH)
            logger.warning("Unknown API key presented", extra={"key_id": key_id})
            raise Unauthenticated("Unknown API key", error_code="UNKNOWN_KEY")

        if not hmac.compare_digest(hash_secret(credential.salt, secret), credential.key_hash):
            logger.warning("API key secret mismatch", extra={"key_id": key_id})
            raise Unauthenticated("API key secret mismatch", error_code="UNKNOWN_KEY")

        return credential

    def authenticate(self, token: str) -> Profile:
        """
        Bind a token to a profile.

        Returns:
            The active profile of the key's project

        Raises:
            Unauthenticated: Bad key, or a key whose project has no profile
        """
        credential = self.verify(token)

        profile = self.store.get_active_profile(credential.project_uuid)
        if profile is None:
            logger.warning("API key has no active profile", extra={
                "key_id": credential.key_id,
                "project_uuid": credential.project_uuid,
            })
            raise Unauthenticated("Project has no active profile", error_code="NO_PROFILE")

        logger.debug("API key authenticated", extra={
            "key_id": credential.key_id,
            "profile_uuid": profile.uuid,
        })
        return profile

    def authenticate_header(self, authorization: Optional[str]) -> Profile:
        """Authenticate an ``Authorization: Bearer <token>`` header value."""
        if not authorization:
            raise Unauthenticated("Missing Authorization header", error_code="NO_CREDENTIALS")
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise Unauthenticated("Authorization header is not a bearer token",
                                  error_code="NO_CREDENTIALS")
        return self.authenticate(token.strip())

    def revoke_api_key(self, key_uuid: str) -> bool:
        """Delete a key. Returns False when it did not exist."""
        revoked = self.store.delete_api_key(key_uuid)
        if revoked:
            logger.info("API key revoked", extra={"key_uuid": key_uuid})
        return revoked

    def list_api_keys(self, project_uuid: str) -> List[ApiKeyInfo]:
        return [
            ApiKeyInfo(
                uuid=c.uuid,
                project_uuid=c.project_uuid,
                name=c.name,
                key_id=c.key_id,
                created_at=c.created_at,
            )
            for c in self.store.list_api_keys(project_uuid)
        ]
