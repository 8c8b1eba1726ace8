"""
Credential vault for connection run parameters.

Each parameter column (command, args, env, url) is encrypted on its own with
a Fernet key derived from the server-held master secret and the owning
profile, so ciphertext from one profile never decrypts under another.
"""

import base64
import hashlib
import json
from functools import lru_cache
from typing import Any, List, Optional, Sequence

import keyring
from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from keyring.errors import KeyringError

from mcp_gateway.core.exceptions import ConfigError, CredentialDecryptionFailed
from mcp_gateway.core.models import (
    Connection,
    ConnectionParams,
    EncryptedField,
    EncryptedParams,
)
from mcp_gateway.utils.config import Config
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)

PARAM_FIELDS = ("command", "args", "env", "url")
KEYRING_USERNAME = "master_secret"


@lru_cache(maxsize=1024)
def _derive_key(master_secret: str, profile_uuid: str, iterations: int) -> bytes:
    """Derive a Fernet key for one profile under one master secret."""
    salt = hashlib.sha256(f"mcp-gateway:{profile_uuid}".encode()).digest()
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(master_secret.encode()))


def load_master_secret(config: Config) -> str:
    """
    Locate the master secret.

    Looks at the ``vault.master_secret`` setting first, then the system
    keyring. A server never invents a secret of its own.

    Raises:
        ConfigError: If no master secret is available
    """
    if config.vault.master_secret is not None:
        secret = config.vault.master_secret.get_secret_value()
        if secret:
            return secret

    service = config.vault.keyring_service
    if service:
        try:
            secret = keyring.get_password(service, KEYRING_USERNAME)
        except KeyringError as e:
            logger.warning(f"System keyring unavailable: {e}")
            secret = None
        if secret:
            logger.debug("Loaded vault master secret from keyring",
                         extra={"keyring_service": service})
            return secret

    raise ConfigError(
        "No vault master secret configured; set vault.master_secret, "
        "MCP_GATEWAY_VAULT__MASTER_SECRET or store one in the system keyring",
        error_code="VAULT_NO_SECRET",
    )


class CredentialVault:
    """Encrypts and decrypts connection parameters per profile."""

    def __init__(
        self,
        master_secret: str,
        previous_secrets: Optional[Sequence[str]] = None,
        iterations: int = 200_000,
    ):
        if not master_secret:
            raise ConfigError("Vault master secret must not be empty",
                              error_code="VAULT_NO_SECRET")
        self._secrets: List[str] = [master_secret] + [
            s for s in (previous_secrets or []) if s and s != master_secret
        ]
        self.iterations = iterations

    @classmethod
    def from_config(cls, config: Config) -> "CredentialVault":
        """Build a vault from configuration, keyring included."""
        previous = [s.get_secret_value() for s in config.vault.previous_master_secrets]
        return cls(
            load_master_secret(config),
            previous_secrets=previous,
            iterations=config.vault.kdf_iterations,
        )

    def _fernet(self, profile_uuid: str) -> MultiFernet:
        # First key encrypts, all keys are tried on decrypt
        return MultiFernet([
            Fernet(_derive_key(secret, profile_uuid, self.iterations))
            for secret in self._secrets
        ])

    def encrypt_field(self, profile_uuid: str, value: Any) -> EncryptedField:
        """Encrypt one value. None stays a null field."""
        if value is None:
            return EncryptedField.null()
        payload = json.dumps(value, separators=(",", ":")).encode("utf-8")
        token = self._fernet(profile_uuid).encrypt(payload)
        return EncryptedField(token.decode("ascii"))

    def decrypt_field(
        self,
        profile_uuid: str,
        field: EncryptedField,
        field_name: str = "value",
    ) -> Any:
        """
        Decrypt one field back to its original value.

        Raises:
            CredentialDecryptionFailed: Ciphertext is corrupt, was produced
                under another key, or does not hold a JSON payload
        """
        if field.is_null:
            return None
        try:
            payload = self._fernet(profile_uuid).decrypt(field.ciphertext.encode("ascii"))
            return json.loads(payload.decode("utf-8"))
        except (InvalidToken, ValueError, TypeError) as e:
            raise CredentialDecryptionFailed(
                f"Failed to decrypt connection field '{field_name}'",
                error_code="DECRYPT_FAILED",
                details={"field": field_name},
            ) from e

    def rotate(self, profile_uuid: str, field: EncryptedField) -> EncryptedField:
        """Re-encrypt a field under the current master secret."""
        if field.is_null:
            return field
        try:
            token = self._fernet(profile_uuid).rotate(field.ciphertext.encode("ascii"))
        except (InvalidToken, ValueError, TypeError) as e:
            raise CredentialDecryptionFailed(
                "Failed to rotate connection field",
                error_code="DECRYPT_FAILED",
            ) from e
        return EncryptedField(token.decode("ascii"))

    def encrypt(self, profile_uuid: str, params: ConnectionParams) -> EncryptedParams:
        """Encrypt every run parameter independently."""
        return EncryptedParams(**{
            name: self.encrypt_field(profile_uuid, getattr(params, name))
            for name in PARAM_FIELDS
        })

    def decrypt_params(self, profile_uuid: str, params: EncryptedParams) -> ConnectionParams:
        """Decrypt an EncryptedParams bundle."""
        values = {
            name: self.decrypt_field(profile_uuid, getattr(params, name), name)
            for name in PARAM_FIELDS
        }
        try:
            return ConnectionParams(**values)
        except ValueError as e:
            raise CredentialDecryptionFailed(
                "Decrypted connection parameters have an unexpected shape",
                error_code="DECRYPT_FAILED",
            ) from e

    def decrypt(self, connection: Connection) -> ConnectionParams:
        """Decrypt the run parameters of a stored connection."""
        return self.decrypt_params(connection.profile_uuid, connection.params)

    def rotate_params(self, profile_uuid: str, params: EncryptedParams) -> EncryptedParams:
        """Re-encrypt every non-null field under the current master secret."""
        return EncryptedParams(**{
            name: self.rotate(profile_uuid, getattr(params, name))
            for name in PARAM_FIELDS
        })
