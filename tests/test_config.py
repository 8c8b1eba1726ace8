"""
Test configuration and logging utilities.
"""

import logging
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from mcp_gateway.core.exceptions import GatewayError, InstallFailed, NotFound, Unauthenticated
from mcp_gateway.utils.config import Config, ConfigManager
from mcp_gateway.utils.logging import JSONFormatter, TokenRedactingFilter, get_logger, setup_logging


class TestConfig:
    """Test configuration management."""

    def test_config_defaults(self):
        config = Config()

        assert config.debug is False
        assert config.logging.level == "INFO"
        assert config.auth.key_prefix == "mgw_"
        assert config.packages.node_client == "pnpm"
        assert config.packages.transform_on_resolve is True
        assert config.vault.kdf_iterations == 200_000

    def test_database_path(self, tmp_path):
        config = Config(config_dir=str(tmp_path))

        assert config.database_path == tmp_path / "mcp_gateway.db"
        assert Config(db_path=str(tmp_path / "x.db")).database_path == tmp_path / "x.db"

    def test_environment_override(self):
        with patch.dict(os.environ, {
            "MCP_GATEWAY_DEBUG": "true",
            "MCP_GATEWAY_VAULT__MASTER_SECRET": "from-env",
        }):
            config = Config()

        assert config.debug is True
        assert config.vault.master_secret.get_secret_value() == "from-env"

    def test_master_secret_is_masked(self):
        config = Config(vault={"master_secret": "hunter2"})

        assert "hunter2" not in repr(config)

    @pytest.mark.parametrize("section,values", [
        ("logging", {"level": "LOUD"}),
        ("logging", {"format_type": "xml"}),
        ("vault", {"kdf_iterations": 10}),
        ("auth", {"key_prefix": "a.b"}),
        ("packages", {"node_client": "yarn"}),
    ])
    def test_invalid_values(self, section, values):
        with pytest.raises(ValidationError):
            Config(**{section: values})

    def test_toml_file_loading(self, tmp_path):
        config_file = tmp_path / "config.toml"
        config_file.write_text(
            'db_path = "/tmp/gw.db"\n'
            "[packages]\n"
            'node_client = "npm"\n'
            "[api]\n"
            "port = 9100\n"
        )

        config = ConfigManager().load_config([config_file])

        assert config.db_path == "/tmp/gw.db"
        assert config.packages.node_client == "npm"
        assert config.api.port == 9100

    def test_later_files_and_overrides_win(self, tmp_path):
        first = tmp_path / "first.toml"
        second = tmp_path / "second.toml"
        first.write_text("[api]\nport = 1000\nhost = \"0.0.0.0\"\n")
        second.write_text("[api]\nport = 2000\n")

        config = ConfigManager().load_config([first, second], debug=True)

        # Sections are replaced, not merged
        assert config.api.port == 2000
        assert config.api.host == "127.0.0.1"
        assert config.debug is True

    def test_broken_file_is_skipped(self, tmp_path):
        broken = tmp_path / "broken.toml"
        broken.write_text("[api\nport = ")

        config = ConfigManager().load_config([broken])

        assert config.api.port == 8000

    def test_reload(self, tmp_path):
        manager = ConfigManager()
        first = manager.load_config([])
        config_file = tmp_path / "config.toml"
        config_file.write_text("debug = true\n")

        assert manager.load_config([config_file]) is first
        assert manager.reload_config([config_file]).debug is True


class TestExceptions:
    """Test the error hierarchy."""

    def test_status_codes(self):
        assert Unauthenticated("x").status_code == 401
        assert NotFound("x").status_code == 404
        assert InstallFailed("x").status_code == 500

    def test_internal_errors_hide_details(self):
        error = InstallFailed("npm exited with status 1", error_code="INSTALL_COMMAND_FAILED",
                              details={"stderr": "secret path"})

        assert error.client_message == "Internal server error"
        assert str(error) == "[INSTALL_COMMAND_FAILED] npm exited with status 1"

    def test_client_errors_keep_message(self):
        assert NotFound("Tool not found: x").client_message == "Tool not found: x"

    def test_to_dict(self):
        error = GatewayError("boom", error_code="E", details={"k": "v"})

        assert error.to_dict() == {
            "error": "GatewayError",
            "message": "boom",
            "error_code": "E",
            "details": {"k": "v"},
        }


class TestLogging:
    """Test logging utilities."""

    def test_get_logger(self):
        assert get_logger("test_module").name == "test_module"

    def test_setup_logging_with_file(self, tmp_path):
        log_file = tmp_path / "logs" / "gateway.log"

        setup_logging(level="DEBUG", log_file=log_file, enable_rich=False, force=True)
        get_logger("mcp_gateway.test").info("hello")

        assert log_file.exists()
        setup_logging(force=True, enable_rich=False)

    def _record(self, message: str) -> logging.LogRecord:
        return logging.LogRecord("t", logging.INFO, __file__, 1, message, None, None)

    def test_bearer_tokens_are_redacted(self):
        record = self._record("Authorization: Bearer mgw_abc.secretpart")

        TokenRedactingFilter().filter(record)

        assert "secretpart" not in record.getMessage()
        assert "[REDACTED]" in record.getMessage()

    def test_bare_keys_are_redacted(self):
        record = self._record("rejected key mgw_keyid.secretpart")

        TokenRedactingFilter().filter(record)

        assert "secretpart" not in record.getMessage()

    def test_json_formatter_includes_extra(self):
        record = self._record("resolved")
        record.connection_uuid = "abc"

        output = JSONFormatter().format(record)

        assert '"connection_uuid": "abc"' in output
        assert '"message": "resolved"' in output
