"""
Pytest configuration and fixtures for MCP Gateway testing.

Every test gets its own SQLite database and package store under tmp_path.
Package installs go through FakeRunner, which lays out the files a real
pnpm/npm/uv run would leave behind and reports image ids for docker pulls,
without touching the network.
"""

import asyncio
import hashlib
import json
import os
import stat
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from mcp_gateway.api.auth import ApiKeyAuthenticator
from mcp_gateway.core.exceptions import InstallFailed
from mcp_gateway.core.gateway import ResolutionGateway
from mcp_gateway.core.models import ConnectionParams, ConnectionType
from mcp_gateway.core.packages import CommandResult, CommandRunner, PackageCommandTransformer
from mcp_gateway.core.store import GatewayStore
from mcp_gateway.core.vault import CredentialVault
from mcp_gateway.utils.config import Config

MASTER_SECRET = "test-master-secret"
KDF_ITERATIONS = 1000
KEY_PREFIX = "mgw_"


def fake_image_id(reference: str) -> str:
    """Image id FakeRunner reports for a pulled reference."""
    return "sha256:" + hashlib.sha256(reference.encode()).hexdigest()


def _make_executable(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


class FakeRunner(CommandRunner):
    """CommandRunner that simulates installer side effects."""

    def __init__(self, delay: float = 0.0, fail: bool = False, with_bin: bool = True):
        self.calls: List[List[str]] = []
        self.envs: List[Dict[str, str]] = []
        self.delay = delay
        self.fail = fail
        self.with_bin = with_bin

    @property
    def install_calls(self) -> List[List[str]]:
        """Calls that install a package (uv venv creation excluded)."""
        return [argv for argv in self.calls if "venv" not in argv[:2]]

    async def run(
        self,
        argv: List[str],
        cwd: Path,
        env: Optional[Dict[str, str]] = None,
        timeout: float = 300.0,
    ) -> CommandResult:
        self.calls.append(list(argv))
        self.envs.append(dict(env or {}))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise InstallFailed(
                f"{' '.join(argv[:2])} exited with status 1",
                error_code="INSTALL_COMMAND_FAILED",
                details={"stderr": "npm ERR! 404 Not Found"},
            )

        if argv[0] in ("pnpm", "npm"):
            self._fake_node_install(Path(cwd), argv[-1])
        elif argv[0] == "docker":
            if argv[1:3] == ["image", "inspect"]:
                return CommandResult(returncode=0, stdout=fake_image_id(argv[-1]) + "\n", stderr="")
        elif argv[1] == "venv":
            (Path(argv[2]) / "bin").mkdir(parents=True, exist_ok=True)
        elif argv[1:3] == ["pip", "install"]:
            self._fake_uv_install(Path(env["VIRTUAL_ENV"]), argv[-1])

        return CommandResult(returncode=0, stdout="", stderr="")

    def _fake_node_install(self, install_dir: Path, requirement: str) -> None:
        at = requirement.rfind("@")
        name, version = (requirement[:at], requirement[at + 1:]) if at > 0 else (requirement, None)
        unscoped = name.split("/")[-1]

        package_dir = install_dir / "node_modules" / name
        package_dir.mkdir(parents=True, exist_ok=True)
        manifest = {"name": name, "version": version or "1.0.0", "main": "index.js"}
        if self.with_bin:
            manifest["bin"] = {unscoped: "cli.js"}
            _make_executable(install_dir / "node_modules" / ".bin" / unscoped)
        (package_dir / "index.js").write_text("module.exports = {};\n")
        (package_dir / "package.json").write_text(json.dumps(manifest))

    def _fake_uv_install(self, venv_dir: Path, requirement: str) -> None:
        name, _, version = requirement.partition("==")
        _make_executable(venv_dir / ("Scripts" if os.name == "nt" else "bin") / name)
        dist_name = name.replace("-", "_")
        site_packages = venv_dir / "lib" / "python3.12" / "site-packages"
        (site_packages / f"{dist_name}-{version or '0.1.0'}.dist-info").mkdir(parents=True, exist_ok=True)


@pytest.fixture
def config(tmp_path) -> Config:
    """Configuration isolated under tmp_path."""
    return Config(
        config_dir=str(tmp_path / "config"),
        db_path=str(tmp_path / "gateway.db"),
        logging={"file": None, "enable_rich": False},
        vault={"master_secret": MASTER_SECRET, "kdf_iterations": KDF_ITERATIONS},
        auth={"key_prefix": KEY_PREFIX},
        packages={"store_dir": str(tmp_path / "packages"), "node_client": "pnpm"},
        api={"rate_limit_per_minute": 1000, "rate_limit_per_hour": 10000},
    )


@pytest.fixture
def store(config) -> GatewayStore:
    return GatewayStore(config.database_path)


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(MASTER_SECRET, iterations=KDF_ITERATIONS)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def transformer(tmp_path, runner) -> PackageCommandTransformer:
    return PackageCommandTransformer(tmp_path / "packages", runner=runner, node_client="pnpm")


@pytest.fixture
def authenticator(store) -> ApiKeyAuthenticator:
    return ApiKeyAuthenticator(store, key_prefix=KEY_PREFIX)


@pytest.fixture
def gateway(store, vault, transformer, authenticator) -> ResolutionGateway:
    return ResolutionGateway(store, vault, transformer, authenticator=authenticator)


@pytest.fixture
def project(store):
    """A project with an active profile."""
    created = store.create_project("Acme")
    store.create_profile(created.uuid, "Default")
    return store.get_project(created.uuid)


@pytest.fixture
def profile(store, project):
    return store.get_active_profile(project.uuid)


@pytest.fixture
def api_token(authenticator, project) -> str:
    return authenticator.issue_api_key(project.uuid, name="test").token


@pytest.fixture
def add_connection(store, vault, profile):
    """Factory registering an encrypted connection under the active profile."""

    def _add(name: str, command: Optional[str] = None, args: Optional[List[str]] = None,
             env: Optional[Dict[str, str]] = None, url: Optional[str] = None,
             type: ConnectionType = ConnectionType.STDIO, **kwargs):
        params = ConnectionParams(command=command, args=args, env=env, url=url)
        return store.register_connection(vault, profile.uuid, name, params, type=type, **kwargs)

    return _add


@pytest.fixture
def client(config, gateway) -> TestClient:
    from mcp_gateway.api.server import create_api_server

    server = create_api_server(config, gateway)
    with TestClient(server.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(api_token) -> Dict[str, str]:
    return {"Authorization": f"Bearer {api_token}"}
