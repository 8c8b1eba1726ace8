"""
Package manager handlers.

Each handler installs a package into an isolated per-connection directory,
finds the executable it provides, and describes the environment needed to
run it. Container images are pulled and pinned by id instead.
"""

import json
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from mcp_gateway.core.exceptions import InstallFailed
from mcp_gateway.core.packages.models import InstallRecord, PackageSpec
from mcp_gateway.core.packages.runner import CommandRunner
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)

_NODE_NAME = re.compile(r"^(@[A-Za-z0-9][A-Za-z0-9._-]*/)?[A-Za-z0-9][A-Za-z0-9._-]*$")
_PYTHON_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*(\[[A-Za-z0-9._,-]+\])?$")
_VERSION = re.compile(r"^[A-Za-z0-9._^~*+<>=!-]+$")
_IMAGE_NAME = re.compile(
    r"^[a-z0-9]+(?:[._-]+[a-z0-9]+)*(?::[0-9]+)?(?:/[a-z0-9]+(?:[._-]+[a-z0-9]+)*)*$"
)
_IMAGE_TAG = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_IMAGE_DIGEST = re.compile(r"^sha256:[a-f0-9]{64}$")

# Files every venv ships that are never the package's own entry point
_VENV_BUILTINS = ("python", "pip", "activate", "deactivate", "pydoc")

# Added in front of declared docker run options
DOCKER_HARDENING = ["--rm", "--security-opt", "no-new-privileges", "--cap-drop", "ALL"]


class PackageHandler(ABC):
    """Base class for package manager handlers."""

    manager: str = ""

    def __init__(self, store_dir: Path, runner: CommandRunner, timeout: float = 300.0):
        self.store_dir = Path(store_dir)
        self.runner = runner
        self.timeout = timeout

    def install_dir(self, connection_id: str) -> Path:
        """Isolated install directory for one connection."""
        return self.store_dir / "servers" / connection_id / self.manager

    @abstractmethod
    def parse_spec(self, raw: str) -> PackageSpec:
        """Parse and validate a package spec."""

    @abstractmethod
    async def install(
        self,
        connection_id: str,
        spec: PackageSpec,
        executable: Optional[str] = None,
    ) -> InstallRecord:
        """Install a package and locate its executable."""

    @abstractmethod
    def environment(self, record: InstallRecord) -> Dict[str, str]:
        """Variables a process needs to run from the install."""

    def arguments(
        self,
        record: InstallRecord,
        options: List[str],
        trailing_args: List[str],
    ) -> List[str]:
        """Arguments for the rewritten command."""
        return list(record.args_prefix) + list(trailing_args)

    def _log(self, operation: str, **details) -> None:
        logger.info(f"[{self.manager}] {operation}", extra=details)

    @staticmethod
    def _prefixed_path(directory: str) -> str:
        current = os.environ.get("PATH", "")
        return os.pathsep.join(p for p in (directory, current) if p)


class NodeHandler(PackageHandler):
    """Installs npm packages with pnpm (or npm) into node_modules."""

    def __init__(
        self,
        store_dir: Path,
        runner: CommandRunner,
        timeout: float = 300.0,
        client: str = "pnpm",
    ):
        super().__init__(store_dir, runner, timeout)
        self.client = client
        self.manager = client

    def parse_spec(self, raw: str) -> PackageSpec:
        """
        Parse ``name``, ``name@version``, ``@scope/name`` or ``@scope/name@version``.

        Raises:
            InstallFailed: If the name or version has unexpected characters
        """
        at = raw.rfind("@")
        if at > 0:
            name, version = raw[:at], raw[at + 1:]
        else:
            name, version = raw, None

        if not _NODE_NAME.match(name) or (version is not None and not _VERSION.match(version)):
            raise InstallFailed(
                f"Invalid package name: {raw!r}",
                error_code="INVALID_PACKAGE",
            )
        return PackageSpec(name=name, version=version or None, separator="@")

    async def install(
        self,
        connection_id: str,
        spec: PackageSpec,
        executable: Optional[str] = None,
    ) -> InstallRecord:
        install_dir = self.install_dir(connection_id)
        self._log("Installing package", connection_id=connection_id,
                  package=spec.requirement, install_dir=str(install_dir))

        install_dir.mkdir(parents=True, exist_ok=True)
        package_json = install_dir / "package.json"
        if not package_json.exists():
            package_json.write_text(json.dumps({
                "name": f"mcp-server-{connection_id}",
                "private": True,
                "description": f"Isolated packages for connection {connection_id}",
            }, indent=2))

        if self.client == "pnpm":
            argv = ["pnpm", "add", spec.requirement]
            env = {
                "PNPM_STORE_DIR": str(self.store_dir / "pnpm-store"),
                "NODE_LINKER": "isolated",
            }
        else:
            argv = ["npm", "install", "--prefix", str(install_dir),
                    "--no-audit", "--no-fund", spec.requirement]
            env = {"npm_config_cache": str(self.store_dir / "npm-cache")}

        await self.runner.run(argv, cwd=install_dir, env=env, timeout=self.timeout)

        command, args_prefix, version = self._locate(install_dir, spec.name, executable)
        bin_dir = install_dir / "node_modules" / ".bin"

        self._log("Package installed", connection_id=connection_id,
                  package=spec.requirement, version=version, command=command)

        return InstallRecord(
            connection_id=connection_id,
            manager=self.manager,
            package=spec.requirement,
            version=version,
            command=command,
            args_prefix=args_prefix,
            install_path=str(install_dir),
            bin_dir=str(bin_dir),
        )

    def _locate(self, install_dir: Path, name: str, executable: Optional[str]):
        """Find the executable: a bin entry if the package has one, else its main file."""
        modules = install_dir / "node_modules"
        bin_dir = modules / ".bin"
        package_dir = modules / name
        manifest_path = package_dir / "package.json"
        if not manifest_path.exists():
            raise InstallFailed(
                f"Package {name} missing after install",
                error_code="PACKAGE_MISSING",
            )

        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise InstallFailed(f"Unreadable package.json for {name}") from e

        version = manifest.get("version")
        unscoped = name.split("/")[-1]

        if executable:
            # A bin named on the command line must exist as given
            path = bin_dir / executable
            if path.exists():
                return str(path), [], version
            raise InstallFailed(
                f"Package {name} provides no executable {executable!r}",
                error_code="NO_EXECUTABLE",
            )

        candidates: List[str] = []
        bin_field = manifest.get("bin")
        if isinstance(bin_field, str):
            candidates.append(unscoped)
        elif isinstance(bin_field, dict) and bin_field:
            if unscoped in bin_field:
                candidates.append(unscoped)
            candidates.extend(bin_field.keys())
        candidates.extend([unscoped, name])

        for candidate in candidates:
            path = bin_dir / candidate
            if path.exists():
                return str(path), [], version

        # No bin entry: run the package's main file with node
        main = manifest.get("main") or "index.js"
        for entry in (main, "index.js", "lib/index.js", "dist/index.js"):
            path = package_dir / entry
            if path.is_file():
                return "node", [str(path)], version

        raise InstallFailed(
            f"No executable found for {name}",
            error_code="NO_EXECUTABLE",
        )

    def environment(self, record: InstallRecord) -> Dict[str, str]:
        return {
            "NODE_PATH": str(Path(record.install_path) / "node_modules"),
            "PATH": self._prefixed_path(record.bin_dir),
        }


class UvHandler(PackageHandler):
    """Installs Python packages into a per-connection virtualenv with uv."""

    manager = "uv"

    def __init__(
        self,
        store_dir: Path,
        runner: CommandRunner,
        timeout: float = 300.0,
        uv_binary: str = "uv",
    ):
        super().__init__(store_dir, runner, timeout)
        self.uv_binary = uv_binary

    def parse_spec(self, raw: str) -> PackageSpec:
        """
        Parse ``name``, ``name==version`` or ``name@version``.

        Raises:
            InstallFailed: If the name or version has unexpected characters
        """
        if "==" in raw:
            name, version = raw.split("==", 1)
        elif "@" in raw:
            name, version = raw.split("@", 1)
        else:
            name, version = raw, None

        if version == "latest":
            version = None

        if not _PYTHON_NAME.match(name) or (version is not None and not _VERSION.match(version)):
            raise InstallFailed(
                f"Invalid package name: {raw!r}",
                error_code="INVALID_PACKAGE",
            )
        return PackageSpec(name=name, version=version or None, separator="==")

    def _venv_dir(self, install_dir: Path) -> Path:
        return install_dir / ".venv"

    def _bin_dir(self, install_dir: Path) -> Path:
        return self._venv_dir(install_dir) / ("Scripts" if os.name == "nt" else "bin")

    async def install(
        self,
        connection_id: str,
        spec: PackageSpec,
        executable: Optional[str] = None,
    ) -> InstallRecord:
        install_dir = self.install_dir(connection_id)
        venv_dir = self._venv_dir(install_dir)
        self._log("Installing Python package", connection_id=connection_id,
                  package=spec.requirement, install_dir=str(install_dir))

        install_dir.mkdir(parents=True, exist_ok=True)
        env = {
            "UV_CACHE_DIR": str(self.store_dir / "uv-cache"),
            "VIRTUAL_ENV": str(venv_dir),
        }

        if not venv_dir.exists():
            await self.runner.run(
                [self.uv_binary, "venv", str(venv_dir)],
                cwd=install_dir, env=env, timeout=self.timeout,
            )

        await self.runner.run(
            [self.uv_binary, "pip", "install", spec.requirement],
            cwd=install_dir, env=env, timeout=self.timeout,
        )

        bin_dir = self._bin_dir(install_dir)
        command = self._locate(bin_dir, executable or self._base_name(spec.name))
        version = self._installed_version(venv_dir, spec.name) or spec.version

        self._log("Python package installed", connection_id=connection_id,
                  package=spec.requirement, version=version, command=command)

        return InstallRecord(
            connection_id=connection_id,
            manager=self.manager,
            package=spec.requirement,
            version=version,
            command=command,
            install_path=str(install_dir),
            bin_dir=str(bin_dir),
        )

    @staticmethod
    def _base_name(name: str) -> str:
        return name.split("[", 1)[0]

    def _locate(self, bin_dir: Path, name: str) -> str:
        """Find the package's console script in the venv."""
        variants = [
            name,
            name.replace("-", "_"),
            name.replace("_", "-"),
            name.lower(),
        ]
        for variant in variants:
            path = bin_dir / variant
            if path.is_file():
                return str(path)

        if not bin_dir.is_dir():
            raise InstallFailed(f"No executable found for {name}", error_code="NO_EXECUTABLE")

        executables = sorted(
            entry.name for entry in bin_dir.iterdir()
            if entry.is_file()
            and os.access(entry, os.X_OK)
            and not entry.name.startswith(_VENV_BUILTINS)
        )
        if len(executables) == 1:
            return str(bin_dir / executables[0])

        lowered = name.lower()
        matches = [
            exe for exe in executables
            if lowered in exe.lower() or exe.lower() in lowered
        ]
        if len(matches) == 1:
            return str(bin_dir / matches[0])

        raise InstallFailed(
            f"No unique executable found for {name}",
            error_code="NO_EXECUTABLE",
            details={"candidates": executables},
        )

    def _installed_version(self, venv_dir: Path, name: str) -> Optional[str]:
        """Read the installed version from the dist-info directory name."""
        normalized = re.sub(r"[-_.]+", "_", self._base_name(name)).lower()
        for dist_info in venv_dir.glob("lib*/**/site-packages/*.dist-info"):
            dist_name, _, version = dist_info.name[:-len(".dist-info")].partition("-")
            if re.sub(r"[-_.]+", "_", dist_name).lower() == normalized:
                return version
        return None

    def environment(self, record: InstallRecord) -> Dict[str, str]:
        return {
            "VIRTUAL_ENV": str(self._venv_dir(Path(record.install_path))),
            "PATH": self._prefixed_path(record.bin_dir),
        }

class DockerHandler(PackageHandler):
    """
    Pins container images per connection.

    Nothing is installed on disk: the image is pulled, its id recorded, and
    later runs start that exact id with privilege escalation disabled.
    """

    manager = "docker"

    def __init__(
        self,
        store_dir: Path,
        runner: CommandRunner,
        timeout: float = 300.0,
        docker_binary: str = "docker",
    ):
        super().__init__(store_dir, runner, timeout)
        self.docker_binary = docker_binary

    def parse_spec(self, raw: str) -> PackageSpec:
        """
        Parse ``image``, ``image:tag`` or ``image@sha256:digest``.

        Raises:
            InstallFailed: If the reference is not a valid image reference
        """
        if "@" in raw:
            name, version = raw.split("@", 1)
            separator = "@"
            valid_version = bool(_IMAGE_DIGEST.match(version))
        else:
            colon = raw.rfind(":")
            if colon > raw.rfind("/"):
                name, version = raw[:colon], raw[colon + 1:]
            else:
                name, version = raw, None
            separator = ":"
            valid_version = version is None or bool(_IMAGE_TAG.match(version))

        if not _IMAGE_NAME.match(name) or not valid_version:
            raise InstallFailed(
                f"Invalid image reference: {raw!r}",
                error_code="INVALID_PACKAGE",
            )
        return PackageSpec(name=name, version=version, separator=separator)

    async def install(
        self,
        connection_id: str,
        spec: PackageSpec,
        executable: Optional[str] = None,
    ) -> InstallRecord:
        install_dir = self.install_dir(connection_id)
        reference = spec.requirement
        self._log("Pulling image", connection_id=connection_id, image=reference)

        install_dir.mkdir(parents=True, exist_ok=True)
        await self.runner.run(
            [self.docker_binary, "pull", reference],
            cwd=install_dir, timeout=self.timeout,
        )
        result = await self.runner.run(
            [self.docker_binary, "image", "inspect", "--format", "{{.Id}}", reference],
            cwd=install_dir, timeout=self.timeout,
        )

        image_id = result.stdout.strip()
        if not _IMAGE_DIGEST.match(image_id):
            raise InstallFailed(
                f"Image {reference} missing after pull",
                error_code="PACKAGE_MISSING",
                details={"inspect_output": result.stdout[:200]},
            )

        self._log("Image pulled", connection_id=connection_id, image=reference, image_id=image_id)

        return InstallRecord(
            connection_id=connection_id,
            manager=self.manager,
            package=reference,
            version=spec.version or "latest",
            command=self.docker_binary,
            image=image_id,
            install_path=str(install_dir),
            bin_dir="",
        )

    def arguments(
        self,
        record: InstallRecord,
        options: List[str],
        trailing_args: List[str],
    ) -> List[str]:
        # Declared run options are kept; the image reference becomes the pinned id
        return ["run", *DOCKER_HARDENING, *options, record.image or record.package, *trailing_args]

    def environment(self, record: InstallRecord) -> Dict[str, str]:
        return {}
