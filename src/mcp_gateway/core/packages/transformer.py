"""
Command transformer.

Rewrites declarative package-run instructions (``npx -y pkg``, ``uvx pkg``,
``node pkg``, ``docker run image``) into a command that runs a per-connection
local install or pinned image. The first use for a connection installs the
package, later uses return the recorded command. Concurrent first uses share
one install.
"""

import asyncio
import os
import re
import shutil
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Tuple

from mcp_gateway.core.exceptions import InstallFailed, InvalidRequest
from mcp_gateway.core.packages.handlers import (
    DockerHandler,
    NodeHandler,
    PackageHandler,
    UvHandler,
)
from mcp_gateway.core.packages.locks import KeyedLock
from mcp_gateway.core.packages.models import ConcreteCommand, InstallRecord, PackageSpec
from mcp_gateway.core.packages.records import InstallRecordStore
from mcp_gateway.core.packages.runner import CommandRunner
from mcp_gateway.utils.config import Config
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)

NODE = "node"
PYTHON = "python"
DOCKER = "docker"

# Runner flags that never name the package
NODE_SKIP_FLAGS = {
    "-y", "--yes",
    "-q", "--quiet",
    "-s", "--silent",
    "--no-install",
    "--prefer-online",
    "--prefer-offline",
    "--ignore-existing",
}
NODE_PACKAGE_FLAGS = {"-p", "--package"}
NODE_VALUE_FLAGS = {"--registry", "--cache", "--userconfig"}
UVX_VALUE_FLAGS = {
    "--from", "--with", "--python", "-p",
    "--index", "--index-url", "--extra-index-url", "--default-index",
}
DOCKER_VALUE_FLAGS = {
    "-e", "--env", "--env-file",
    "-v", "--volume", "--mount", "--tmpfs",
    "-p", "--publish", "--expose",
    "-u", "--user", "-w", "--workdir",
    "-l", "--label", "--label-file",
    "-m", "--memory", "--memory-swap", "--cpus", "--shm-size",
    "-h", "--hostname", "--name", "--network", "--net", "--add-host", "--dns",
    "--entrypoint", "--platform", "--pull", "--restart", "--runtime",
    "--cap-add", "--cap-drop", "--security-opt", "--device", "--gpus",
    "--ulimit", "--log-driver", "--log-opt", "--ipc", "--pid", "--stop-signal",
}

_CONNECTION_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_EXECUTABLE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_SCRIPT_SUFFIXES = (".js", ".mjs", ".cjs", ".ts")


class Invocation(NamedTuple):
    """A recognized package-run instruction."""

    ecosystem: str
    package: str
    trailing_args: List[str]
    executable: Optional[str] = None
    options: Tuple[str, ...] = ()


def _program_name(command: str) -> str:
    name = os.path.basename(command.replace("\\", "/")).lower()
    for suffix in (".cmd", ".exe"):
        if name.endswith(suffix):
            name = name[:-len(suffix)]
    return name


def _split_node_runner(args: List[str]) -> Tuple[Optional[str], Optional[int]]:
    """
    Scan npx-style runner arguments.

    Returns the package named by ``-p/--package`` (if any) and the index of
    the first positional argument. With ``-p`` that positional is the bin to
    run, otherwise it is the package itself.
    """
    package: Optional[str] = None
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in NODE_PACKAGE_FLAGS or arg.startswith("--package="):
            if arg.startswith("--package="):
                value: Optional[str] = arg.split("=", 1)[1]
                i += 1
            else:
                value = args[i + 1] if i + 1 < len(args) else None
                i += 2
            if package is not None:
                raise InstallFailed(
                    "Only one --package per command is supported",
                    error_code="MULTIPLE_PACKAGES",
                )
            package = value
        elif arg in NODE_VALUE_FLAGS:
            i += 2
        elif arg in NODE_SKIP_FLAGS or arg.startswith("-"):
            i += 1
        else:
            return package, i
    return package, None


def _split_docker_run(args: List[str]) -> Optional[int]:
    """Index of the image among ``docker run`` arguments."""
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in DOCKER_VALUE_FLAGS:
            i += 2
        elif arg.startswith("-"):
            i += 1
        else:
            return i
    return None


def _looks_like_package(arg: str) -> bool:
    """True for ``pkg`` or ``@scope/pkg``; False for anything path-like."""
    if not arg or arg.startswith(".") or arg.startswith("-") or "\\" in arg:
        return False
    if arg.lower().endswith(_SCRIPT_SUFFIXES):
        return False
    if "/" in arg:
        return arg.startswith("@") and arg.count("/") == 1
    return True


def detect_invocation(command: str, args: List[str]) -> Optional[Invocation]:
    """
    Recognize a package-run instruction.

    Returns:
        The invocation, or None when the command should pass through

    Raises:
        InstallFailed: A package runner was given no package
    """
    program = _program_name(command)
    args = list(args or [])

    runner_args: Optional[List[str]] = None
    if program in ("npx", "pnpx"):
        runner_args = args
    elif program == "npm" and args[:1] == ["exec"]:
        runner_args = args[1:]
    elif program == "pnpm" and args[:1] == ["dlx"]:
        runner_args = args[1:]

    if runner_args is not None:
        if "--" in runner_args:
            # npm exec -- pkg args
            cut = runner_args.index("--")
            runner_args = runner_args[:cut] + runner_args[cut + 1:]
        package, index = _split_node_runner(runner_args)
        if package is not None:
            if index is None:
                return Invocation(NODE, package, [])
            return Invocation(NODE, package, runner_args[index + 1:],
                              executable=runner_args[index])
        if index is None:
            raise InstallFailed(
                f"No package specified for {command}",
                error_code="NO_PACKAGE",
            )
        return Invocation(NODE, runner_args[index], runner_args[index + 1:])

    if program == "uvx":
        from_spec: Optional[str] = None
        i = 0
        while i < len(args):
            arg = args[i]
            if arg.startswith("--from="):
                from_spec = arg.split("=", 1)[1]
                i += 1
            elif arg in UVX_VALUE_FLAGS:
                if arg == "--from" and i + 1 < len(args):
                    from_spec = args[i + 1]
                i += 2
            elif arg.startswith("-"):
                i += 1
            else:
                break
        if i >= len(args):
            raise InstallFailed(
                f"No package specified for {command}",
                error_code="NO_PACKAGE",
            )
        if from_spec:
            return Invocation(PYTHON, from_spec, args[i + 1:], executable=args[i])
        return Invocation(PYTHON, args[i], args[i + 1:])

    run_args: Optional[List[str]] = None
    if program == "docker" and args[:1] == ["run"]:
        run_args = args[1:]
    elif program == "docker" and args[:2] == ["container", "run"]:
        run_args = args[2:]

    if run_args is not None:
        index = _split_docker_run(run_args)
        if index is None:
            raise InstallFailed(
                f"No image specified for {command}",
                error_code="NO_PACKAGE",
            )
        return Invocation(DOCKER, run_args[index], run_args[index + 1:],
                          options=tuple(run_args[:index]))

    if program == "node" and args and _looks_like_package(args[0]):
        return Invocation(NODE, args[0], args[1:])

    return None


class PackageCommandTransformer:
    """Turns package-run instructions into commands against local installs."""

    def __init__(
        self,
        store_dir: Path,
        runner: Optional[CommandRunner] = None,
        node_client: str = "pnpm",
        uv_binary: str = "uv",
        install_timeout: float = 300.0,
        docker_binary: str = "docker",
    ):
        self.store_dir = Path(store_dir)
        self.runner = runner or CommandRunner()
        self.records = InstallRecordStore(self.store_dir)
        self.handlers: Dict[str, PackageHandler] = {
            NODE: NodeHandler(self.store_dir, self.runner, install_timeout, client=node_client),
            PYTHON: UvHandler(self.store_dir, self.runner, install_timeout, uv_binary=uv_binary),
            DOCKER: DockerHandler(self.store_dir, self.runner, install_timeout,
                                  docker_binary=docker_binary),
        }
        self._locks = KeyedLock()
        self._inflight: Dict[str, Tuple[str, "asyncio.Task[InstallRecord]"]] = {}

    @classmethod
    def from_config(
        cls,
        config: Config,
        runner: Optional[CommandRunner] = None,
    ) -> "PackageCommandTransformer":
        return cls(
            config.get_package_store_dir(),
            runner=runner,
            node_client=config.packages.node_client,
            uv_binary=config.packages.uv_binary,
            install_timeout=config.packages.install_timeout,
            docker_binary=config.packages.docker_binary,
        )

    async def transform(
        self,
        command: str,
        args: Optional[List[str]],
        connection_id: str,
    ) -> ConcreteCommand:
        """
        Produce a runnable command for a connection.

        Args:
            command: Declared command, e.g. ``npx``
            args: Declared arguments
            connection_id: Connection the install belongs to

        Returns:
            The local executable with trailing arguments preserved, or the
            original command when nothing needs installing

        Raises:
            InstallFailed: The install did not complete
        """
        args = list(args or [])
        invocation = detect_invocation(command, args)
        if invocation is None:
            return ConcreteCommand(command=command, args=args)

        self._check_connection_id(connection_id)
        handler = self.handlers[invocation.ecosystem]
        spec = handler.parse_spec(invocation.package)
        if invocation.executable and not _EXECUTABLE.match(invocation.executable):
            raise InstallFailed(
                f"Invalid executable name: {invocation.executable!r}",
                error_code="INVALID_PACKAGE",
            )

        record = await self._ensure_installed(handler, connection_id, spec, invocation.executable)
        return self._to_command(handler, record, invocation)

    async def _ensure_installed(
        self,
        handler: PackageHandler,
        connection_id: str,
        spec: PackageSpec,
        executable: Optional[str],
    ) -> InstallRecord:
        key = f"{connection_id}:{handler.manager}"

        async with self._locks.acquire(key):
            record = self.records.load(connection_id, handler.manager)
            if record is not None and self._is_current(record, spec, executable):
                logger.debug("Using recorded install",
                             extra={"connection_id": connection_id, "package": spec.requirement})
                return record
            if record is not None:
                logger.info("Install record is stale; reinstalling",
                            extra={"connection_id": connection_id,
                                   "recorded": record.package,
                                   "requested": spec.requirement})

            running = self._inflight.get(key)
            if running is not None and not running[1].done() and running[0] != spec.requirement:
                # Let an install of a different package finish before replacing it
                await asyncio.wait([running[1]])
                running = None

            if running is None or running[1].done():
                task = asyncio.create_task(
                    self._install(handler, connection_id, spec, executable)
                )
                self._inflight[key] = (spec.requirement, task)
                task.add_done_callback(lambda t, k=key: self._install_finished(k, t))
            else:
                task = running[1]

        # Shielded so an abandoned request never cancels the install
        return await asyncio.shield(task)

    @staticmethod
    def _is_current(record: InstallRecord, spec: PackageSpec, executable: Optional[str]) -> bool:
        if record.package != spec.requirement or not Path(record.install_path).is_dir():
            return False
        return executable is None or Path(record.command).name == executable

    async def _install(
        self,
        handler: PackageHandler,
        connection_id: str,
        spec: PackageSpec,
        executable: Optional[str],
    ) -> InstallRecord:
        try:
            self.records.delete(connection_id, handler.manager)
            record = await handler.install(connection_id, spec, executable)
            self.records.save(record)
        except InstallFailed as e:
            logger.error(f"Install failed for {spec.requirement}: {e}",
                         extra={"connection_id": connection_id, "details": e.details})
            raise
        except OSError as e:
            logger.error(f"Install failed for {spec.requirement}: {e}",
                         extra={"connection_id": connection_id})
            raise InstallFailed(
                f"Install of {spec.requirement} failed: {e}",
                error_code="INSTALL_IO_ERROR",
            ) from e
        return record

    def _install_finished(self, key: str, task: "asyncio.Task[InstallRecord]") -> None:
        running = self._inflight.get(key)
        if running is not None and running[1] is task:
            del self._inflight[key]
        # Mark the outcome as retrieved when every caller has gone away
        if not task.cancelled():
            task.exception()

    def _to_command(
        self,
        handler: PackageHandler,
        record: InstallRecord,
        invocation: Invocation,
    ) -> ConcreteCommand:
        return ConcreteCommand(
            command=record.command,
            args=handler.arguments(record, list(invocation.options), invocation.trailing_args),
            env=handler.environment(record),
            path_prefix=[record.bin_dir] if record.bin_dir else [],
            installed=True,
            manager=record.manager,
        )

    @staticmethod
    def _check_connection_id(connection_id: str) -> None:
        if not connection_id or not _CONNECTION_ID.match(connection_id):
            raise InvalidRequest(f"Malformed connection id: {connection_id!r}")

    def install_record(self, connection_id: str, ecosystem: str) -> Optional[InstallRecord]:
        """Recorded install for a connection, if any."""
        return self.records.load(connection_id, self.handlers[ecosystem].manager)

    def is_installing(self, connection_id: str) -> bool:
        prefix = f"{connection_id}:"
        return any(key.startswith(prefix) for key in self._inflight)

    async def cleanup(self, connection_id: str) -> None:
        """Remove a connection's installs and records, after any running install."""
        self._check_connection_id(connection_id)
        for handler in self.handlers.values():
            key = f"{connection_id}:{handler.manager}"
            async with self._locks.acquire(key):
                running = self._inflight.get(key)
                if running is not None and not running[1].done():
                    await asyncio.wait([running[1]])
                self.records.delete(connection_id, handler.manager)

        install_root = self.store_dir / "servers" / connection_id
        if install_root.exists():
            shutil.rmtree(install_root)
        self.records.delete_all(connection_id)
        logger.info("Cleaned up packages", extra={"connection_id": connection_id})

    def disk_usage(self, connection_id: str) -> int:
        """Bytes used by a connection's installs."""
        self._check_connection_id(connection_id)
        total = 0
        install_root = self.store_dir / "servers" / connection_id
        if not install_root.exists():
            return 0
        for dirpath, _, filenames in os.walk(install_root):
            for filename in filenames:
                path = os.path.join(dirpath, filename)
                if not os.path.islink(path):
                    total += os.path.getsize(path)
        return total
