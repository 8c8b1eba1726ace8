"""
Subprocess execution for package installers.
"""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from mcp_gateway.core.exceptions import InstallFailed
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)

_MAX_OUTPUT = 2000


@dataclass
class CommandResult:
    """Exit status and captured output of an installer run."""

    returncode: int
    stdout: str
    stderr: str


class CommandRunner:
    """Runs installer commands without a shell."""

    async def run(
        self,
        argv: List[str],
        cwd: Path,
        env: Optional[Dict[str, str]] = None,
        timeout: float = 300.0,
    ) -> CommandResult:
        """
        Run one installer command to completion.

        Args:
            argv: Program and arguments
            cwd: Working directory
            env: Variables layered over the current environment
            timeout: Seconds before the process is killed

        Raises:
            InstallFailed: Missing binary, timeout or non-zero exit
        """
        full_env = dict(os.environ)
        full_env.update(env or {})

        logger.debug(f"Executing: {' '.join(argv)}", extra={"cwd": str(cwd)})

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                env=full_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise InstallFailed(
                f"Installer not found: {argv[0]}",
                error_code="INSTALLER_MISSING",
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise InstallFailed(
                f"{argv[0]} timed out after {timeout:.0f}s",
                error_code="INSTALL_TIMEOUT",
            ) from e

        result = CommandResult(
            returncode=process.returncode,
            stdout=stdout.decode(errors="replace") if stdout else "",
            stderr=stderr.decode(errors="replace") if stderr else "",
        )

        if result.returncode != 0:
            raise InstallFailed(
                f"{' '.join(argv[:2])} exited with status {result.returncode}",
                error_code="INSTALL_COMMAND_FAILED",
                details={"stderr": result.stderr[-_MAX_OUTPUT:]},
            )

        return result
