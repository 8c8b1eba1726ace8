"""Package install and command transform for local-execution connections."""

from mcp_gateway.core.packages.locks import KeyedLock
from mcp_gateway.core.packages.models import ConcreteCommand, InstallRecord, PackageSpec
from mcp_gateway.core.packages.runner import CommandResult, CommandRunner
from mcp_gateway.core.packages.transformer import PackageCommandTransformer, detect_invocation

__all__ = [
    "CommandResult",
    "CommandRunner",
    "ConcreteCommand",
    "InstallRecord",
    "KeyedLock",
    "PackageCommandTransformer",
    "PackageSpec",
    "detect_invocation",
]
