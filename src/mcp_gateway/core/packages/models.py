"""
Value types for package installs and command transforms.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from mcp_gateway.core.models import utcnow


class PackageSpec(BaseModel):
    """A package named by a run instruction, with an optional version."""

    name: str
    version: Optional[str] = None
    separator: str = Field(default="@", description="'@' for Node, '==' for Python, ':' for image tags")

    @property
    def requirement(self) -> str:
        """The spec as handed to the installer."""
        if self.version:
            return f"{self.name}{self.separator}{self.version}"
        return self.name

    def __str__(self) -> str:
        return self.requirement


class InstallRecord(BaseModel):
    """Outcome of a successful install for one connection and package manager."""

    connection_id: str
    manager: str
    package: str = Field(description="Requested package spec")
    version: Optional[str] = Field(default=None, description="Installed version")
    command: str
    args_prefix: List[str] = Field(default_factory=list)
    image: Optional[str] = Field(default=None, description="Pinned image id for container installs")
    install_path: str
    bin_dir: str
    installed_at: datetime = Field(default_factory=utcnow)


class ConcreteCommand(BaseModel):
    """A command that can be spawned as is."""

    command: str
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    path_prefix: List[str] = Field(
        default_factory=list,
        description="Directories to put in front of PATH",
    )
    installed: bool = False
    manager: Optional[str] = None
