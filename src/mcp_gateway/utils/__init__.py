"""Utility modules for MCP Gateway."""

from mcp_gateway.utils.config import Config, get_config
from mcp_gateway.utils.logging import get_logger, setup_logging

__all__ = [
    "get_logger",
    "setup_logging",
    "Config",
    "get_config",
]
