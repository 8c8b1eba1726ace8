"""
Helper utilities for CLI commands.
"""

import functools
import json
import sys
from typing import Any, Dict, List, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape

from mcp_gateway.core.exceptions import GatewayError
from mcp_gateway.utils.logging import get_logger

console = Console()
logger = get_logger(__name__)


def handle_errors(func):
    """Decorator to handle common CLI errors."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except click.ClickException:
            raise
        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user[/yellow]")
            sys.exit(1)
        except GatewayError as e:
            logger.debug("Command failed", extra={
                "error_type": type(e).__name__,
                "error_code": e.error_code,
                "details": e.details,
            })
            console.print(f"[red]Error: {escape(e.message)}[/red]")
            sys.exit(1)
        except Exception as e:
            logger.debug("Command failed unexpectedly", exc_info=True)
            console.print(f"[red]Error: {escape(str(e))}[/red]")
            console.print("[dim]Use --debug for more details[/dim]")
            sys.exit(1)

    return wrapper


def parse_env_pairs(pairs: Tuple[str, ...]) -> Optional[Dict[str, str]]:
    """Turn repeated KEY=VALUE options into a dict."""
    if not pairs:
        return None
    env: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got {pair!r}", param_hint="--env")
        env[key] = value
    return env


def parse_json_option(value: Optional[str], option: str) -> Any:
    """Decode a JSON-valued option, None when absent."""
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint=option)


def abbreviate(values: Optional[List[str]], limit: int = 3) -> str:
    """Short display form of an argument list."""
    if not values:
        return ""
    shown = " ".join(values[:limit])
    if len(values) > limit:
        shown += " ..."
    return shown
