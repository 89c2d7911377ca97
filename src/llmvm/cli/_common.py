"""Shared utilities for all CLI command modules.

Provides the Rich console instance, the input options every
stack-aware command accepts, and status formatting helpers.
"""

from __future__ import annotations

import functools
from pathlib import Path
from typing import Callable, Optional, Tuple

import click
from rich.console import Console

from .. import LLMVM_HOME
from ..config import StackInputs, load_inputs, parse_var_assignments
from ..errors import LlmvmError
from ..resources import ResourceStatus

console = Console()


def input_options(func: Callable) -> Callable:
    """Attach ``--var`` / ``--var-file`` options to a command."""
    func = click.option(
        "--var", "var_pairs", multiple=True, metavar="NAME=VALUE",
        help="Set an input variable (repeatable).",
    )(func)
    func = click.option(
        "--var-file", default=None, type=click.Path(dir_okay=False),
        help="YAML file with input variables.",
    )(func)
    return func


def home_option(func: Callable) -> Callable:
    return click.option("--home", default=LLMVM_HOME, type=click.Path())(func)


def resolve_inputs(var_file: Optional[str], var_pairs: Tuple[str, ...]) -> StackInputs:
    """Load inputs from CLI options (errors propagate as LlmvmError)."""
    overrides = parse_var_assignments(var_pairs)
    path = Path(var_file) if var_file else None
    return load_inputs(path=path, overrides=overrides)


def exit_on_error(func: Callable) -> Callable:
    """Print llmvm errors in red and exit with status 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LlmvmError as exc:
            console.print(f"\n  [red]{exc}[/]\n")
            raise SystemExit(1)

    return wrapper


def status_markup(status: ResourceStatus) -> str:
    """Map resource status to a Rich-formatted label.

    Args:
        status: Resource lifecycle status.

    Returns:
        str: Rich markup string for the status.
    """
    return {
        ResourceStatus.READY: "[green]ready[/]",
        ResourceStatus.PENDING: "[yellow]pending[/]",
        ResourceStatus.CREATING: "[yellow]creating[/]",
        ResourceStatus.DEGRADED: "[yellow]degraded[/]",
        ResourceStatus.STOPPED: "[red]stopped[/]",
        ResourceStatus.FAILED: "[red]failed[/]",
        ResourceStatus.DELETED: "[dim]deleted[/]",
    }.get(status, f"[dim]{status.value}[/]")
