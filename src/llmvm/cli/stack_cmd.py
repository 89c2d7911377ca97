"""Stack inspection commands: render, plan, script."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.panel import Panel
from rich.table import Table

from ._common import console, exit_on_error, home_option, input_options, resolve_inputs


def register_stack_commands(main: click.Group) -> None:
    """Register render, plan and script."""

    @main.command("render")
    @input_options
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    @exit_on_error
    def render(var_file: Optional[str], var_pairs: Tuple[str, ...], as_json: bool):
        """Show every resource the inputs render to.

        Sensitive values are masked.

        \b
        Example:
            llmvm render --var project_id=demo --var ssh_source_ip=203.0.113.5/32
        """
        from ..stack import render_stack

        inputs = resolve_inputs(var_file, var_pairs)
        stack = render_stack(inputs)

        if as_json:
            click.echo(json.dumps(stack.to_document(), indent=2))
            return

        console.print()
        console.print(
            Panel(
                f"  [bold]Project:[/] {inputs.project_id}\n"
                f"  [bold]Region:[/]  {inputs.region}\n"
                f"  [bold]Zone:[/]    {inputs.zone}\n"
                f"  [bold]Network:[/] {inputs.network_name} ({inputs.subnet_cidr})",
                title="LLM Stack",
                border_style="bright_blue",
                padding=(1, 2),
            )
        )

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Wave", style="dim")
        table.add_column("Resource", style="cyan")
        table.add_column("Depends on", style="dim")

        for idx, wave in enumerate(stack.waves(), 1):
            for key in wave:
                deps = stack.resources[key].depends_on
                table.add_row(str(idx), key, ", ".join(deps) or "—")

        console.print(table)
        console.print()

    @main.command("plan")
    @input_options
    @home_option
    @exit_on_error
    def plan(var_file: Optional[str], var_pairs: Tuple[str, ...], home: str):
        """Show what apply would create, update or delete.

        \b
        Example:
            llmvm plan --var-file stack.yaml
        """
        from ..engine import DeployEngine, deployment_id_for

        inputs = resolve_inputs(var_file, var_pairs)
        engine = DeployEngine(home=Path(home).expanduser())
        diff = engine.plan(inputs)

        console.print(f"\n  [bold]Deployment:[/] {deployment_id_for(inputs)}\n")

        if not diff.has_changes:
            console.print("  [green]No changes.[/] Infrastructure matches the inputs.\n")
            return

        for key in diff.to_create:
            console.print(f"  [green]+ {key}[/]")
        for key, fields in diff.to_update.items():
            console.print(f"  [yellow]~ {key}[/] [dim]({', '.join(fields)})[/]")
        for key in diff.to_delete:
            console.print(f"  [red]- {key}[/]")

        console.print(
            f"\n  Plan: {len(diff.to_create)} to add, {len(diff.to_update)} to change, "
            f"{len(diff.to_delete)} to destroy.\n"
        )

    @main.command("script")
    @click.option("--model", "model_id", default=None, help="Hugging Face model ID.")
    @click.option("--prompt", default=None, help="Prompt for the verification run.")
    def script(model_id: Optional[str], prompt: Optional[str]):
        """Print the first-boot script attached to the VM."""
        from ..startup_script import DEFAULT_MODEL_ID, DEFAULT_PROMPT, build_startup_script

        try:
            text = build_startup_script(
                model_id=model_id or DEFAULT_MODEL_ID,
                prompt=prompt or DEFAULT_PROMPT,
            )
        except ValueError as exc:
            console.print(f"[red]{exc}[/]")
            raise SystemExit(1)
        click.echo(text, nl=False)
