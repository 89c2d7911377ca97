"""Deployment commands: apply, output, status, destroy."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.panel import Panel
from rich.table import Table

from ._common import (
    console,
    exit_on_error,
    home_option,
    input_options,
    resolve_inputs,
    status_markup,
)


def _make_provisioner(project_id: str, timeout: float = 300):
    from ..providers.gcp import GCPProvisioner

    return GCPProvisioner(project=project_id, timeout=timeout)


def register_deploy_commands(main: click.Group) -> None:
    """Register apply, output, status and destroy."""

    @main.command("apply")
    @input_options
    @home_option
    @click.option("--yes", "-y", is_flag=True, help="Skip confirmation.")
    @click.option("--dry-run", is_flag=True, help="Record the plan without calling the cloud.")
    @click.option("--timeout", default=300, show_default=True, type=float,
                  help="Seconds to wait on each cloud operation.")
    @exit_on_error
    def apply(
        var_file: Optional[str],
        var_pairs: Tuple[str, ...],
        home: str,
        yes: bool,
        dry_run: bool,
        timeout: float,
    ):
        """Create the network, subnet, firewall rules and VM.

        \b
        Example:
            llmvm apply --var project_id=demo --var ssh_source_ip=203.0.113.5/32
            llmvm apply --var-file stack.yaml --yes
        """
        from ..engine import DeployEngine, DeploymentStatus

        inputs = resolve_inputs(var_file, var_pairs)
        home_path = Path(home).expanduser()

        diff = DeployEngine(home=home_path).plan(inputs)
        console.print()
        console.print(
            Panel(
                f"  [bold]Project:[/]  {inputs.project_id}\n"
                f"  [bold]Zone:[/]     {inputs.zone}\n"
                f"  [bold]Create:[/]   {len(diff.to_create)}\n"
                f"  [bold]Update:[/]   {len(diff.to_update)}\n"
                f"  [bold]Delete:[/]   {len(diff.to_delete)}",
                title="LLM Stack Apply" + (" (dry run)" if dry_run else ""),
                border_style="bright_blue",
                padding=(1, 2),
            )
        )

        if not yes and not dry_run:
            if not click.confirm("\n  Proceed with apply?", default=True):
                console.print("  [dim]Cancelled.[/]\n")
                return

        provisioner = None if dry_run else _make_provisioner(inputs.project_id, timeout)
        engine = DeployEngine(home=home_path, provisioner=provisioner)

        with console.status("[bold cyan]Applying stack...[/]"):
            deployment = engine.apply(inputs)

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Resource", style="cyan")
        table.add_column("Status")
        table.add_column("Error", style="dim")
        for record in deployment.resources.values():
            table.add_row(record.key, status_markup(record.status), record.error or "")
        console.print(table)

        ok = deployment.status in (DeploymentStatus.APPLIED, DeploymentStatus.PLANNED)
        color = "green" if ok else "red"
        lines = [
            f"  [bold]Deployment:[/] {deployment.deployment_id}",
            f"  [bold]Status:[/]     [{color}]{deployment.status.value}[/]",
        ]
        if deployment.outputs:
            lines.append(f"  [bold]instance_name:[/]      {deployment.outputs.instance_name}")
            lines.append(
                f"  [bold]instance_public_ip:[/] "
                f"{deployment.outputs.instance_public_ip or '(not assigned yet)'}"
            )
        console.print(Panel("\n".join(lines), title="Apply Complete", border_style=color, padding=(1, 2)))

        if not ok:
            raise SystemExit(1)

    @main.command("output")
    @click.argument("deployment_id")
    @home_option
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    @click.option("--no-refresh", is_flag=True, help="Use saved values only.")
    @exit_on_error
    def output(deployment_id: str, home: str, as_json: bool, no_refresh: bool):
        """Print instance_name and instance_public_ip.

        Example:

            llmvm output demo-llm-vpc-network
        """
        from ..engine import DeployEngine

        home_path = Path(home).expanduser()
        deployment = DeployEngine(home=home_path).get_deployment(deployment_id)
        if not deployment:
            console.print(f"\n  [red]Deployment '{deployment_id}' not found.[/]\n")
            raise SystemExit(1)

        provisioner = None if no_refresh else _make_provisioner(deployment.project_id)
        outputs = DeployEngine(home=home_path, provisioner=provisioner).outputs(deployment_id)

        if outputs is None:
            console.print("\n  [yellow]No outputs recorded yet.[/]\n")
            raise SystemExit(1)

        if as_json:
            click.echo(json.dumps(outputs.model_dump(mode="json"), indent=2))
            return

        click.echo(f"instance_name = {outputs.instance_name}")
        click.echo(f"instance_public_ip = {outputs.instance_public_ip}")

    @main.command("status")
    @home_option
    @click.option("--refresh", is_flag=True, help="Query the live instance state.")
    @exit_on_error
    def status(home: str, refresh: bool):
        """Show every saved deployment and its resources."""
        from ..engine import DeployEngine

        home_path = Path(home).expanduser()
        engine = DeployEngine(home=home_path)
        deployments = engine.list_deployments()

        if not deployments:
            console.print("\n  [dim]No deployments.[/]")
            console.print("  [dim]Create one:[/] [cyan]llmvm apply --var-file stack.yaml[/]\n")
            return

        console.print()
        for dep in deployments:
            if refresh:
                live = DeployEngine(
                    home=home_path, provisioner=_make_provisioner(dep.project_id),
                )
                dep = live.refresh_status(dep.deployment_id) or dep

            ip = dep.outputs.instance_public_ip if dep.outputs else ""
            console.print(
                Panel(
                    f"  [bold]Project:[/]  {dep.project_id}\n"
                    f"  [bold]Zone:[/]     {dep.zone}\n"
                    f"  [bold]Status:[/]   {dep.status.value}\n"
                    f"  [bold]Public IP:[/] {ip or '—'}\n"
                    f"  [bold]Updated:[/]  {dep.updated_at[:19]}",
                    title=f"Deployment: {dep.deployment_id}",
                    border_style="bright_blue",
                    padding=(0, 2),
                )
            )

            table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
            table.add_column("Resource", style="cyan")
            table.add_column("Status")
            for record in dep.resources.values():
                table.add_row(record.key, status_markup(record.status))
            console.print(table)
            console.print()

    @main.command("destroy")
    @click.argument("deployment_id")
    @home_option
    @click.option("--force", is_flag=True, help="Skip confirmation.")
    @exit_on_error
    def destroy(deployment_id: str, home: str, force: bool):
        """Tear down a deployment in reverse dependency order.

        Example:

            llmvm destroy demo-llm-vpc-network
        """
        from ..engine import DeployEngine

        home_path = Path(home).expanduser()
        deployment = DeployEngine(home=home_path).get_deployment(deployment_id)

        if not deployment:
            console.print(f"\n  [red]Deployment '{deployment_id}' not found.[/]\n")
            raise SystemExit(1)

        console.print(
            f"\n  [bold red]This will destroy {len(deployment.resources)} resources "
            f"in project '{deployment.project_id}'.[/]"
        )

        if not force:
            if not click.confirm("  Are you sure?", default=False):
                console.print("  [dim]Cancelled.[/]\n")
                return

        engine = DeployEngine(
            home=home_path, provisioner=_make_provisioner(deployment.project_id),
        )
        if engine.destroy(deployment_id):
            console.print(f"\n  [green]Deployment {deployment_id} destroyed.[/]\n")
        else:
            console.print(
                "\n  [yellow]Partial cleanup, some resources may need manual removal.[/]\n"
            )
            raise SystemExit(1)
