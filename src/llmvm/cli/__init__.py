"""
llmvm CLI — render, plan, apply and tear down the LLM stack.

The main Click group is defined here and all subcommands are
registered via register functions from their modules.

Entry point: llmvm.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="llmvm")
@click.option("-v", "--verbose", is_flag=True, help="Log progress to stderr.")
def main(verbose: bool):
    """llmvm — a single-VM language-model stack on Google Cloud.

    \b
    Preview:  llmvm render --var project_id=demo --var ssh_source_ip=203.0.113.5/32
    Plan:     llmvm plan --var-file stack.yaml
    Apply:    llmvm apply --var-file stack.yaml
    Outputs:  llmvm output <deployment-id>
    Destroy:  llmvm destroy <deployment-id>
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .stack_cmd import register_stack_commands
from .deploy import register_deploy_commands

register_stack_commands(main)
register_deploy_commands(main)
