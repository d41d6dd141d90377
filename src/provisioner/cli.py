"""Provisioner CLI.

Usage:
    provisioner --stack dev plan               # Show the realization order (no Azure calls)
    provisioner --stack dev up                 # Provision against Azure
    provisioner --stack dev connection-string  # Print the storage connection string (masked)
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path

import click

from .config import ConfigurationError, EngineConfig
from .context import DEFAULT_LOCATION, DeploymentContext
from .deferred import MASKED_VALUE
from .engine import ProvisioningEngine, ProvisioningReport
from .main import create_provider, run_stack, setup_logging
from .provider import Provider
from .resources import ResourceStatus, StorageAccount
from .settings import CONNECTION_STRING_TEMPLATE, LoggingSecretSink, build_connection_string
from .stack import build_contact_legacy_stack
from .stack_config import StackLoadError, StackSettings, load_stack_settings

STATUS_COLORS = {
    ResourceStatus.REALIZED: "green",
    ResourceStatus.FAILED: "red",
    ResourceStatus.SKIPPED: "yellow",
}


class CliState:
    """Options shared by all commands."""

    def __init__(self, stack: str, stacks_dir: Path, location: str, subscription: str | None):
        self.stack = stack
        self.stacks_dir = stacks_dir
        self.location = location
        self.subscription = subscription

    def load(self) -> tuple[DeploymentContext, StackSettings]:
        """Load settings and build the deployment context.

        Raises:
            click.ClickException: On invalid settings or context.
        """
        try:
            settings = load_stack_settings(self.stacks_dir, self.stack)
            ctx = DeploymentContext(
                stack_name=self.stack,
                tenant_id=settings.tenant_id,
                location=self.location,
                subscription_id=self.subscription,
            )
        except (ConfigurationError, StackLoadError) as e:
            raise click.ClickException(str(e)) from e
        return ctx, settings


def load_engine_config(dry_run: bool) -> EngineConfig:
    try:
        config = EngineConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    return replace(config, dry_run=dry_run)


def echo_report(report: ProvisioningReport) -> None:
    """Print one line per node in realization order, then the exports."""
    for index, name in enumerate(report.order, start=1):
        result = report.results[name]
        line = f"{index:>2}. {name} ({result.kind}) {result.status.value}"
        if result.blocked_by:
            line += f" [blocked by {result.blocked_by}]"
        elif result.error is not None:
            line += f" [{result.error}]"
        click.secho(line, fg=STATUS_COLORS.get(result.status))

    exports = report.to_dict()["exports"]
    if exports:
        click.echo("\nExports:")
        for name, value in exports.items():
            click.echo(f"  {name}: {value}")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="provisioner")
@click.option("--stack", "-s", envvar="PROVISIONER_STACK", required=True, help="Stack name")
@click.option(
    "--stacks-dir",
    envvar="PROVISIONER_STACKS_DIR",
    default="stacks",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory with <stack>.yaml files",
)
@click.option("--location", "-l", envvar="AZURE_LOCATION", default=DEFAULT_LOCATION)
@click.option("--subscription", envvar="AZURE_SUBSCRIPTION_ID", help="Azure subscription ID")
@click.option("--verbose", "-v", is_flag=True, help="Emit JSON logs on stderr")
@click.pass_context
def cli(
    ctx: click.Context,
    stack: str,
    stacks_dir: Path,
    location: str,
    subscription: str | None,
    verbose: bool,
) -> None:
    """Provision the contact-legacy Azure stack."""
    setup_logging(logging.INFO if verbose else logging.WARNING, stream=sys.stderr)
    ctx.obj = CliState(stack, stacks_dir, location, subscription)


@cli.command()
@click.pass_obj
def plan(state: CliState) -> None:
    """Show the realization order using a dry-run provider."""
    ctx, settings = state.load()
    config = load_engine_config(dry_run=True)

    try:
        report = asyncio.run(run_stack(ctx, settings, config, create_provider(ctx, config)))
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Plan for stack '{ctx.stack_name}':")
    echo_report(report)
    if not report.success:
        sys.exit(1)


@cli.command()
@click.pass_obj
def up(state: CliState) -> None:
    """Provision the stack against Azure."""
    ctx, settings = state.load()
    config = load_engine_config(dry_run=False)

    try:
        provider = create_provider(ctx, config)
        report = asyncio.run(run_stack(ctx, settings, config, provider))
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    echo_report(report)
    if report.success:
        click.secho(f"✓ Stack '{ctx.stack_name}' is up", fg="green")
    else:
        click.secho(
            f"✗ {len(report.failed)} failed, {len(report.skipped)} skipped",
            fg="red",
        )
        sys.exit(1)


@cli.command("connection-string")
@click.option("--show-secrets", is_flag=True, help="Print the account key in clear text")
@click.option("--live", is_flag=True, help="Read the key from Azure instead of a dry run")
@click.pass_obj
def connection_string(state: CliState, show_secrets: bool, live: bool) -> None:
    """Print the AzureWebJobsStorage connection string."""
    ctx, settings = state.load()
    config = load_engine_config(dry_run=not live)
    stack = build_contact_legacy_stack(ctx, settings)
    storage = next(node for node in stack.nodes if isinstance(node, StorageAccount))
    sink = LoggingSecretSink()

    try:
        provider = create_provider(ctx, config)
        report = asyncio.run(_realize_storage(ctx, config, provider, sink, storage))
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    if not report.success:
        raise click.ClickException(f"Storage account '{storage.logical_name}' was not realized")

    if show_secrets:
        value = build_connection_string(storage.name, storage.primary_key)
        click.echo(value.result())
    else:
        click.echo(
            CONNECTION_STRING_TEMPLATE.format(
                account_name=storage.name.result(), account_key=MASKED_VALUE
            )
        )


async def _realize_storage(
    ctx: DeploymentContext,
    config: EngineConfig,
    provider: Provider,
    sink: LoggingSecretSink,
    storage: StorageAccount,
) -> ProvisioningReport:
    engine = ProvisioningEngine(provider, ctx, config, sink)
    return await engine.run([*storage.dependencies(), storage])


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
