"""CLI commands for fleetqa."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
import yaml
from pydantic import ValidationError

from fleetqa.artifacts import BundleLayout, verify_bundle
from fleetqa.config import HarnessConfig, load_config
from fleetqa.errors import BundleError, ConfigValidationError, ResidualFilesError
from fleetqa.lifecycle.filesystem import find_residuals
from fleetqa.lifecycle.scenarios import PROTECTION_MATRIX, SCENARIOS
from fleetqa.observability import setup_logging
from fleetqa.reporting import ConsoleReporter


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--config", "-c", type=click.Path(exists=True), help="Path to config file")
@click.option(
    "--log-format",
    type=click.Choice(["human", "json"]),
    default=None,
    help="Log output format (overrides config)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config: str | None, log_format: str | None) -> None:
    """fleetqa - convergence checks for a fleet-managed agent."""
    ctx.ensure_object(dict)

    try:
        config_obj = load_config(config)
    except (ConfigValidationError, ValidationError) as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(2)

    if verbose:
        config_obj.verbose = True
    if log_format:
        config_obj.log_format = log_format

    ctx.obj["config"] = config_obj
    ctx.obj["verbose"] = verbose
    ctx.obj["reporter"] = ConsoleReporter()

    setup_logging(config_obj.verbose, config_obj.log_format)


@cli.command("verify-bundle")
@click.argument("path", type=click.Path(exists=True))
@click.option("--component-dir", default=None, help="Component directory inside the bundle")
@click.option("--logs-dir", default=None, help="Service log directory inside the bundle")
@click.option("--log-pattern", default=None, help="Glob for the service log file name")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    help="Output format",
)
@click.pass_context
def verify_bundle_cmd(
    ctx: click.Context,
    path: str,
    component_dir: str | None,
    logs_dir: str | None,
    log_pattern: str | None,
    output_format: str,
) -> None:
    """Check a diagnostics bundle for evidence of the managed sub-service."""
    config: HarnessConfig = ctx.obj["config"]
    defaults = BundleLayout.from_config(config)
    layout = BundleLayout(
        component_dir=component_dir or defaults.component_dir,
        logs_dir=logs_dir or defaults.logs_dir,
        log_pattern=log_pattern or defaults.log_pattern,
    )

    try:
        report = verify_bundle(path, layout)
    except BundleError as e:
        click.echo(str(e), err=True)
        sys.exit(2)

    if output_format == "json":
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        ctx.obj["reporter"].bundle(report)

    sys.exit(0 if report.passed else 1)


@cli.command("check-residue")
@click.argument("install_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--token", default=None, help="Name fragment of leftover entries")
@click.pass_context
def check_residue(ctx: click.Context, install_dir: str, token: str | None) -> None:
    """Look for sub-service leftovers next to INSTALL_DIR."""
    config: HarnessConfig = ctx.obj["config"]
    token = token or config.residual_token
    parent = Path(install_dir).resolve().parent

    residuals = find_residuals(parent, token)
    if not residuals:
        click.echo(f"No {token} leftovers in {parent}")
        sys.exit(0)

    error = ResidualFilesError(residuals=residuals)
    ctx.obj["reporter"].residuals(error)
    click.echo(error.message, err=True)
    sys.exit(1)


@cli.command("show-config")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice(["yaml", "json"]),
    default="yaml",
    help="Output format",
)
@click.pass_context
def show_config(ctx: click.Context, output_format: str) -> None:
    """Print the effective configuration with secrets masked."""
    config: HarnessConfig = ctx.obj["config"]
    data = config.display_dict()
    if output_format == "json":
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.safe_dump(data, sort_keys=False).rstrip())


@cli.command("list-scenarios")
def list_scenarios() -> None:
    """List the scenarios and their protection variants."""
    for name, builder in SCENARIOS.items():
        click.echo(f"{name}: {(builder.__doc__ or '').strip().splitlines()[0]}")
        for protected in PROTECTION_MATRIX:
            click.echo(f"  - {builder(protected=protected).name}")
