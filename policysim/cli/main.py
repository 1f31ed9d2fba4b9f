#!/usr/bin/env python3
"""Main CLI entry point for the policy move simulator using Typer."""

from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .. import __version__
from ..policy.models import OutputMode
from ..reporting.exports import ExportFormat
from .config import ConfigurationError, load_configuration, print_configuration, validate_configuration
from .runner import ExitCode, SimulationRunner, configure_logging


app = typer.Typer(
    name="policysim",
    help="Predict the Azure Policy impact of moving a subscription to another management group",
    add_completion=False,
)


def _fail(message: str, code: ExitCode = ExitCode.CONFIG_ERROR):
    typer.echo(f"❌ {message}", err=True)
    raise typer.Exit(code=code.value)


@app.callback()
def main():
    """
    Policy Move Simulator.

    Read-only simulation of the policy assignments, effects and exemptions a
    subscription would be subject to under a different management group.
    """
    pass


@app.command(name="version")
def show_version():
    """Show version information."""
    typer.echo(f"policysim v{__version__}")


@app.command()
def simulate(
    subscription: Annotated[
        Optional[str],
        typer.Option("--subscription", "-s", help="Subscription ID to simulate moving")
    ] = None,

    target: Annotated[
        Optional[str],
        typer.Option("--target", "-t", help="Destination management group name")
    ] = None,

    source: Annotated[
        Optional[str],
        typer.Option("--source", help="Current management group name (enables New/Existing labels)")
    ] = None,

    mode: Annotated[
        Optional[str],
        typer.Option("--mode", "-m", help="Results to emit: violations-only, compliant-only, all")
    ] = None,

    resource_types: Annotated[
        Optional[str],
        typer.Option("--resource-types", help="Comma-separated resource types to evaluate")
    ] = None,

    resource_id: Annotated[
        Optional[str],
        typer.Option("--resource-id", help="Evaluate a single resource")
    ] = None,

    portal_mode: Annotated[
        Optional[bool],
        typer.Option("--portal-mode/--no-portal-mode", help="Narrow resource types the way the portal does")
    ] = None,

    parallel: Annotated[
        Optional[bool],
        typer.Option("--parallel/--sequential", help="Evaluate resources concurrently")
    ] = None,

    workers: Annotated[
        Optional[int],
        typer.Option("--workers", "-w", help="Worker count for parallel evaluation")
    ] = None,

    max_retries: Annotated[
        Optional[int],
        typer.Option("--max-retries", help="Attempts per remote call")
    ] = None,

    include_disabled: Annotated[
        Optional[bool],
        typer.Option("--include-disabled/--exclude-disabled", help="Evaluate policies with a Disabled effect")
    ] = None,

    export: Annotated[
        Optional[bool],
        typer.Option("--export/--no-export", help="Write a tabular export")
    ] = None,

    export_format: Annotated[
        Optional[str],
        typer.Option("--export-format", help="Export format: csv or xlsx")
    ] = None,

    out: Annotated[
        Optional[Path],
        typer.Option("--out", "-o", help="Output directory for exports")
    ] = None,

    summary_format: Annotated[
        Optional[str],
        typer.Option("--summary-format", help="Summary format: text, json, yaml")
    ] = None,

    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Configuration file (YAML or JSON)")
    ] = None,

    verbose: Annotated[
        Optional[bool],
        typer.Option("--verbose", "-v", help="Verbose output")
    ] = None,

    quiet: Annotated[
        Optional[bool],
        typer.Option("--quiet", "-q", help="Quiet mode (minimal output)")
    ] = None,

    print_config: Annotated[
        bool,
        typer.Option("--print-config", help="Print effective configuration and exit")
    ] = False,
):
    """
    Simulate moving a subscription under a target management group.

    Examples:

        # Violations only, CSV export in the current directory
        policysim simulate -s 0000-... -t corp-landing-zones

        # Compare with today's placement, all results, spreadsheet export
        policysim simulate -s 0000-... -t corp --source sandbox --mode all --export-format xlsx

        # One resource, parallel evaluation
        policysim simulate -s 0000-... -t corp --resource-id /subscriptions/.../vm1 --parallel
    """
    if mode is not None:
        try:
            OutputMode(mode)
        except ValueError:
            _fail(f"Invalid mode '{mode}'. Valid values: violations-only, compliant-only, all")

    if export_format is not None:
        try:
            ExportFormat(export_format.lower())
        except ValueError:
            _fail(f"Invalid export format '{export_format}'. Valid values: csv, xlsx")

    # Only explicitly provided values override lower-precedence sources
    sections = {
        "azure": {
            "subscription_id": subscription,
            "target_group": target,
            "source_group": source,
        },
        "execution": {
            "parallel": parallel,
            "max_workers": workers,
            "max_retries": max_retries,
            "include_disabled": include_disabled,
        },
        "filters": {
            "resource_types": resource_types,
            "resource_id": resource_id,
            "portal_mode": portal_mode,
        },
        "output": {
            "mode": mode,
            "export": export,
            "export_format": export_format.lower() if export_format else None,
            "output_dir": out,
            "summary_format": summary_format,
            "verbose": verbose,
            "quiet": quiet,
        },
    }
    cli_overrides = {}
    for section, values in sections.items():
        provided = {key: value for key, value in values.items() if value is not None}
        if provided:
            cli_overrides[section] = provided

    try:
        full_config = load_configuration(
            config_file=config_file,
            cli_overrides=cli_overrides,
            search_paths=[Path.cwd()]
        )
    except ConfigurationError as e:
        _fail(f"Configuration error: {e}")

    if print_config:
        typer.echo("# Effective configuration")
        typer.echo(f"# Sources: {', '.join(full_config.loaded_from)}")
        typer.echo(print_configuration(full_config))
        raise typer.Exit(code=ExitCode.SUCCESS.value)

    errors = validate_configuration(full_config)
    if errors:
        for error in errors:
            typer.echo(f"❌ {error}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    configure_logging(full_config.output.verbose, full_config.output.quiet)

    exit_code = SimulationRunner(full_config).run()
    raise typer.Exit(code=int(exit_code))


@app.command(name="validate-config")
def validate_config(
    config_file: Annotated[
        Path,
        typer.Argument(help="Configuration file to validate")
    ],

    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Verbose validation output")
    ] = False,
):
    """
    Validate a configuration file without running a simulation.
    """
    if not config_file.exists():
        _fail(f"Configuration file not found: {config_file}")

    try:
        config = load_configuration(config_file=config_file, search_paths=[])
    except ConfigurationError as e:
        _fail(f"Configuration validation failed: {e}")

    errors = validate_configuration(config, require_targets=False)
    if errors:
        for error in errors:
            typer.echo(f"❌ {error}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    typer.echo(f"✅ Configuration file {config_file} is valid")

    if verbose:
        typer.echo(f"   Subscription: {config.azure.subscription_id or '(not set)'}")
        typer.echo(f"   Target Group: {config.azure.target_group or '(not set)'}")
        typer.echo(f"   Output Mode: {config.output.mode.value}")
        typer.echo(f"   Format: {config_file.suffix}")


def cli_main():
    """Entry point for console script."""
    app()


if __name__ == "__main__":
    cli_main()
