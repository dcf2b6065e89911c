"""fleetqa CLI - command line interface for fleetqa."""

from fleetqa.cli.commands import cli


def main() -> None:
    """Main entry point for the fleetqa CLI."""
    cli()


__all__ = ["main", "cli"]
