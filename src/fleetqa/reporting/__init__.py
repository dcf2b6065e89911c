"""Reporting of snapshots, scenario results and bundle checks."""

from fleetqa.reporting.console import ConsoleReporter
from fleetqa.reporting.text import format_snapshot

__all__ = ["ConsoleReporter", "format_snapshot"]
