"""Rich console output for scenario results and bundle reports.

Example:
    >>> reporter = ConsoleReporter()
    >>> reporter.scenario(result)
    >>> reporter.summary(results)
"""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from fleetqa.artifacts import BundleReport
from fleetqa.errors import FleetQAError, ResidualFilesError
from fleetqa.lifecycle.orchestrator import ScenarioResult
from fleetqa.state.models import AgentState, StateSnapshot

STATE_STYLES = {
    AgentState.HEALTHY: "green",
    AgentState.DEGRADED: "yellow",
    AgentState.FAILED: "red",
    AgentState.STARTING: "cyan",
    AgentState.CONFIGURING: "cyan",
}


def _status(passed: bool) -> Text:
    return Text("PASS", style="bold green") if passed else Text("FAIL", style="bold red")


def _state(state: AgentState) -> Text:
    return Text(state.value, style=STATE_STYLES.get(state, "dim"))


class ConsoleReporter:
    """Renders fleetqa results to a rich Console."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def scenario(self, result: ScenarioResult) -> None:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Stage")
        table.add_column("Elapsed", justify="right")
        for record in result.stages:
            table.add_row(record.stage.value, f"{record.elapsed_seconds:.1f}s")

        body: list[Text] = []
        if result.error_message:
            body.append(Text(result.error_message, style="red"))
        for failure in result.cleanup_failures:
            body.append(Text(f"cleanup: {failure}", style="yellow"))

        title = Text.assemble(_status(result.success), " ", result.name)
        self.console.print(Panel(table, title=title, subtitle=f"{result.duration_seconds:.1f}s"))
        for line in body:
            self.console.print(line)
        if isinstance(result.exception, FleetQAError) and not result.success:
            self.error(result.exception)

    def summary(self, results: list[ScenarioResult]) -> None:
        table = Table(title="Scenarios", show_header=True, header_style="bold")
        table.add_column("Scenario")
        table.add_column("Result")
        table.add_column("Final stage")
        table.add_column("Duration", justify="right")
        for result in results:
            table.add_row(
                result.name,
                _status(result.success),
                result.final_stage.value,
                f"{result.duration_seconds:.1f}s",
            )
        self.console.print(table)
        passed = sum(1 for r in results if r.success)
        style = "green" if passed == len(results) else "red"
        self.console.print(f"[{style}]{passed}/{len(results)} scenarios passed[/{style}]")

    def bundle(self, report: BundleReport) -> None:
        table = Table(title=f"Diagnostics bundle: {report.path}", show_header=True, header_style="bold")
        table.add_column("Check")
        table.add_column("Result")
        table.add_column("Detail")
        for check in report.checks:
            table.add_row(check.name, _status(check.passed), check.detail)
        self.console.print(table)

    def snapshot(self, snapshot: StateSnapshot) -> None:
        tree = Tree(Text.assemble("agent: ", _state(snapshot.state), f" {snapshot.message}".rstrip()))
        tree.add(Text.assemble("fleet: ", _state(snapshot.fleet_state)))
        for component in snapshot.components:
            branch = tree.add(Text.assemble(f"{component.name}: ", _state(component.state)))
            for unit in component.units:
                branch.add(Text.assemble(f"{unit.unit_type.value} {unit.unit_id}: ", _state(unit.state)))
        self.console.print(tree)

    def residuals(self, error: ResidualFilesError) -> None:
        table = Table(title=f"Leftovers ({error.signature})", show_header=True, header_style="bold")
        table.add_column("Path")
        table.add_column("Contents")
        for path, listing in sorted(error.residuals.items()):
            if listing is None:
                contents = "(file)"
            else:
                contents = ", ".join(listing) or "(empty)"
            table.add_row(path, contents)
        self.console.print(table)

    def error(self, error: FleetQAError) -> None:
        panel = Panel(
            Text(error.format_verbose()),
            title=f"[red]{type(error).__name__}[/red]",
            border_style="red",
        )
        self.console.print(panel)
