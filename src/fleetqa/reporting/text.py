"""Plain-text rendering of snapshots for error messages and logs."""

from __future__ import annotations

from fleetqa.state.models import AgentState, StateSnapshot

_MARK = {True: "ok", False: "!!"}


def _line(prefix: str, label: str, state: AgentState, message: str) -> str:
    mark = _MARK[state is AgentState.HEALTHY]
    text = f"{prefix}[{mark}] {label}: {state.value}"
    if message:
        text += f" ({message})"
    return text


def format_snapshot(snapshot: StateSnapshot, indent: int = 0) -> str:
    """Render a snapshot as an indented tree.

    Example:
        >>> print(format_snapshot(snapshot))
        [ok] agent: healthy
             fleet: failed
          [ok] endpoint-default: healthy
            [ok] input endpoint-default-input: healthy
    """
    pad = " " * indent
    lines = [
        _line(pad, "agent", snapshot.state, snapshot.message),
        f"{pad}     fleet: {snapshot.fleet_state.value}"
        + (f" ({snapshot.fleet_message})" if snapshot.fleet_message else ""),
    ]
    if not snapshot.components:
        lines.append(f"{pad}  (no components)")
    for component in snapshot.components:
        lines.append(_line(pad + "  ", component.name, component.state, component.message))
        for unit in component.units:
            lines.append(
                _line(
                    pad + "    ",
                    f"{unit.unit_type.value} {unit.unit_id}",
                    unit.state,
                    unit.message,
                )
            )
    return "\n".join(lines)
