"""Predicates over agent state snapshots.

A predicate answers "is this the state I expect?" for one snapshot. It is
pure: evaluating it twice against the same snapshot gives the same answer.
Besides the boolean, a predicate can explain a mismatch in one line, which
the poller keeps for failure reports.

Checks return ``True`` when the state matches, and ``False`` or a mismatch
description when it does not.

Example:
    >>> ready = managed_present_and_healthy("endpoint")
    >>> gone = unenrolled()
    >>> either = ready | gone
    >>> either(snapshot)
    False
    >>> ready.explain(snapshot)
    'local agent is not Healthy: current state: configuring'
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from fleetqa.state.models import AgentState, FleetState, StateSnapshot, UnitType

logger = logging.getLogger(__name__)

CheckFn = Callable[[StateSnapshot], bool | str]


@dataclass(frozen=True)
class PredicateResult:
    """Outcome of evaluating a predicate against one snapshot."""

    matched: bool
    detail: str = ""


@dataclass(frozen=True)
class Predicate:
    """A named boolean check over a StateSnapshot.

    Attributes:
        name: Short identifier used in logs and reports.
        check: Returns True on match, False or a mismatch description otherwise.
        description: Human-readable statement of the expected state.
    """

    name: str
    check: CheckFn
    description: str = ""

    def evaluate(self, snapshot: StateSnapshot) -> PredicateResult:
        outcome = self.check(snapshot)
        if outcome is True:
            return PredicateResult(matched=True)
        if isinstance(outcome, str) and outcome:
            detail = outcome
        else:
            detail = f"{self.name} not satisfied"
        logger.debug("Predicate %s not satisfied: %s", self.name, detail)
        return PredicateResult(matched=False, detail=detail)

    def explain(self, snapshot: StateSnapshot) -> str | None:
        """Return the mismatch detail, or None when the snapshot matches."""
        result = self.evaluate(snapshot)
        return None if result.matched else result.detail

    def __call__(self, snapshot: StateSnapshot) -> bool:
        return self.evaluate(snapshot).matched

    def __and__(self, other: Predicate) -> Predicate:
        return all_of(self, other)

    def __or__(self, other: Predicate) -> Predicate:
        return any_of(self, other)

    def __invert__(self) -> Predicate:
        return negate(self)

    def __str__(self) -> str:
        return self.description or self.name


def all_of(*predicates: Predicate, name: str | None = None) -> Predicate:
    """Match when every predicate matches; report the first mismatch."""
    if not predicates:
        raise ValueError("all_of() needs at least one predicate")

    def check(snapshot: StateSnapshot) -> bool | str:
        for predicate in predicates:
            result = predicate.evaluate(snapshot)
            if not result.matched:
                return result.detail
        return True

    return Predicate(
        name=name or " & ".join(p.name for p in predicates),
        check=check,
        description=" and ".join(str(p) for p in predicates),
    )


def any_of(*predicates: Predicate, name: str | None = None) -> Predicate:
    """Match when at least one predicate matches."""
    if not predicates:
        raise ValueError("any_of() needs at least one predicate")

    def check(snapshot: StateSnapshot) -> bool | str:
        details = []
        for predicate in predicates:
            result = predicate.evaluate(snapshot)
            if result.matched:
                return True
            details.append(result.detail)
        return "; ".join(details)

    return Predicate(
        name=name or " | ".join(p.name for p in predicates),
        check=check,
        description=" or ".join(str(p) for p in predicates),
    )


def negate(predicate: Predicate) -> Predicate:
    def check(snapshot: StateSnapshot) -> bool | str:
        if predicate(snapshot):
            return f"{predicate.name} unexpectedly satisfied"
        return True

    return Predicate(
        name=f"not {predicate.name}",
        check=check,
        description=f"not ({predicate})",
    )


def system_healthy() -> Predicate:
    """Root system state is HEALTHY."""

    def check(snapshot: StateSnapshot) -> bool | str:
        if snapshot.state is not AgentState.HEALTHY:
            return f"local agent is not Healthy: current state: {snapshot.state.value}"
        return True

    return Predicate(name="system_healthy", check=check, description="agent is Healthy")


def all_healthy() -> Predicate:
    """Every component and every unit is HEALTHY.

    Component and unit states are checked independently; a healthy component
    does not vouch for its units.
    """

    def check(snapshot: StateSnapshot) -> bool | str:
        problems = snapshot.unhealthy()
        if problems:
            return problems[0]
        return True

    return Predicate(
        name="all_healthy",
        check=check,
        description="every component and unit is Healthy",
    )


def managed_present_and_healthy(token: str) -> Predicate:
    """The managed sub-service is running and the whole agent is healthy.

    Requires the root state, every component and every unit to be HEALTHY,
    and at least one INPUT and one OUTPUT unit under a component whose name
    contains ``token``.
    """

    def check(snapshot: StateSnapshot) -> bool | str:
        if snapshot.state is not AgentState.HEALTHY:
            return f"local agent is not Healthy: current state: {snapshot.state.value}"

        found_input = False
        found_output = False
        for component in snapshot.components:
            is_managed = component.matches(token)
            if not component.is_healthy:
                return f"component {component.name!r} is not Healthy: {component.state.value}"

            for unit in component.units:
                if is_managed:
                    if unit.unit_type is UnitType.INPUT:
                        found_input = True
                    if unit.unit_type is UnitType.OUTPUT:
                        found_output = True
                if not unit.is_healthy:
                    return f"unit {unit.unit_id!r} is not Healthy: {unit.state.value}"

        if not found_input or not found_output:
            return (
                f"state did not contain {token} units "
                f"(input: {found_input}/output: {found_output})"
            )
        return True

    return Predicate(
        name=f"{token}_present_and_healthy",
        check=check,
        description=f"agent and {token} component with input and output units are Healthy",
    )


def managed_absent(token: str) -> Predicate:
    """The managed sub-service is gone and everything left is healthy.

    Absence means zero components whose name contains ``token`` and zero
    units whose id contains it, wherever they are attached.
    """

    def check(snapshot: StateSnapshot) -> bool | str:
        if snapshot.state is not AgentState.HEALTHY:
            return f"agent is not Healthy: current state: {snapshot.state.value}"

        problems = snapshot.unhealthy()
        if problems:
            return problems[0]

        components = snapshot.matching_components(token)
        if components:
            names = ", ".join(c.name for c in components)
            return f"state still contains {token} component(s): {names}"

        units = snapshot.units_bearing(token)
        if units:
            ids = ", ".join(u.unit_id for u in units)
            return f"state still contains {token} unit(s): {ids}"
        return True

    return Predicate(
        name=f"{token}_absent",
        check=check,
        description=f"agent is Healthy with no {token} component or units",
    )


def component_count(expected: int) -> Predicate:
    def check(snapshot: StateSnapshot) -> bool | str:
        actual = len(snapshot.components)
        if actual != expected:
            return f"expected {expected} component(s), found {actual}"
        return True

    return Predicate(
        name=f"component_count=={expected}",
        check=check,
        description=f"exactly {expected} component(s)",
    )


def fleet_state_is(expected: FleetState) -> Predicate:
    def check(snapshot: StateSnapshot) -> bool | str:
        if snapshot.fleet_state is not expected:
            return (
                f"fleet state is {snapshot.fleet_state.value}, "
                f"waiting for {expected.value}"
            )
        return True

    return Predicate(
        name=f"fleet_state=={expected.value}",
        check=check,
        description=f"fleet state is {expected.value}",
    )


def unenrolled() -> Predicate:
    """Agent is healthy, runs no components and has lost its fleet channel.

    This is the terminal state after unenrolling: the management side
    pushes an empty policy and then marks the fleet channel failed.
    """
    return all_of(
        system_healthy(),
        component_count(0),
        fleet_state_is(AgentState.FAILED),
        name="unenrolled",
    )


def degraded_with_message(substring: str) -> Predicate:
    """Root state is DEGRADED and some component message contains ``substring``."""

    def check(snapshot: StateSnapshot) -> bool | str:
        messages = [c.message for c in snapshot.components if c.message]
        suffix = f"; component messages: {' | '.join(messages)}" if messages else ""
        if snapshot.state is not AgentState.DEGRADED:
            return f"agent state is {snapshot.state.value}, waiting for degraded{suffix}"
        if any(substring in message for message in messages):
            return True
        return f"no component message contains {substring!r}{suffix}"

    return Predicate(
        name="degraded_with_message",
        check=check,
        description=f"agent is Degraded with message {substring!r}",
    )


__all__ = [
    "Predicate",
    "PredicateResult",
    "all_of",
    "any_of",
    "negate",
    "system_healthy",
    "all_healthy",
    "managed_present_and_healthy",
    "managed_absent",
    "component_count",
    "fleet_state_is",
    "unenrolled",
    "degraded_with_message",
]
