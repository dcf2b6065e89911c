"""Control-plane client protocol and scoped connection helpers.

The control-plane client talks to the agent running on this host. It is an
external collaborator: fleetqa only needs to connect, fetch a snapshot and
disconnect.

Example:
    >>> with connected(client, timeout=30):
    ...     snapshot = client.fetch_state(timeout=5)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Protocol, runtime_checkable

from fleetqa.errors import ControlPlaneConnectionError, FleetQAError, StateFetchError
from fleetqa.state.models import StateSnapshot

logger = logging.getLogger(__name__)

TimeoutFn = Callable[[], float | None]


@runtime_checkable
class ControlPlaneClient(Protocol):
    """Protocol for the local agent control-plane client.

    One connection is owned by exactly one scenario at a time; pollers never
    share it.
    """

    def connect(self, timeout: float | None = None) -> None:
        """Open the connection.

        Raises:
            Exception: Any failure; callers wrap it in
                ControlPlaneConnectionError.
        """
        ...

    def disconnect(self) -> None:
        """Close the connection. Safe to call more than once."""
        ...

    def fetch_state(self, timeout: float | None = None) -> StateSnapshot:
        """Fetch a fresh snapshot of the agent state."""
        ...


@contextmanager
def connected(client: ControlPlaneClient, timeout: float | None = None) -> Iterator[ControlPlaneClient]:
    """Hold a control-plane connection for the duration of a block.

    The client is disconnected on every exit path, including errors raised
    inside the block.

    Raises:
        ControlPlaneConnectionError: If the connection cannot be opened.
    """
    try:
        client.connect(timeout=timeout)
    except FleetQAError:
        raise
    except Exception as e:
        raise ControlPlaneConnectionError(
            message=f"Could not connect to local agent: {e}",
            cause=e,
        ) from e
    try:
        yield client
    finally:
        try:
            client.disconnect()
        except Exception:
            logger.warning("Error disconnecting from local agent", exc_info=True)


def fetch_snapshot(client: ControlPlaneClient, timeout: float | None = None) -> StateSnapshot:
    """Fetch a snapshot, normalizing client failures to StateFetchError."""
    try:
        snapshot = client.fetch_state(timeout=timeout)
    except FleetQAError:
        raise
    except Exception as e:
        raise StateFetchError(message=f"Error getting agent state: {e}", cause=e) from e
    if not isinstance(snapshot, StateSnapshot):
        raise StateFetchError(
            message=f"Malformed agent state: expected StateSnapshot, got {type(snapshot).__name__}"
        )
    return snapshot


def reconnecting_fetch(
    client: ControlPlaneClient,
    timeout_fn: TimeoutFn | None = None,
) -> Callable[[], StateSnapshot]:
    """Build a fetch function that connects, fetches and disconnects per call.

    Used while the agent may restart between attempts, where a long-lived
    connection would go stale.

    Args:
        client: Control-plane client to use.
        timeout_fn: Returns the per-call timeout (usually the remaining
            scenario budget), or None for no limit.
    """

    def fetch() -> StateSnapshot:
        timeout = timeout_fn() if timeout_fn else None
        with connected(client, timeout=timeout):
            return fetch_snapshot(client, timeout=timeout)

    return fetch


def persistent_fetch(
    client: ControlPlaneClient,
    timeout_fn: TimeoutFn | None = None,
) -> Callable[[], StateSnapshot]:
    """Build a fetch function over an already connected client."""

    def fetch() -> StateSnapshot:
        return fetch_snapshot(client, timeout=timeout_fn() if timeout_fn else None)

    return fetch
