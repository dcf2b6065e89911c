"""Residual file checks after the managed sub-service is removed."""

from __future__ import annotations

import logging
from pathlib import Path

from fleetqa.errors import ErrorContext, ResidualFilesError

logger = logging.getLogger(__name__)


def find_residuals(directory: str | Path, token: str) -> dict[str, list[str] | None]:
    """Find entries of ``directory`` whose name contains ``token``.

    Returns:
        Mapping of leftover path to its sorted listing for directories, or
        None for plain files. An empty list is an empty leftover directory.
    """
    directory = Path(directory)
    residuals: dict[str, list[str] | None] = {}
    for entry in sorted(directory.iterdir()):
        logger.debug("Found %s %s", "directory" if entry.is_dir() else "file", entry.name)
        if token not in entry.name:
            continue
        if entry.is_dir():
            try:
                residuals[str(entry)] = sorted(child.name for child in entry.iterdir())
            except OSError as e:
                logger.warning("Could not list %s to check what was left behind: %s", entry, e)
                residuals[str(entry)] = [f"<unreadable: {e}>"]
        else:
            residuals[str(entry)] = None
    return residuals


def check_no_residuals(
    install_dir: str | Path,
    token: str = "Endpoint",
    context: ErrorContext | None = None,
) -> None:
    """Assert nothing named after the sub-service is left next to the install.

    The scan covers the parent of ``install_dir``, where the sub-service
    keeps its own installation.

    Raises:
        ResidualFilesError: Listing every leftover and its contents.
    """
    parent = Path(install_dir).resolve().parent
    logger.info("Checking for %s leftovers at %s", token, parent)
    residuals = find_residuals(parent, token)
    if residuals:
        raise ResidualFilesError(residuals=residuals, context=context, directory=str(parent))
