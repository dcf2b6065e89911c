"""Fleet management API adapter."""

from fleetqa.fleet.client import FleetAPIClient

__all__ = ["FleetAPIClient"]
