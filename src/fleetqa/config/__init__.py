"""Configuration for fleetqa harness runs."""

from fleetqa.config.settings import HarnessConfig, load_config

__all__ = ["HarnessConfig", "load_config"]
