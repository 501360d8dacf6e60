# src/stratum/core/__init__.py
"""Core infrastructure: Plan, Dependencies, Registry, Canonical, Configuration, Logging."""

from stratum.core.canonical import (
    CANONICAL_VERSION,
    canonical_json,
    stable_hash,
)
from stratum.core.config import (
    CheckoutSettings,
    DeploySettings,
    RevertSettings,
    StratumSettings,
    TargetSettings,
    UserSettings,
    load_settings,
)
from stratum.core.dependencies import DependencyGraph
from stratum.core.logging import configure_logging, get_logger
from stratum.core.plan import Change, Dependency, Plan, Tag, format_plan, parse_plan
from stratum.core.registry import RegistryDB, RegistryRepository

__all__ = [
    "CANONICAL_VERSION",
    "Change",
    "CheckoutSettings",
    "Dependency",
    "DependencyGraph",
    "DeploySettings",
    "Plan",
    "RegistryDB",
    "RegistryRepository",
    "RevertSettings",
    "StratumSettings",
    "Tag",
    "TargetSettings",
    "UserSettings",
    "canonical_json",
    "configure_logging",
    "format_plan",
    "get_logger",
    "load_settings",
    "parse_plan",
    "stable_hash",
]
