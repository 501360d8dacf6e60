"""CLI helper functions for settings resolution and engine construction."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from stratum.contracts.enums import DeployMode

if TYPE_CHECKING:
    from stratum.core.config import StratumSettings
    from stratum.core.dependencies import PlanLookup
    from stratum.core.plan import Plan
    from stratum.engine import Engine
    from stratum.engine.driver import SQLAlchemyDriver


def resolve_settings(config_path: Path | None) -> StratumSettings:
    """Load settings from an explicit file, the default stratum.yaml, or defaults.

    Priority: --config > ./stratum.yaml > built-in defaults

    Raises:
        FileNotFoundError: If an explicit config file does not exist
        ValidationError: If configuration fails Pydantic validation
    """
    from stratum.core.config import DEFAULT_CONFIG_FILE, StratumSettings, load_settings

    if config_path is not None:
        return load_settings(config_path)

    default = Path(DEFAULT_CONFIG_FILE)
    if default.exists():
        return load_settings(default)
    return StratumSettings()


def parse_assignments(values: Sequence[str] | None, option: str) -> dict[str, str]:
    """Parse repeated key=value options.

    Raises:
        ValueError: If a value has no '=' or an empty key
    """
    result: dict[str, str] = {}
    for value in values or ():
        key, sep, assigned = value.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(f"{option} expects key=value, got '{value}'")
        result[key] = assigned
    return result


def merge_variables(*layers: dict[str, str]) -> dict[str, str]:
    """Merge variable layers, later layers winning."""
    merged: dict[str, str] = {}
    for layer in layers:
        merged.update(layer)
    return merged


@dataclass(frozen=True, slots=True)
class CheckoutOptions:
    """Effective checkout options after fallback resolution."""

    mode: DeployMode
    verify: bool
    no_prompt: bool


def resolve_checkout_options(
    settings: StratumSettings,
    *,
    mode: DeployMode | None,
    verify: bool | None,
    no_prompt: bool | None,
) -> CheckoutOptions:
    """CLI option, then checkout.*, then deploy.*/revert.*, then the model default."""

    def _pick[T](*candidates: T | None) -> T:
        for candidate in candidates:
            if candidate is not None:
                return candidate
        raise AssertionError("settings always provide a final default")

    return CheckoutOptions(
        mode=_pick(mode, settings.checkout.mode, settings.deploy.mode),
        verify=_pick(verify, settings.checkout.verify, settings.deploy.verify),
        no_prompt=_pick(no_prompt, settings.checkout.no_prompt, settings.revert.no_prompt),
    )


def build_plan_lookup(settings: StratumSettings, base: Path | None = None) -> PlanLookup:
    """Lookup that loads foreign plans from settings.foreign_plans on first use.

    Unknown projects raise KeyError, which DependencyGraph reports as an
    unresolved dependency.
    """
    from stratum.core.plan import Plan

    cache: dict[str, Plan] = {}
    base = base or Path.cwd()

    def lookup(project: str) -> Plan:
        if project not in cache:
            path = Path(settings.foreign_plans[project])
            if not path.is_absolute():
                path = base / path
            cache[project] = Plan.from_file(path, default_project=project)
        return cache[project]

    return lookup


def load_plan(settings: StratumSettings, base: Path | None = None) -> Plan:
    """Parse the working-tree plan file.

    Raises:
        FileNotFoundError: If the plan file does not exist
        PlanSyntaxError: If it cannot be parsed
    """
    from stratum.core.plan import Plan

    path = Path(settings.plan_file)
    if base is not None and not path.is_absolute():
        path = base / path
    return Plan.from_file(path)


@contextmanager
def open_driver(settings: StratumSettings) -> Iterator[SQLAlchemyDriver]:
    """Driver for the configured target, closed on exit."""
    from stratum.core.registry import RegistryDB
    from stratum.engine import SQLAlchemyDriver

    driver = SQLAlchemyDriver(RegistryDB.from_url(settings.target.url, echo=settings.target.echo))
    try:
        yield driver
    finally:
        driver.close()


@contextmanager
def open_engine(
    settings: StratumSettings,
    plan: Plan,
    *,
    confirm: Callable[[str], bool] | None = None,
    base: Path | None = None,
) -> Iterator[Engine]:
    """Construct registry, driver and engine for one CLI invocation.

    The driver (and its database engine) is closed on exit.
    """
    from stratum.engine import Engine

    with open_driver(settings) as driver:
        yield Engine(
            driver,
            plan,
            top_dir=settings.resolved_top_dir(base),
            committer=settings.identity(),
            plan_lookup=build_plan_lookup(settings, base),
            confirm=confirm,
        )
