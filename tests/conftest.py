# tests/conftest.py
"""Shared test fixtures and helpers.

Plan helpers:
- plan_text(): plan file text from short entry heads ("users", "flips [users]", "@v1.0")
- make_plan(): the parsed Plan for the same entries

Registry and engine fixtures use a SQLite file under tmp_path, so each test
gets its own target database. Scripts are written under tmp_path/"scripts".

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

from __future__ import annotations

import os
import threading
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from hypothesis import Phase, Verbosity, settings

from stratum.contracts.errors import AlreadyOnBranchError, VCSError
from stratum.contracts.registry import Identity
from stratum.core.plan import Plan, parse_plan
from stratum.core.registry import RegistryDB
from stratum.engine import Engine, SQLAlchemyDriver

PLANNER = Identity("Ann Planner", "ann@example.com")
COMMITTER = Identity("Deploy Bot", "bot@example.com")
BASE_TIME = datetime(2024, 1, 1, 10, 0, 0, tzinfo=UTC)


def plan_text(*entries: str, project: str = "flipr", uri: str | None = None, start: int = 0) -> str:
    """Plan file text for plan entries; each entry is planned one hour after the previous.

    An entry is the head as it appears in a plan line: "users",
    "flips [users !legacy]", "@v1.0". A trailing " # note" is kept.
    """
    lines = ["%syntax-version=1.0.0", f"%project={project}"]
    if uri:
        lines.append(f"%uri={uri}")
    lines.append("")
    for offset, entry in enumerate(entries, start=start):
        head, sep, note = entry.partition(" # ")
        stamp = (BASE_TIME + timedelta(hours=offset)).strftime("%Y-%m-%dT%H:%M:%SZ")
        line = f"{head} {stamp} {PLANNER}"
        if sep:
            line += f" # {note}"
        lines.append(line)
    return "\n".join(lines) + "\n"


def make_plan(*entries: str, project: str = "flipr", uri: str | None = None) -> Plan:
    return parse_plan(plan_text(*entries, project=project, uri=uri))


def write_scripts(
    top_dir: Path,
    name: str,
    *,
    deploy: str | None = None,
    revert: str | None = None,
    verify: str | None = None,
) -> None:
    """Write whichever scripts are given for one script name."""
    for kind, content in (("deploy", deploy), ("revert", revert), ("verify", verify)):
        if content is None:
            continue
        path = top_dir / kind / f"{name}.sql"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


def write_table_scripts(top_dir: Path, *names: str) -> None:
    """Deploy creates table <name>, revert drops it, verify selects from it."""
    for name in names:
        write_scripts(
            top_dir,
            name,
            deploy=f"CREATE TABLE {name} (id INTEGER PRIMARY KEY);\n",
            revert=f"DROP TABLE {name};\n",
            verify=f"SELECT id FROM {name} WHERE 0;\n",
        )


class FakeVCS:
    """In-memory VCS: a plan file per branch, and a record of switches."""

    def __init__(self, current: str, branches: dict[str, bytes], *, plan_file: str = "stratum.plan") -> None:
        self.current = current
        self.branches = dict(branches)
        self.plan_file = plan_file
        self.switches: list[str] = []
        self.reads: list[tuple[str, str]] = []

    def current_branch(self) -> str:
        return self.current

    def file_content_at(self, ref: str, path: str) -> bytes:
        self.reads.append((ref, path))
        if ref not in self.branches or path != self.plan_file:
            raise VCSError(f"git show {ref}:{path} failed")
        return self.branches[ref]

    def switch_to(self, branch: str) -> None:
        if branch == self.current:
            raise AlreadyOnBranchError(branch)
        self.switches.append(branch)
        self.current = branch


@pytest.fixture
def target_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'target.db'}"


@pytest.fixture
def registry_db(target_url: str) -> Iterator[RegistryDB]:
    db = RegistryDB.from_url(target_url)
    yield db
    db.close()


@pytest.fixture
def driver(registry_db: RegistryDB) -> SQLAlchemyDriver:
    return SQLAlchemyDriver(registry_db)


@pytest.fixture
def top_dir(tmp_path: Path) -> Path:
    path = tmp_path / "scripts"
    path.mkdir()
    return path


@pytest.fixture
def shutdown_event() -> threading.Event:
    return threading.Event()


@pytest.fixture
def make_engine(
    driver: SQLAlchemyDriver,
    top_dir: Path,
    shutdown_event: threading.Event,
) -> Callable[..., Engine]:
    """Factory for engines bound to the test database and script directory."""

    def _make(plan: Plan, **kwargs: Any) -> Engine:
        kwargs.setdefault("top_dir", top_dir)
        kwargs.setdefault("committer", COMMITTER)
        kwargs.setdefault("shutdown_event", shutdown_event)
        return Engine(driver, plan, **kwargs)

    return _make


# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))
