"""Registry record contracts.

These are the shapes persisted in the registry tables. They are produced by
the Engine and consumed by Driver implementations.
"""

from dataclasses import dataclass, field
from datetime import datetime

from stratum.contracts.enums import EventType


@dataclass(frozen=True, slots=True)
class Identity:
    """A person acting on the plan or the registry (planner or committer)."""

    name: str
    email: str

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"


@dataclass(frozen=True, slots=True)
class RegistryEntry:
    """One deployed change as recorded in stratum_changes.

    Keyed by (project, change_id). deploy_seq is assigned by the driver when
    the entry is recorded and orders deployments within a project.
    """

    project: str
    change_id: str
    name: str
    note: str
    committer: Identity
    planner: Identity
    planned_at: datetime
    committed_at: datetime
    tags: tuple[str, ...] = ()
    requires: tuple[str, ...] = ()
    conflicts: tuple[str, ...] = ()
    deploy_seq: int | None = None


@dataclass(frozen=True, slots=True)
class RegistryEvent:
    """One row of the append-only stratum_events log."""

    event: EventType
    project: str
    change_id: str
    name: str
    committer: Identity
    committed_at: datetime
    tags: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class LockInfo:
    """Current holder of the registry lock."""

    holder: str
    acquired_at: datetime
