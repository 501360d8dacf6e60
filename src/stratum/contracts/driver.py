"""Driver protocol: the per-backend capability the Engine runs against.

One implementation exists per supported database family (see
engine/driver.py for the SQLAlchemy implementation). The Engine core never
branches on backend identity - it only calls this interface.

Transaction model:
    begin() opens a transaction scope. run_script(), record_change(),
    remove_change() and record_event() all execute inside the open scope.
    commit() and rollback() close it. Exactly one scope may be open at a time.
"""

from collections.abc import Mapping
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Protocol, runtime_checkable

from stratum.contracts.registry import LockInfo, RegistryEntry, RegistryEvent


@runtime_checkable
class Driver(Protocol):
    """Protocol for database drivers."""

    @property
    def in_transaction(self) -> bool:
        """Whether a transaction scope is currently open."""
        ...

    def begin(self) -> None:
        """Open a transaction scope.

        Raises:
            RuntimeError: If a scope is already open
        """
        ...

    def commit(self) -> None:
        """Commit and close the open transaction scope."""
        ...

    def rollback(self) -> None:
        """Roll back and close the open transaction scope."""
        ...

    def run_script(self, path: Path, variables: Mapping[str, str]) -> str:
        """Execute a change script inside the open scope.

        Args:
            path: Script file to execute
            variables: Substitutions available to the script

        Returns:
            Driver output (may be empty)

        Raises:
            ScriptExecutionError: If the script is missing or fails
        """
        ...

    def record_change(self, entry: RegistryEntry) -> RegistryEntry:
        """Record a deployed change; returns the entry with deploy_seq assigned."""
        ...

    def remove_change(self, project: str, change_id: str) -> None:
        """Remove a deployed change from the registry."""
        ...

    def record_event(self, event: RegistryEvent) -> None:
        """Append an event to the registry event log."""
        ...

    def ensure_project(self, project: str, uri: str | None, creator: str) -> None:
        """Register the project if the registry has not seen it yet."""
        ...

    def deployed_changes(self, project: str) -> list[RegistryEntry]:
        """Deployed changes for a project, in deploy order."""
        ...

    def is_deployed(self, project: str, change_id: str) -> bool:
        """Whether the given change is currently deployed."""
        ...

    def dependents_of(self, project: str) -> list[RegistryEntry]:
        """Deployed changes in OTHER projects with a requires reference into project."""
        ...

    def lock(self, holder: str) -> AbstractContextManager[None]:
        """Hold the registry lock for the duration of the context.

        Raises:
            RegistryLockedError: If another holder has the lock
        """
        ...

    def lock_holder(self) -> LockInfo | None:
        """Current lock holder, or None if the registry is unlocked."""
        ...

    def force_unlock(self) -> LockInfo | None:
        """Remove a lock left behind by a process that died holding it.

        Returns the removed lock, or None if the registry was not locked.
        """
        ...
