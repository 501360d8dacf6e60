# src/stratum/core/registry/repository.py
"""Repository layer for registry records.

Handles the seam between SQLAlchemy rows (strings, JSON text) and
contract objects (Identity, EventType, tuples). This is NOT a trust
boundary: the registry tables are our data, so malformed rows crash.

Every query method takes an explicit Connection so callers decide which
transaction it runs in.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Connection, delete, func, insert, select
from sqlalchemy.engine import Row as SARow
from sqlalchemy.exc import IntegrityError as SAIntegrityError

from stratum.contracts.enums import EventType
from stratum.contracts.errors import RegistryLockedError
from stratum.contracts.registry import Identity, LockInfo, RegistryEntry, RegistryEvent
from stratum.core.canonical import canonical_json
from stratum.core.plan.models import Dependency
from stratum.core.registry.schema import (
    changes_table,
    events_table,
    locks_table,
    projects_table,
)

REGISTRY_LOCK_NAME = "registry"


def _aware(value: datetime) -> datetime:
    """SQLite returns naive datetimes; stored values are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class ChangeRepository:
    """Repository for stratum_changes rows."""

    def load(self, row: SARow[Any]) -> RegistryEntry:
        return RegistryEntry(
            project=row.project,
            change_id=row.change_id,
            name=row.name,
            note=row.note,
            committer=Identity(row.committer_name, row.committer_email),
            planner=Identity(row.planner_name, row.planner_email),
            planned_at=_aware(row.planned_at),
            committed_at=_aware(row.committed_at),
            tags=tuple(json.loads(row.tags_json)),
            requires=tuple(json.loads(row.requires_json)),
            conflicts=tuple(json.loads(row.conflicts_json)),
            deploy_seq=row.deploy_seq,
        )


class EventRepository:
    """Repository for stratum_events rows."""

    def load(self, row: SARow[Any]) -> RegistryEvent:
        return RegistryEvent(
            event=EventType(row.event),  # Convert HERE
            project=row.project,
            change_id=row.change_id,
            name=row.name,
            committer=Identity(row.committer_name, row.committer_email),
            committed_at=_aware(row.committed_at),
            tags=tuple(json.loads(row.tags_json)),
        )


class RegistryRepository:
    """Queries and writes against the registry tables."""

    def __init__(self) -> None:
        self._changes = ChangeRepository()
        self._events = EventRepository()

    # === Projects ===

    def ensure_project(self, conn: Connection, project: str, uri: str | None, creator: str) -> bool:
        """Insert the project row if missing. Returns True if it was inserted."""
        existing = conn.execute(select(projects_table.c.project).where(projects_table.c.project == project)).first()
        if existing is not None:
            return False
        conn.execute(
            insert(projects_table).values(
                project=project,
                uri=uri,
                created_at=datetime.now(UTC),
                creator=creator,
            )
        )
        return True

    # === Changes ===

    def insert_change(self, conn: Connection, entry: RegistryEntry) -> RegistryEntry:
        """Insert a deployed change, assigning the next deploy_seq for its project."""
        current = conn.execute(
            select(func.max(changes_table.c.deploy_seq)).where(changes_table.c.project == entry.project)
        ).scalar_one()
        seq = (current or 0) + 1
        conn.execute(
            insert(changes_table).values(
                project=entry.project,
                change_id=entry.change_id,
                name=entry.name,
                note=entry.note,
                committer_name=entry.committer.name,
                committer_email=entry.committer.email,
                planner_name=entry.planner.name,
                planner_email=entry.planner.email,
                planned_at=entry.planned_at,
                committed_at=entry.committed_at,
                tags_json=canonical_json(list(entry.tags)),
                requires_json=canonical_json(list(entry.requires)),
                conflicts_json=canonical_json(list(entry.conflicts)),
                deploy_seq=seq,
            )
        )
        return RegistryEntry(
            project=entry.project,
            change_id=entry.change_id,
            name=entry.name,
            note=entry.note,
            committer=entry.committer,
            planner=entry.planner,
            planned_at=entry.planned_at,
            committed_at=entry.committed_at,
            tags=entry.tags,
            requires=entry.requires,
            conflicts=entry.conflicts,
            deploy_seq=seq,
        )

    def delete_change(self, conn: Connection, project: str, change_id: str) -> None:
        conn.execute(
            delete(changes_table).where(
                changes_table.c.project == project,
                changes_table.c.change_id == change_id,
            )
        )

    def select_changes(self, conn: Connection, project: str) -> list[RegistryEntry]:
        """Deployed changes for a project, ordered by deploy_seq."""
        rows = conn.execute(
            select(changes_table).where(changes_table.c.project == project).order_by(changes_table.c.deploy_seq)
        ).fetchall()
        return [self._changes.load(row) for row in rows]

    def change_exists(self, conn: Connection, project: str, change_id: str) -> bool:
        row = conn.execute(
            select(changes_table.c.change_id).where(
                changes_table.c.project == project,
                changes_table.c.change_id == change_id,
            )
        ).first()
        return row is not None

    def select_dependents(self, conn: Connection, project: str) -> list[RegistryEntry]:
        """Deployed changes in other projects with a requires token naming project.

        Tokens are returned unresolved; the caller resolves them against its plan.
        """
        rows = conn.execute(
            select(changes_table).where(changes_table.c.project != project).order_by(changes_table.c.project, changes_table.c.deploy_seq)
        ).fetchall()
        dependents: list[RegistryEntry] = []
        for row in rows:
            entry = self._changes.load(row)
            for token in entry.requires:
                dep = Dependency.parse(token)
                if dep.project == project and not dep.conflict:
                    dependents.append(entry)
                    break
        return dependents

    # === Events ===

    def insert_event(self, conn: Connection, event: RegistryEvent) -> None:
        conn.execute(
            insert(events_table).values(
                event=event.event.value,
                project=event.project,
                change_id=event.change_id,
                name=event.name,
                committer_name=event.committer.name,
                committer_email=event.committer.email,
                committed_at=event.committed_at,
                tags_json=canonical_json(list(event.tags)),
            )
        )

    def select_events(self, conn: Connection, project: str) -> list[RegistryEvent]:
        """Events for a project, oldest first."""
        rows = conn.execute(
            select(events_table).where(events_table.c.project == project).order_by(events_table.c.event_id)
        ).fetchall()
        return [self._events.load(row) for row in rows]

    # === Lock ===

    def acquire_lock(self, conn: Connection, holder: str) -> LockInfo:
        """Insert the lock row.

        Raises:
            RegistryLockedError: If the row already exists
        """
        acquired_at = datetime.now(UTC)
        try:
            conn.execute(insert(locks_table).values(name=REGISTRY_LOCK_NAME, holder=holder, acquired_at=acquired_at))
        except SAIntegrityError:
            raise RegistryLockedError("another operation") from None
        return LockInfo(holder=holder, acquired_at=acquired_at)

    def release_lock(self, conn: Connection) -> None:
        conn.execute(delete(locks_table).where(locks_table.c.name == REGISTRY_LOCK_NAME))

    def force_release_lock(self, conn: Connection) -> LockInfo | None:
        """Delete the lock row whoever holds it. Returns the removed lock, if any."""
        current = self.select_lock(conn)
        if current is not None:
            self.release_lock(conn)
        return current

    def select_lock(self, conn: Connection) -> LockInfo | None:
        row = conn.execute(select(locks_table).where(locks_table.c.name == REGISTRY_LOCK_NAME)).first()
        if row is None:
            return None
        return LockInfo(holder=row.holder, acquired_at=_aware(row.acquired_at))
