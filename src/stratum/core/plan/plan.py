# src/stratum/core/plan/plan.py
"""Plan: the ordered, hash-chained ledger of one project's changes and tags.

A Plan is immutable. append_change() and append_tag() return a new Plan;
the original is never modified.

Lookup keys accepted by Plan.get():
    <id>            exact change or tag id
    name            latest instance of a (possibly reworked) change
    name@tag        instance of name as of tag
    @tag            a declared tag
    @HEAD / @ROOT   last / first change
Any of these may be prefixed with "<project>:" when it names this project.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from pathlib import Path

from stratum.contracts.errors import ChangeNotFoundError, IntegrityError, PlanSyntaxError
from stratum.contracts.registry import Identity
from stratum.core.plan.models import (
    HEAD_TAG,
    ROOT_TAG,
    Change,
    Dependency,
    PlanEntry,
    Tag,
)


class Plan:
    """Ordered ledger of changes and tags for one project."""

    def __init__(
        self,
        project: str,
        entries: Iterable[PlanEntry],
        *,
        uri: str | None = None,
        syntax_version: str = "1.0.0",
        pragmas: dict[str, str] | None = None,
    ) -> None:
        self.project = project
        self.uri = uri
        self.syntax_version = syntax_version
        self.pragmas: dict[str, str] = dict(pragmas or {})

        raw = list(entries)
        self._entries: list[PlanEntry] = self._decorate(raw)
        self._changes: list[Change] = [e for e in self._entries if isinstance(e, Change)]
        self._tags: list[Tag] = [e for e in self._entries if isinstance(e, Tag)]

        self._by_id: dict[str, PlanEntry] = {e.id: e for e in self._entries}
        self._positions: dict[str, int] = {c.id: i for i, c in enumerate(self._changes)}
        self._tags_by_name: dict[str, Tag] = {t.name: t for t in self._tags}
        self._instances: dict[str, list[Change]] = {}
        for change in self._changes:
            self._instances.setdefault(change.name, []).append(change)

    @classmethod
    def from_file(cls, path: Path | str, *, default_project: str | None = None) -> Plan:
        """Read and parse a plan file (UTF-8).

        Raises:
            PlanSyntaxError: If the file is not valid UTF-8 or not a valid plan
        """
        from stratum.core.plan.parser import parse_plan_bytes

        return parse_plan_bytes(Path(path).read_bytes(), default_project=default_project)

    @staticmethod
    def _decorate(entries: list[PlanEntry]) -> list[PlanEntry]:
        """Attach tag names and rework tags to changes (derived, never hashed)."""
        attached: dict[str, list[str]] = {}
        last_change_id: str | None = None
        for entry in entries:
            if isinstance(entry, Change):
                last_change_id = entry.id
            elif last_change_id is not None:
                attached.setdefault(last_change_id, []).append(entry.name)

        # Scan backwards: the most recent tag seen is the first tag after the current entry
        rework: dict[str, str] = {}
        names_seen_later: set[str] = set()
        next_tag: str | None = None
        for entry in reversed(entries):
            if isinstance(entry, Tag):
                next_tag = entry.name
                continue
            if entry.name in names_seen_later and next_tag is not None:
                rework[entry.id] = next_tag
            names_seen_later.add(entry.name)

        decorated: list[PlanEntry] = []
        for entry in entries:
            if isinstance(entry, Change):
                entry = dataclasses.replace(
                    entry,
                    tags=tuple(attached.get(entry.id, ())),
                    rework_tag=rework.get(entry.id),
                )
            decorated.append(entry)
        return decorated

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def changes(self) -> Iterator[Change]:
        """Changes in plan order. Each call returns a fresh iterator."""
        return iter(self._changes)

    def tags(self) -> Iterator[Tag]:
        return iter(self._tags)

    def entries(self) -> Iterator[PlanEntry]:
        """Changes and tags interleaved in ledger order."""
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._changes)

    def __contains__(self, change_id: object) -> bool:
        return change_id in self._positions

    def __repr__(self) -> str:
        return f"Plan(project={self.project!r}, changes={len(self._changes)}, tags={len(self._tags)})"

    @property
    def first_change(self) -> Change | None:
        return self._changes[0] if self._changes else None

    @property
    def last_change(self) -> Change | None:
        return self._changes[-1] if self._changes else None

    @property
    def last_entry(self) -> PlanEntry | None:
        return self._entries[-1] if self._entries else None

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, key: str) -> PlanEntry | None:
        """Resolve a lookup key to a change or tag, or None."""
        if key in self._by_id:
            return self._by_id[key]

        if ":" in key:
            project, _, key = key.partition(":")
            if project != self.project:
                return None

        if key.startswith("@"):
            tag_name = key[1:]
            if tag_name == HEAD_TAG:
                return self.last_change
            if tag_name == ROOT_TAG:
                return self.first_change
            return self._tags_by_name.get(tag_name)

        if "@" in key:
            name, _, tag_name = key.partition("@")
            return self.instance_as_of(name, tag_name)

        instances = self._instances.get(key)
        return instances[-1] if instances else None

    def get_change(self, key: str) -> Change:
        """Resolve a lookup key to a change; tags resolve to the change they point at.

        Raises:
            ChangeNotFoundError: If the key does not resolve
        """
        entry = self.get(key)
        if isinstance(entry, Tag):
            entry = self._by_id.get(entry.change_id)
        if not isinstance(entry, Change):
            raise ChangeNotFoundError(key, self.project)
        return entry

    def instance_as_of(self, name: str, tag_name: str) -> Change | None:
        """Latest instance of name at or before the change the tag points at."""
        if tag_name == HEAD_TAG:
            limit = len(self._changes) - 1
        elif tag_name == ROOT_TAG:
            limit = 0
        else:
            tag = self._tags_by_name.get(tag_name)
            if tag is None or tag.change_id not in self._positions:
                return None
            limit = self._positions[tag.change_id]
        return self.latest_instance_before(name, limit + 1)

    def latest_instance_before(self, name: str, position: int) -> Change | None:
        """Latest instance of name whose plan position is strictly less than position."""
        found: Change | None = None
        for change in self._instances.get(name, ()):
            if self._positions[change.id] >= position:
                break
            found = change
        return found

    def instances(self, name: str) -> list[Change]:
        """All instances of a change name, oldest first."""
        return list(self._instances.get(name, ()))

    def index_of(self, change_id: str) -> int:
        """Zero-based position of a change in plan order.

        Raises:
            ChangeNotFoundError: If the id is not a change in this plan
        """
        try:
            return self._positions[change_id]
        except KeyError:
            raise ChangeNotFoundError(change_id, self.project) from None

    def change_at(self, index: int) -> Change:
        return self._changes[index]

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def verify_chain(self) -> None:
        """Recompute every id and parent link.

        Raises:
            IntegrityError: Naming the first entry that does not reproduce
        """
        previous_id: str | None = None
        last_change_id: str | None = None
        for entry in self._entries:
            if entry.parent_id != previous_id:
                raise IntegrityError(
                    f"Entry '{entry}' is chained to {entry.parent_id!r}, expected {previous_id!r}",
                    entry_id=entry.id,
                    entry_name=str(entry),
                )
            if isinstance(entry, Tag) and entry.change_id != last_change_id:
                raise IntegrityError(
                    f"Tag '{entry}' points at {entry.change_id!r}, expected {last_change_id!r}",
                    entry_id=entry.id,
                    entry_name=str(entry),
                )
            expected = entry.expected_id()
            if expected != entry.id:
                raise IntegrityError(
                    f"Entry '{entry}' has id {entry.id}, but its content hashes to {expected}",
                    entry_id=entry.id,
                    entry_name=str(entry),
                )
            previous_id = entry.id
            if isinstance(entry, Change):
                last_change_id = entry.id

    # ------------------------------------------------------------------
    # Mutation (returns new plans)
    # ------------------------------------------------------------------

    def append_change(
        self,
        name: str,
        *,
        planner: Identity,
        planned_at: datetime | None = None,
        requires: Iterable[str] = (),
        conflicts: Iterable[str] = (),
        note: str = "",
    ) -> Plan:
        """Return a new plan with a change appended.

        requires and conflicts are dependency tokens ("name", "proj:name",
        "name@tag"); conflict tokens may omit the leading "!".

        Raises:
            PlanSyntaxError: If the change violates a ledger rule
        """
        from stratum.core.plan.builder import PlanBuilder

        builder = PlanBuilder.from_plan(self)
        try:
            dependencies = [Dependency.parse(token) for token in requires]
            for token in conflicts:
                dependencies.append(Dependency.parse(token if token.startswith("!") else f"!{token}"))
            builder.add_change(
                name,
                planner=planner,
                planned_at=planned_at or datetime.now(UTC),
                dependencies=dependencies,
                note=note,
            )
        except ValueError as exc:
            raise PlanSyntaxError(str(exc)) from exc
        return builder.build()

    def append_tag(
        self,
        name: str,
        *,
        planner: Identity,
        planned_at: datetime | None = None,
        note: str = "",
    ) -> Plan:
        """Return a new plan with a tag on the current last change.

        Raises:
            PlanSyntaxError: If the tag violates a ledger rule
        """
        from stratum.core.plan.builder import PlanBuilder

        builder = PlanBuilder.from_plan(self)
        try:
            builder.add_tag(name.removeprefix("@"), planner=planner, planned_at=planned_at or datetime.now(UTC), note=note)
        except ValueError as exc:
            raise PlanSyntaxError(str(exc)) from exc
        return builder.build()
