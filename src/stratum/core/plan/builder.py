# src/stratum/core/plan/builder.py
"""Incremental, validating plan construction.

Both the text parser and Plan.append_change()/append_tag() go through
PlanBuilder, so the ledger rules (name uniqueness between tags, tag
placement, reserved names, dependency syntax) live in exactly one place.
Builder methods raise ValueError; callers translate that into
PlanSyntaxError with whatever location context they have.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING

from stratum.contracts.registry import Identity
from stratum.core.plan.models import (
    RESERVED_TAGS,
    Change,
    Dependency,
    PlanEntry,
    Tag,
    is_valid_name,
)

if TYPE_CHECKING:
    from stratum.core.plan.plan import Plan

DEFAULT_SYNTAX_VERSION = "1.0.0"

_FORBIDDEN_PLANNER_CHARS = frozenset("<>#\n\r")


class PlanBuilder:
    """Accumulates chained entries for one project."""

    def __init__(
        self,
        project: str,
        *,
        uri: str | None = None,
        syntax_version: str = DEFAULT_SYNTAX_VERSION,
        pragmas: dict[str, str] | None = None,
    ) -> None:
        if not is_valid_name(project):
            raise ValueError(f"Invalid project name '{project}'")
        self.project = project
        self.uri = uri
        self.syntax_version = syntax_version
        self.pragmas = dict(pragmas or {})
        self._entries: list[PlanEntry] = []
        self._last_change: Change | None = None
        # Change names planned since the most recent tag (reuse requires a tag in between)
        self._active_names: set[str] = set()
        self._tag_names: set[str] = set()

    @classmethod
    def from_plan(cls, plan: Plan) -> PlanBuilder:
        """Seed a builder with an existing plan's entries (ids are kept, not recomputed)."""
        builder = cls(
            plan.project,
            uri=plan.uri,
            syntax_version=plan.syntax_version,
            pragmas=plan.pragmas,
        )
        for entry in plan.entries():
            builder._admit(entry)
        return builder

    @property
    def last_id(self) -> str | None:
        return self._entries[-1].id if self._entries else None

    def add_change(
        self,
        name: str,
        *,
        planner: Identity,
        planned_at: datetime,
        dependencies: Iterable[Dependency] = (),
        note: str = "",
    ) -> Change:
        """Append a change chained to the current last entry.

        Args:
            name: Change name
            planner: Who planned the change
            planned_at: When it was planned
            dependencies: requires and conflicts references, in declaration order
            note: Free-text note (single line)

        Raises:
            ValueError: On any ledger rule violation
        """
        if not is_valid_name(name):
            raise ValueError(f"Invalid change name '{name}'")
        if name in self._active_names:
            raise ValueError(f"Change '{name}' is already planned; tag the plan before reworking it")
        planner = self._check_planner(planner)
        note = self._check_note(note)

        requires: list[Dependency] = []
        conflicts: list[Dependency] = []
        seen: set[str] = set()
        for dep in dependencies:
            rendered = str(dep)
            if rendered in seen:
                raise ValueError(f"Duplicate dependency '{rendered}' on change '{name}'")
            seen.add(rendered)
            if dep.project in (None, self.project) and dep.change == name and dep.tag is None:
                raise ValueError(f"Change '{name}' cannot depend on itself")
            (conflicts if dep.conflict else requires).append(dep)

        change = Change.create(
            project=self.project,
            uri=self.uri,
            name=name,
            planner=planner,
            planned_at=planned_at,
            parent_id=self.last_id,
            requires=tuple(requires),
            conflicts=tuple(conflicts),
            note=note,
        )
        self._admit(change)
        return change

    def add_tag(
        self,
        name: str,
        *,
        planner: Identity,
        planned_at: datetime,
        note: str = "",
    ) -> Tag:
        """Append a tag pointing at the most recent change.

        Raises:
            ValueError: On any ledger rule violation
        """
        if not is_valid_name(name):
            raise ValueError(f"Invalid tag name '@{name}'")
        if name in RESERVED_TAGS:
            raise ValueError(f"Tag name '@{name}' is reserved")
        if self._last_change is None:
            raise ValueError(f"Tag '@{name}' declared before any change")
        if name in self._tag_names:
            raise ValueError(f"Tag '@{name}' already exists")
        planner = self._check_planner(planner)
        note = self._check_note(note)

        tag = Tag.create(
            project=self.project,
            uri=self.uri,
            name=name,
            change_id=self._last_change.id,
            planner=planner,
            planned_at=planned_at,
            parent_id=self.last_id,
            note=note,
        )
        self._admit(tag)
        return tag

    def build(self) -> Plan:
        from stratum.core.plan.plan import Plan

        return Plan(
            self.project,
            self._entries,
            uri=self.uri,
            syntax_version=self.syntax_version,
            pragmas=self.pragmas,
        )

    def _admit(self, entry: PlanEntry) -> None:
        self._entries.append(entry)
        if isinstance(entry, Change):
            self._last_change = entry
            self._active_names.add(entry.name)
        else:
            self._tag_names.add(entry.name)
            self._active_names.clear()

    @staticmethod
    def _check_planner(planner: Identity) -> Identity:
        """Surrounding whitespace is dropped; the plan line format cannot keep it."""
        if not planner.name.strip() or _FORBIDDEN_PLANNER_CHARS.intersection(planner.name):
            raise ValueError(f"Invalid planner name '{planner.name}'")
        if not planner.email.strip() or _FORBIDDEN_PLANNER_CHARS.intersection(planner.email):
            raise ValueError(f"Invalid planner email '{planner.email}'")
        return Identity(planner.name.strip(), planner.email.strip())

    @staticmethod
    def _check_note(note: str) -> str:
        if "\n" in note or "\r" in note:
            raise ValueError("Notes must be a single line")
        return note.strip()
