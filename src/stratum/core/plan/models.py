# src/stratum/core/plan/models.py
"""Plan entry types: Change, Tag, and Dependency references.

Leaf module - no intra-package imports (prevents import cycles).

Entry ids are content hashes computed ONCE, at construction, from the
entry's content plus the id of the entry immediately before it. Editing any
earlier entry therefore changes every later id, which is what makes the
plan tamper-evident. Fields that are derived from later entries (tags
attached to a change, rework tags) are deliberately NOT part of the hash.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from stratum.contracts.registry import Identity
from stratum.core.canonical import stable_hash

# Change and tag names: word characters plus . + - inside, never at the ends.
NAME_PATTERN = r"\w(?:[\w.+\-]*\w)?"
_NAME_RE = re.compile(rf"^{NAME_PATTERN}$")

_DEPENDENCY_RE = re.compile(
    rf"^(?P<conflict>!)?(?:(?P<project>{NAME_PATTERN}):)?(?P<change>{NAME_PATTERN})?(?:@(?P<tag>{NAME_PATTERN}))?$"
)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Symbolic tags resolved by Plan.get(); may not be declared in a plan.
HEAD_TAG = "HEAD"
ROOT_TAG = "ROOT"
RESERVED_TAGS = frozenset({HEAD_TAG, ROOT_TAG})


def is_valid_name(name: str) -> bool:
    """Whether name is a legal change or tag name."""
    return bool(_NAME_RE.match(name))


def format_timestamp(value: datetime) -> str:
    """Render a plan timestamp (always UTC, second precision)."""
    return value.astimezone(UTC).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a plan timestamp.

    Raises:
        ValueError: If value is not YYYY-MM-DDTHH:MM:SSZ
    """
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=UTC)


def normalize_planned_at(value: datetime) -> datetime:
    """Truncate to what the plan text can represent, so ids survive a round-trip."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).replace(microsecond=0)


@dataclass(frozen=True, slots=True)
class Dependency:
    """A requires/conflicts reference.

    Token grammar: [!][project:]name[@tag] or [!][project:]@tag.
    project None means "same project as the declaring change".
    """

    project: str | None
    change: str | None
    tag: str | None
    conflict: bool = False

    @classmethod
    def parse(cls, token: str) -> Dependency:
        """Parse a dependency token.

        Raises:
            ValueError: If the token is malformed
        """
        match = _DEPENDENCY_RE.match(token)
        if match is None or (match["change"] is None and match["tag"] is None):
            raise ValueError(f"Malformed dependency reference '{token}'")
        if match["tag"] in RESERVED_TAGS:
            raise ValueError(f"Dependency '{token}' may not reference symbolic tag @{match['tag']}")
        return cls(
            project=match["project"],
            change=match["change"],
            tag=match["tag"],
            conflict=match["conflict"] is not None,
        )

    @property
    def key(self) -> str:
        """Reference without project or conflict marker ("name", "name@tag", "@tag")."""
        key = self.change or ""
        if self.tag is not None:
            key += f"@{self.tag}"
        return key

    def is_foreign(self, home_project: str) -> bool:
        return self.project is not None and self.project != home_project

    def qualified(self, home_project: str) -> str:
        """Reference qualified with its project ("project:key")."""
        return f"{self.project or home_project}:{self.key}"

    def __str__(self) -> str:
        prefix = "!" if self.conflict else ""
        project = f"{self.project}:" if self.project is not None else ""
        return f"{prefix}{project}{self.key}"


def compute_change_id(
    *,
    project: str,
    uri: str | None,
    name: str,
    parent_id: str | None,
    planner: Identity,
    planned_at: datetime,
    requires: tuple[Dependency, ...],
    conflicts: tuple[Dependency, ...],
    note: str,
) -> str:
    """Content hash of a change, chained to its predecessor."""
    payload: dict[str, Any] = {
        "type": "change",
        "project": project,
        "uri": uri,
        "name": name,
        "parent": parent_id,
        "planner_name": planner.name,
        "planner_email": planner.email,
        "planned_at": planned_at,
        "requires": [str(dep) for dep in requires],
        "conflicts": [str(dep) for dep in conflicts],
        "note": note,
    }
    return stable_hash(payload)


def compute_tag_id(
    *,
    project: str,
    uri: str | None,
    name: str,
    parent_id: str | None,
    change_id: str,
    planner: Identity,
    planned_at: datetime,
    note: str,
) -> str:
    """Content hash of a tag, chained to its predecessor and bound to its change."""
    payload: dict[str, Any] = {
        "type": "tag",
        "project": project,
        "uri": uri,
        "name": name,
        "parent": parent_id,
        "change": change_id,
        "planner_name": planner.name,
        "planner_email": planner.email,
        "planned_at": planned_at,
        "note": note,
    }
    return stable_hash(payload)


@dataclass(frozen=True, slots=True)
class Change:
    """One schema modification entry in a plan.

    Immutable. Use Change.create() so the id is computed from content;
    the raw constructor exists for deserialization and for tests that need
    to build deliberately corrupt entries.
    """

    id: str
    project: str
    name: str
    note: str
    planned_at: datetime
    planner: Identity
    parent_id: str | None
    uri: str | None = None
    requires: tuple[Dependency, ...] = ()
    conflicts: tuple[Dependency, ...] = ()
    tags: tuple[str, ...] = ()
    rework_tag: str | None = None

    @classmethod
    def create(
        cls,
        *,
        project: str,
        name: str,
        planner: Identity,
        planned_at: datetime,
        parent_id: str | None,
        uri: str | None = None,
        requires: tuple[Dependency, ...] = (),
        conflicts: tuple[Dependency, ...] = (),
        note: str = "",
    ) -> Change:
        planned_at = normalize_planned_at(planned_at)
        change_id = compute_change_id(
            project=project,
            uri=uri,
            name=name,
            parent_id=parent_id,
            planner=planner,
            planned_at=planned_at,
            requires=requires,
            conflicts=conflicts,
            note=note,
        )
        return cls(
            id=change_id,
            project=project,
            name=name,
            note=note,
            planned_at=planned_at,
            planner=planner,
            parent_id=parent_id,
            uri=uri,
            requires=requires,
            conflicts=conflicts,
        )

    def expected_id(self) -> str:
        """Recompute the id from content (used only by chain verification)."""
        return compute_change_id(
            project=self.project,
            uri=self.uri,
            name=self.name,
            parent_id=self.parent_id,
            planner=self.planner,
            planned_at=self.planned_at,
            requires=self.requires,
            conflicts=self.conflicts,
            note=self.note,
        )

    @property
    def script_name(self) -> str:
        """Base file name of this change's scripts (name@tag for reworked instances)."""
        if self.rework_tag is not None:
            return f"{self.name}@{self.rework_tag}"
        return self.name

    def format_name_with_tags(self) -> str:
        return format_name_with_tags(self)

    def __str__(self) -> str:
        return self.format_name_with_tags()


@dataclass(frozen=True, slots=True)
class Tag:
    """A named, hashed pointer to a ledger position (the change before it)."""

    id: str
    project: str
    name: str
    change_id: str
    note: str
    planned_at: datetime
    planner: Identity
    parent_id: str | None
    uri: str | None = None

    @classmethod
    def create(
        cls,
        *,
        project: str,
        name: str,
        change_id: str,
        planner: Identity,
        planned_at: datetime,
        parent_id: str | None,
        uri: str | None = None,
        note: str = "",
    ) -> Tag:
        planned_at = normalize_planned_at(planned_at)
        tag_id = compute_tag_id(
            project=project,
            uri=uri,
            name=name,
            parent_id=parent_id,
            change_id=change_id,
            planner=planner,
            planned_at=planned_at,
            note=note,
        )
        return cls(
            id=tag_id,
            project=project,
            name=name,
            change_id=change_id,
            note=note,
            planned_at=planned_at,
            planner=planner,
            parent_id=parent_id,
            uri=uri,
        )

    def expected_id(self) -> str:
        return compute_tag_id(
            project=self.project,
            uri=self.uri,
            name=self.name,
            parent_id=self.parent_id,
            change_id=self.change_id,
            planner=self.planner,
            planned_at=self.planned_at,
            note=self.note,
        )

    def format_name(self) -> str:
        return f"@{self.name}"

    def __str__(self) -> str:
        return self.format_name()


type PlanEntry = Change | Tag


def format_name_with_tags(change: Change) -> str:
    """Name plus any tags attached at that position, e.g. "users @v1.0 @beta"."""
    return " ".join([change.name, *(f"@{tag}" for tag in change.tags)])
