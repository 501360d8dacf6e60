# src/stratum/core/plan/parser.py
"""Plan text format: parsing and serialization.

Line oriented:

    %syntax-version=1.0.0
    %project=flipr
    %uri=https://example.com/flipr/

    users 2024-01-01T10:00:00Z Ann Planner <ann@example.com> # Creates users.
    flips [users] 2024-01-02T10:00:00Z Ann Planner <ann@example.com>
    @v1.0 2024-01-03T10:00:00Z Ann Planner <ann@example.com> # Release 1.0.

Blank lines and lines starting with '#' are ignored. Pragmas must precede
the first entry. format_plan() writes text that parses back to identical ids.
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path

from stratum.contracts.errors import PlanSyntaxError
from stratum.contracts.registry import Identity
from stratum.core.plan.builder import DEFAULT_SYNTAX_VERSION, PlanBuilder
from stratum.core.plan.models import (
    Change,
    Dependency,
    format_timestamp,
    parse_timestamp,
)
from stratum.core.plan.plan import Plan

_PRAGMA_RE = re.compile(r"^%\s*(?P<key>[\w-]+)\s*=\s*(?P<value>.*?)\s*$")

# Body, then an optional note introduced by whitespace + '#'
_NOTE_RE = re.compile(r"^(?P<body>.*?)(?:\s+#\s?(?P<note>.*))?$")

_PLANNER = r"(?P<timestamp>\S+)\s+(?P<planner>[^<>]+?)\s*<(?P<email>[^<>]*)>"
_TAG_RE = re.compile(rf"^@(?P<name>\S+)\s+{_PLANNER}$")
_CHANGE_RE = re.compile(rf"^(?P<name>[^\s\[\]@]+)\s*(?:\[(?P<deps>[^\[\]]*)\])?\s+{_PLANNER}$")

# " :dep" tokens; dependencies belong in one bracketed list
_BARE_DEP_RE = re.compile(r"\s:\S")

# Pragmas with a dedicated Plan attribute; everything else is kept verbatim in Plan.pragmas
_KNOWN_PRAGMAS = ("syntax-version", "project", "uri")


def parse_plan(text: str, *, default_project: str | None = None) -> Plan:
    """Parse plan text into a Plan.

    Pure transform: no file system or database access.

    Args:
        text: Plan file content
        default_project: Project name to use when the text has no %project pragma

    Raises:
        PlanSyntaxError: On any malformed line or ledger rule violation
    """
    pragmas: dict[str, str] = {}
    builder: PlanBuilder | None = None

    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        if line.startswith("%"):
            if builder is not None:
                raise PlanSyntaxError("Pragma after first entry", line_number=line_number, line=raw_line)
            match = _PRAGMA_RE.match(line)
            if match is None:
                raise PlanSyntaxError("Malformed pragma", line_number=line_number, line=raw_line)
            pragmas[match["key"]] = match["value"]
            continue

        if not (line[0] == "@" or line[0].isalnum() or line[0] == "_"):
            raise PlanSyntaxError("Unknown directive", line_number=line_number, line=raw_line)

        if builder is None:
            builder = _start_builder(pragmas, default_project, line_number, raw_line)

        try:
            _parse_entry(builder, line)
        except ValueError as exc:
            raise PlanSyntaxError(str(exc), line_number=line_number, line=raw_line) from None

    if builder is None:
        builder = _start_builder(pragmas, default_project, None, None)
    return builder.build()


def parse_plan_bytes(content: bytes, *, default_project: str | None = None) -> Plan:
    """Decode as strict UTF-8, then parse.

    Raises:
        PlanSyntaxError: If the content is not valid UTF-8 or not a valid plan
    """
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise PlanSyntaxError(f"Plan is not valid UTF-8: {exc.reason} at byte {exc.start}") from exc
    return parse_plan(text, default_project=default_project)


def _start_builder(
    pragmas: dict[str, str],
    default_project: str | None,
    line_number: int | None,
    line: str | None,
) -> PlanBuilder:
    project = pragmas.get("project") or default_project
    if not project:
        raise PlanSyntaxError("Missing %project pragma", line_number=line_number, line=line)
    extra = {k: v for k, v in pragmas.items() if k not in _KNOWN_PRAGMAS}
    try:
        return PlanBuilder(
            project,
            uri=pragmas.get("uri") or None,
            syntax_version=pragmas.get("syntax-version", DEFAULT_SYNTAX_VERSION),
            pragmas=extra,
        )
    except ValueError as exc:
        raise PlanSyntaxError(str(exc), line_number=line_number, line=line) from None


def _parse_entry(builder: PlanBuilder, line: str) -> None:
    split = _NOTE_RE.match(line)
    assert split is not None  # pattern matches any single line
    body = split["body"].strip()
    note = (split["note"] or "").strip()

    if body.startswith("@"):
        match = _TAG_RE.match(body)
        if match is None:
            raise ValueError(_malformed("tag", body))
        builder.add_tag(
            match["name"],
            planner=Identity(match["planner"].strip(), match["email"]),
            planned_at=_timestamp(match["timestamp"]),
            note=note,
        )
        return

    match = _CHANGE_RE.match(body)
    if match is None:
        raise ValueError(_malformed("change", body))
    dependencies = [Dependency.parse(token) for token in (match["deps"] or "").split()]
    builder.add_change(
        match["name"],
        planner=Identity(match["planner"].strip(), match["email"]),
        planned_at=_timestamp(match["timestamp"]),
        dependencies=dependencies,
        note=note,
    )


def _malformed(kind: str, body: str) -> str:
    message = f"Malformed {kind} entry"
    if kind == "change" and _BARE_DEP_RE.search(body):
        return f"{message}: write dependencies as one bracketed list, e.g. 'flips [users]'"
    if "<" not in body:
        return f"{message}: missing timestamp and planner <email>"
    return message


def _timestamp(value: str) -> datetime:
    try:
        return parse_timestamp(value)
    except ValueError:
        raise ValueError(f"Invalid timestamp '{value}'") from None


# =============================================================================
# Serialization
# =============================================================================


def format_plan(plan: Plan) -> str:
    """Serialize a plan back to text.

    Parsing the result reproduces every id of the input plan.
    """
    lines = [
        f"%syntax-version={plan.syntax_version}",
        f"%project={plan.project}",
    ]
    if plan.uri:
        lines.append(f"%uri={plan.uri}")
    lines.extend(f"%{key}={value}" for key, value in plan.pragmas.items())
    lines.append("")

    for entry in plan.entries():
        if isinstance(entry, Change):
            head = entry.name
            deps = [*entry.requires, *entry.conflicts]
            if deps:
                head += " [" + " ".join(str(dep) for dep in deps) + "]"
        else:
            head = entry.format_name()
        line = f"{head} {format_timestamp(entry.planned_at)} {entry.planner}"
        if entry.note:
            line += f" # {entry.note}"
        lines.append(line)

    return "\n".join(lines) + "\n"


def write_plan(plan: Plan, path: Path) -> None:
    """Write a plan file as UTF-8."""
    path.write_text(format_plan(plan), encoding="utf-8")
