# src/stratum/core/idempotence.py
"""Static idempotence check for deploy and revert scripts.

A script is idempotent when running it twice is harmless: every statement
guards itself with IF [NOT] EXISTS or uses CREATE OR REPLACE. The check is
pattern based and deliberately conservative; anything it does not
recognize is reported.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from stratum.contracts.enums import ScriptKind

_OBJECTS = (
    r"(?:ROLE|USER|SCHEMA|DOMAIN|CAST|COLLATION|CONVERSION|TYPE|SERVER|FOREIGN\s+TABLE"
    r"|MATERIALIZED\s+VIEW|PUBLICATION|SUBSCRIPTION)"
)
_REPLACEABLE = r"(?:VIEW|FUNCTION|PROCEDURE|TRIGGER|AGGREGATE|OPERATOR|RULE|POLICY|EVENT\s+TRIGGER|LANGUAGE|EXTENSION)"
_TEXT_SEARCH = r"TEXT\s+SEARCH\s+(?:DICTIONARY|CONFIGURATION|PARSER|TEMPLATE)"

DEPLOY_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"CREATE\s+TABLE\s+IF\s+NOT\s+EXISTS",
        r"CREATE\s+(?:UNIQUE\s+)?INDEX\s+IF\s+NOT\s+EXISTS",
        r"ALTER\s+TABLE\s+\w+\s+ADD\s+COLUMN\s+IF\s+NOT\s+EXISTS",
        r"CREATE\s+SEQUENCE\s+IF\s+NOT\s+EXISTS",
        rf"CREATE\s+OR\s+REPLACE\s+{_REPLACEABLE}",
        rf"CREATE\s+{_OBJECTS}\s+IF\s+NOT\s+EXISTS",
        rf"CREATE\s+{_TEXT_SEARCH}\s+IF\s+NOT\s+EXISTS",
    )
)

REVERT_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"DROP\s+TABLE\s+IF\s+EXISTS",
        r"DROP\s+(?:UNIQUE\s+)?INDEX\s+IF\s+EXISTS",
        r"ALTER\s+TABLE\s+\w+\s+DROP\s+COLUMN\s+IF\s+EXISTS",
        r"DROP\s+SEQUENCE\s+IF\s+EXISTS",
        rf"DROP\s+{_REPLACEABLE}\s+IF\s+EXISTS",
        rf"DROP\s+{_OBJECTS}\s+IF\s+EXISTS",
        rf"DROP\s+{_TEXT_SEARCH}\s+IF\s+EXISTS",
    )
)

_LINE_COMMENT_RE = re.compile(r"--[^\n]*")


@dataclass
class IdempotenceReport:
    """Result of checking one script."""

    kind: ScriptKind
    path: Path
    offending: list[str] = field(default_factory=list)

    @property
    def idempotent(self) -> bool:
        return not self.offending


def is_idempotent(statement: str, patterns: tuple[re.Pattern[str], ...]) -> bool:
    return any(pattern.search(statement) for pattern in patterns)


def check_script(path: Path, kind: ScriptKind) -> IdempotenceReport:
    """Check every statement of one script against the patterns for its kind."""
    patterns = REVERT_PATTERNS if kind == ScriptKind.REVERT else DEPLOY_PATTERNS
    report = IdempotenceReport(kind=kind, path=path)
    content = _LINE_COMMENT_RE.sub("", path.read_text(encoding="utf-8"))
    for statement in content.split(";"):
        statement = statement.strip()
        if statement and not is_idempotent(statement, patterns):
            report.offending.append(statement)
    return report


def check_idempotence(top_dir: Path, name: str) -> list[IdempotenceReport]:
    """Check deploy/<name>.sql and revert/<name>.sql, whichever exist.

    Args:
        top_dir: Directory holding deploy/ and revert/
        name: Script name (change name, or name@tag for reworked instances)

    Returns:
        One report per existing script, deploy first
    """
    reports: list[IdempotenceReport] = []
    for kind in (ScriptKind.DEPLOY, ScriptKind.REVERT):
        path = top_dir / kind.value / f"{name}.sql"
        if path.exists():
            reports.append(check_script(path, kind))
    return reports
