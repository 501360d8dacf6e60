# src/stratum/core/registry/schema.py
"""SQLAlchemy table definitions for the deployment registry.

Uses SQLAlchemy Core (not ORM) for explicit control over queries
and compatibility with multiple database backends. The tables live in the
target database itself, prefixed with "stratum_".
"""

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
)

# Shared metadata for all tables
metadata = MetaData()

# === Projects ===

projects_table = Table(
    "stratum_projects",
    metadata,
    Column("project", String(255), primary_key=True),
    Column("uri", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("creator", String(512), nullable=False),
)

# === Deployed changes ===

changes_table = Table(
    "stratum_changes",
    metadata,
    Column("project", String(255), nullable=False),
    Column("change_id", String(64), nullable=False),
    Column("name", String(255), nullable=False),
    Column("note", Text, nullable=False),
    Column("committer_name", String(255), nullable=False),
    Column("committer_email", String(255), nullable=False),
    Column("planner_name", String(255), nullable=False),
    Column("planner_email", String(255), nullable=False),
    Column("planned_at", DateTime(timezone=True), nullable=False),
    Column("committed_at", DateTime(timezone=True), nullable=False),
    Column("tags_json", Text, nullable=False),  # JSON array of tag names (without "@")
    Column("requires_json", Text, nullable=False),  # JSON array of dependency tokens
    Column("conflicts_json", Text, nullable=False),
    Column("deploy_seq", Integer, nullable=False),  # Deploy order within project, 1-based
    PrimaryKeyConstraint("project", "change_id"),
    UniqueConstraint("project", "deploy_seq", name="uq_stratum_changes_seq"),
)

# === Event log (append-only) ===

events_table = Table(
    "stratum_events",
    metadata,
    Column("event_id", Integer, primary_key=True, autoincrement=True),
    Column("event", String(16), nullable=False),  # deploy, revert, fail
    Column("project", String(255), nullable=False),
    Column("change_id", String(64), nullable=False),
    Column("name", String(255), nullable=False),
    Column("committer_name", String(255), nullable=False),
    Column("committer_email", String(255), nullable=False),
    Column("committed_at", DateTime(timezone=True), nullable=False),
    Column("tags_json", Text, nullable=False),
)

Index("ix_stratum_events_project", events_table.c.project, events_table.c.committed_at)

# === Advisory lock ===

locks_table = Table(
    "stratum_locks",
    metadata,
    Column("name", String(64), primary_key=True),
    Column("holder", String(512), nullable=False),
    Column("acquired_at", DateTime(timezone=True), nullable=False),
)
