# src/stratum/engine/driver.py
"""SQLAlchemy implementation of the Driver capability.

The registry tables live in the target database, so script execution and
registry bookkeeping share one transaction: a change's DDL and its
stratum_changes row commit (or roll back) together.

Transaction model:
    begin() checks out a connection and opens a transaction on it. Scripts
    and registry writes run on that connection until commit()/rollback().
    Read queries reuse the open connection when there is one, otherwise
    they use a short-lived connection of their own.
"""

from __future__ import annotations

import re
import sqlite3
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path

import jinja2
import jinja2.sandbox
import structlog
from sqlalchemy.engine import Connection, RootTransaction
from sqlalchemy.exc import SQLAlchemyError

from stratum.contracts.errors import RegistryLockedError, ScriptExecutionError
from stratum.contracts.registry import LockInfo, RegistryEntry, RegistryEvent
from stratum.core.registry import RegistryDB, RegistryRepository

logger = structlog.get_logger(__name__)

# Transaction control inside a script would end the driver's own transaction
_TRANSACTION_CONTROL_RE = re.compile(
    r"^(?:BEGIN(?:\s+(?:DEFERRED|IMMEDIATE|EXCLUSIVE))?(?:\s+TRANSACTION)?|COMMIT(?:\s+TRANSACTION)?|END(?:\s+TRANSACTION)?)$",
    re.IGNORECASE,
)
_COMMENT_RE = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)


def _strip_comments(statement: str) -> str:
    return _COMMENT_RE.sub("", statement).strip().rstrip(";").strip()


def split_sqlite_statements(script: str) -> list[str]:
    """Split a script into complete SQLite statements.

    Pieces are accumulated on ';' until sqlite3.complete_statement() accepts
    them, so semicolons inside string literals and trigger bodies do not
    split a statement. Comment-only pieces and transaction control
    statements are dropped.
    """
    statements: list[str] = []
    parts = script.split(";")
    buffer = ""

    def _emit(text: str) -> None:
        core = _strip_comments(text)
        if core and not _TRANSACTION_CONTROL_RE.match(core):
            statements.append(text.strip())

    for index, part in enumerate(parts):
        buffer += part
        if index < len(parts) - 1:
            buffer += ";"
            if sqlite3.complete_statement(buffer):
                _emit(buffer)
                buffer = ""
    if buffer.strip():
        _emit(buffer)
    return statements


class SQLAlchemyDriver:
    """Driver for any database SQLAlchemy can reach (SQLite and PostgreSQL tested).

    Args:
        db: Registry database (also the target database)
        repository: Registry query layer (injectable for tests)
    """

    def __init__(self, db: RegistryDB, *, repository: RegistryRepository | None = None) -> None:
        self._db = db
        self._repo = repository or RegistryRepository()
        self._conn: Connection | None = None
        self._tx: RootTransaction | None = None
        self._jinja_env = jinja2.sandbox.SandboxedEnvironment(
            autoescape=False,  # SQL, not HTML
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=True,
        )

    @property
    def db(self) -> RegistryDB:
        return self._db

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @property
    def in_transaction(self) -> bool:
        return self._tx is not None

    def begin(self) -> None:
        if self._tx is not None:
            raise RuntimeError("A transaction is already open")
        self._conn = self._db.engine.connect()
        self._tx = self._conn.begin()

    def commit(self) -> None:
        tx, conn = self._close_scope()
        try:
            tx.commit()
        finally:
            conn.close()

    def rollback(self) -> None:
        tx, conn = self._close_scope()
        try:
            tx.rollback()
        finally:
            conn.close()

    def _close_scope(self) -> tuple[RootTransaction, Connection]:
        if self._tx is None or self._conn is None:
            raise RuntimeError("No transaction is open")
        tx, conn = self._tx, self._conn
        self._tx = None
        self._conn = None
        return tx, conn

    def _scope(self) -> Connection:
        if self._conn is None:
            raise RuntimeError("No transaction is open; call begin() first")
        return self._conn

    @contextmanager
    def _reader(self) -> Iterator[Connection]:
        if self._conn is not None:
            yield self._conn
            return
        with self._db.engine.connect() as conn:
            yield conn

    # ------------------------------------------------------------------
    # Scripts
    # ------------------------------------------------------------------

    def render_script(self, path: Path, variables: Mapping[str, str]) -> str:
        """Render a script as a sandboxed Jinja2 template.

        Raises:
            ScriptExecutionError: If the file is missing or the template fails
        """
        try:
            source = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise self._script_error(path, f"Cannot read script: {exc}") from exc
        try:
            return self._jinja_env.from_string(source).render(**variables)
        except jinja2.TemplateError as exc:
            raise self._script_error(path, f"Template error: {exc}") from exc

    def run_script(self, path: Path, variables: Mapping[str, str]) -> str:
        conn = self._scope()
        rendered = self.render_script(path, variables)
        statements = split_sqlite_statements(rendered) if self._db.is_sqlite else [rendered]
        executed = 0
        for statement in statements:
            if not statement.strip():
                continue
            try:
                conn.exec_driver_sql(statement)
            except SQLAlchemyError as exc:
                orig = getattr(exc, "orig", None)
                output = str(orig) if orig is not None else str(exc)
                raise self._script_error(path, f"{output}\nStatement: {statement}") from exc
            executed += 1
        logger.debug("script_executed", path=str(path), statements=executed)
        return f"{executed} statement(s) executed"

    @staticmethod
    def _script_error(path: Path, output: str) -> ScriptExecutionError:
        # Change identity is filled in by the engine
        return ScriptExecutionError(change=path.stem, change_id="", kind=path.parent.name, path=path, output=output)

    # ------------------------------------------------------------------
    # Registry writes (inside the open transaction)
    # ------------------------------------------------------------------

    def record_change(self, entry: RegistryEntry) -> RegistryEntry:
        return self._repo.insert_change(self._scope(), entry)

    def remove_change(self, project: str, change_id: str) -> None:
        self._repo.delete_change(self._scope(), project, change_id)

    def record_event(self, event: RegistryEvent) -> None:
        self._repo.insert_event(self._scope(), event)

    def ensure_project(self, project: str, uri: str | None, creator: str) -> None:
        if self._conn is not None:
            inserted = self._repo.ensure_project(self._conn, project, uri, creator)
        else:
            with self._db.engine.begin() as conn:
                inserted = self._repo.ensure_project(conn, project, uri, creator)
        if inserted:
            logger.info("project_registered", project=project, uri=uri)

    # ------------------------------------------------------------------
    # Registry reads
    # ------------------------------------------------------------------

    def deployed_changes(self, project: str) -> list[RegistryEntry]:
        with self._reader() as conn:
            return self._repo.select_changes(conn, project)

    def is_deployed(self, project: str, change_id: str) -> bool:
        with self._reader() as conn:
            return self._repo.change_exists(conn, project, change_id)

    def dependents_of(self, project: str) -> list[RegistryEntry]:
        with self._reader() as conn:
            return self._repo.select_dependents(conn, project)

    def events(self, project: str) -> list[RegistryEvent]:
        with self._reader() as conn:
            return self._repo.select_events(conn, project)

    # ------------------------------------------------------------------
    # Lock
    # ------------------------------------------------------------------

    @contextmanager
    def lock(self, holder: str) -> Iterator[None]:
        try:
            with self._db.engine.begin() as conn:
                self._repo.acquire_lock(conn, holder)
        except RegistryLockedError:
            current = self.lock_holder()
            logger.warning(
                "registry_locked",
                holder=current.holder if current else None,
                requested_by=holder,
            )
            if current is None:
                raise
            raise RegistryLockedError(current.holder, current.acquired_at) from None

        logger.debug("registry_lock_acquired", holder=holder)
        try:
            yield
        finally:
            # An open scope would block the release on SQLite
            if self._tx is not None:
                self.rollback()
            with self._db.engine.begin() as conn:
                self._repo.release_lock(conn)
            logger.debug("registry_lock_released", holder=holder)

    def lock_holder(self) -> LockInfo | None:
        with self._reader() as conn:
            return self._repo.select_lock(conn)

    def force_unlock(self) -> LockInfo | None:
        with self._db.engine.begin() as conn:
            removed = self._repo.force_release_lock(conn)
        if removed is not None:
            logger.warning("registry_lock_forced", holder=removed.holder, acquired_at=removed.acquired_at.isoformat())
        return removed

    def close(self) -> None:
        if self._tx is not None:
            self.rollback()
        self._db.close()
