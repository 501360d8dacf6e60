"""Tests for the Stratum CLI."""

import shutil
import subprocess
from datetime import UTC, datetime
from pathlib import Path

import pytest
from click.testing import Result
from typer.testing import CliRunner

from tests.conftest import write_scripts, write_table_scripts

runner = CliRunner()

CONFIG = """
target:
  url: "sqlite:///stratum.db"
user:
  name: "Ann Planner"
  email: "ann@example.com"
"""


def _invoke(*args: str, input: str | None = None) -> Result:
    from stratum.cli import app

    return runner.invoke(app, ["--no-dotenv", *args], input=input)


@pytest.fixture
def project_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Working directory with a stratum.yaml pointing at a local SQLite file."""
    monkeypatch.chdir(tmp_path)
    (tmp_path / "stratum.yaml").write_text(CONFIG)
    return tmp_path


@pytest.fixture
def planned(project_dir: Path) -> Path:
    """Initialized project with users (tagged @v1) and flips, and real scripts."""
    for args in (
        ("init", "flipr"),
        ("add", "users", "-n", "Creates users"),
        ("tag", "v1"),
        ("add", "flips", "-r", "users"),
    ):
        result = _invoke(*args)
        assert result.exit_code == 0, result.output
    write_table_scripts(project_dir, "users", "flips")
    return project_dir


class TestCLIBasics:
    def test_version_flag(self) -> None:
        result = _invoke("--version")

        assert result.exit_code == 0
        assert "stratum version" in result.output

    def test_help_lists_commands(self) -> None:
        result = _invoke("--help")

        assert result.exit_code == 0
        for command in ("deploy", "revert", "verify", "checkout", "status", "unlock", "plan", "init", "add", "tag"):
            assert command in result.output

    def test_missing_explicit_config(self, project_dir: Path) -> None:
        result = _invoke("--config", "missing.yaml", "status")

        assert result.exit_code == 1
        assert "Config file not found" in result.output

    def test_invalid_config_reported_per_field(self, project_dir: Path) -> None:
        (project_dir / "stratum.yaml").write_text("deploy:\n  mode: sometimes\n")

        result = _invoke("status")

        assert result.exit_code == 1
        assert "Configuration errors:" in result.output
        assert "deploy.mode" in result.output

    def test_missing_env_file(self, project_dir: Path) -> None:
        from stratum.cli import app

        result = runner.invoke(app, ["--env-file", "nope.env", "status"])

        assert result.exit_code == 1
        assert ".env file not found" in result.output


class TestPlanCommands:
    def test_init_creates_plan_and_directories(self, project_dir: Path) -> None:
        result = _invoke("init", "flipr", "--uri", "https://example.com/flipr")

        assert result.exit_code == 0, result.output
        assert "Created stratum.plan for project 'flipr'" in result.output
        text = (project_dir / "stratum.plan").read_text()
        assert "%project=flipr" in text
        assert "%uri=https://example.com/flipr" in text
        for kind in ("deploy", "revert", "verify"):
            assert (project_dir / kind).is_dir()

    def test_init_refuses_existing_plan(self, planned: Path) -> None:
        result = _invoke("init", "flipr")

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_init_rejects_invalid_name(self, project_dir: Path) -> None:
        result = _invoke("init", "bad name")

        assert result.exit_code == 1
        assert "Invalid project name" in result.output

    def test_add_creates_stubs(self, project_dir: Path) -> None:
        _invoke("init", "flipr")

        result = _invoke("add", "users", "-n", "Creates users")

        assert result.exit_code == 0, result.output
        assert "Added 'users'" in result.output
        assert (project_dir / "deploy" / "users.sql").read_text() == "-- Deploy flipr:users\n\n"
        assert (project_dir / "revert" / "users.sql").exists()
        assert "Creates users" in (project_dir / "stratum.plan").read_text()

    def test_add_rejects_duplicate_without_tag(self, planned: Path) -> None:
        result = _invoke("add", "flips")

        assert result.exit_code == 1
        assert "already planned" in result.output

    def test_tag(self, planned: Path) -> None:
        result = _invoke("tag", "@v2")

        assert result.exit_code == 0, result.output
        assert "with @v2" in result.output

    def test_plan_check(self, planned: Path) -> None:
        result = _invoke("plan", "--check")

        assert result.exit_code == 0, result.output
        assert "# Project: flipr" in result.output
        assert "Plan OK: 2 changes, 1 tags" in result.output

    def test_ids_follow_plan_content(self, planned: Path) -> None:
        from stratum.core.plan import Plan

        path = planned / "stratum.plan"
        original = Plan.from_file(path)
        assert original.change_at(0).id in _invoke("plan").output

        path.write_text(path.read_text().replace("Creates users", "Creates people"))
        result = _invoke("plan", "--check")

        assert result.exit_code == 0, result.output
        for change in original.changes():
            assert change.id not in result.output

    def test_plan_missing_file(self, project_dir: Path) -> None:
        result = _invoke("plan")

        assert result.exit_code == 1
        assert "File not found: stratum.plan" in result.output


class TestEngineCommands:
    def test_deploy_status_verify_revert(self, planned: Path) -> None:
        result = _invoke("deploy")
        assert result.exit_code == 0, result.output
        assert "Deployed to project 'flipr':" in result.output
        assert "  + users @v1" in result.output
        assert "  + flips" in result.output

        result = _invoke("status")
        assert result.exit_code == 0, result.output
        assert "Deployed: 2 change(s), last 'flips'" in result.output
        assert "Nothing to deploy (up to date)" in result.output

        result = _invoke("verify")
        assert result.exit_code == 0, result.output
        assert "  * flips .. ok" in result.output
        assert "Verify successful" in result.output

        result = _invoke("revert", "-y")
        assert result.exit_code == 0, result.output
        assert "  - flips" in result.output
        assert "  - users @v1" in result.output

        result = _invoke("status")
        assert "Deployed: none" in result.output
        assert "Undeployed: 2 change(s)" in result.output

    def test_deploy_again_is_noop(self, planned: Path) -> None:
        _invoke("deploy")

        result = _invoke("deploy")

        assert result.exit_code == 0
        assert "Nothing to deploy (project 'flipr' is up to date)" in result.output

    def test_deploy_failure_exits_nonzero(self, planned: Path) -> None:
        write_scripts(planned, "flips", deploy="INSERT INTO missing VALUES (1);\n")

        result = _invoke("deploy", "--mode", "change")

        assert result.exit_code == 1
        assert "Error: deploy script for 'flips'" in result.output

        result = _invoke("status")
        assert "Deployed: 1 change(s), last 'users'" in result.output

    def test_set_variables(self, planned: Path) -> None:
        write_scripts(planned, "flips", deploy="CREATE TABLE {{ table }} (id INTEGER);\n")
        write_scripts(planned, "flips", verify="SELECT id FROM {{ table }} WHERE 0;\n")

        result = _invoke("deploy", "--set", "table=flips")
        assert result.exit_code == 0, result.output

        result = _invoke("verify", "-s", "table=flips")
        assert result.exit_code == 0, result.output

    def test_checkout_set_deploy_short_flag(self, planned: Path) -> None:
        result = _invoke("checkout", "feature", "-d", "novalue")

        assert result.exit_code == 2
        assert "expects key=value" in result.output

    def test_bad_set_value(self, planned: Path) -> None:
        result = _invoke("deploy", "--set", "novalue")

        assert result.exit_code == 2
        assert "expects key=value" in result.output

    def test_undefined_variable(self, planned: Path) -> None:
        write_scripts(planned, "flips", deploy="CREATE TABLE {{ table }} (id INTEGER);\n")

        result = _invoke("deploy")

        assert result.exit_code == 1
        assert "Template error" in result.output

    def test_verify_failure_exits_nonzero(self, planned: Path) -> None:
        _invoke("deploy")
        write_scripts(planned, "flips", verify="SELECT nope FROM flips;\n")

        result = _invoke("verify")

        assert result.exit_code == 1
        assert "  * flips .. failed" in result.output
        assert "Verify failed: 1 failure(s)" in result.output

    def test_revert_prompt_declined(self, planned: Path) -> None:
        _invoke("deploy")

        result = _invoke("revert", input="n\n")

        assert result.exit_code == 1
        assert "aborted" in result.output
        assert "Deployed: 2 change(s)" in _invoke("status").output

    def test_revert_prompt_accepted(self, planned: Path) -> None:
        _invoke("deploy")

        result = _invoke("revert", input="y\n")

        assert result.exit_code == 0, result.output
        assert "Reverted from project 'flipr':" in result.output

    def test_revert_to_target(self, planned: Path) -> None:
        _invoke("deploy")

        result = _invoke("revert", "@v1")

        assert result.exit_code == 0, result.output
        assert "  - flips" in result.output
        assert "Deployed: 1 change(s), last 'users'" in _invoke("status").output

    def test_log_only(self, planned: Path) -> None:
        result = _invoke("deploy", "--log-only")

        assert result.exit_code == 0, result.output
        assert "Deployed to project 'flipr' (log only):" in result.output


class TestUnlock:
    def _orphan_lock(self, project_dir: Path) -> None:
        from sqlalchemy import insert

        from stratum.core.registry import RegistryDB
        from stratum.core.registry.schema import locks_table

        db = RegistryDB.from_url(f"sqlite:///{project_dir / 'stratum.db'}")
        with db.engine.begin() as conn:
            conn.execute(
                insert(locks_table).values(
                    name="registry",
                    holder="Deploy Bot (gone:4242)",
                    acquired_at=datetime(2024, 1, 1, tzinfo=UTC),
                )
            )
        db.close()

    def test_orphaned_lock_blocks_until_unlocked(self, planned: Path) -> None:
        self._orphan_lock(planned)

        assert "Locked by Deploy Bot (gone:4242)" in _invoke("status").output
        result = _invoke("deploy")
        assert result.exit_code == 1
        assert "stratum unlock" in result.output

        result = _invoke("unlock", "-y")

        assert result.exit_code == 0, result.output
        assert "Removed registry lock held by Deploy Bot (gone:4242)" in result.output
        assert _invoke("deploy").exit_code == 0

    def test_unlock_declined_keeps_lock(self, planned: Path) -> None:
        self._orphan_lock(planned)

        result = _invoke("unlock", input="n\n")

        assert result.exit_code == 1
        assert "Aborted." in result.output
        assert "Locked by" in _invoke("status").output

    def test_unlock_when_not_locked(self, project_dir: Path) -> None:
        result = _invoke("unlock", "-y")

        assert result.exit_code == 0, result.output
        assert "Registry is not locked" in result.output


class TestCheckIdempotence:
    def test_idempotent_scripts(self, project_dir: Path) -> None:
        write_scripts(
            project_dir,
            "users",
            deploy="CREATE TABLE IF NOT EXISTS users (id INTEGER);\n",
            revert="DROP TABLE IF EXISTS users;\n",
        )

        result = _invoke("check-idempotence", "users")

        assert result.exit_code == 0, result.output
        assert result.output.count(": ok") == 2

    def test_offending_statements_listed(self, project_dir: Path) -> None:
        write_scripts(project_dir, "users", deploy="CREATE TABLE users (id INTEGER);\n")

        result = _invoke("check-idempotence", "users")

        assert result.exit_code == 1
        assert "1 non-idempotent statement(s)" in result.output
        assert "  CREATE TABLE users (id INTEGER)" in result.output

    def test_unknown_script(self, project_dir: Path) -> None:
        result = _invoke("check-idempotence", "nope")

        assert result.exit_code == 1
        assert "No deploy or revert script named 'nope'" in result.output


def _git(*args: str) -> None:
    subprocess.run(["git", *args], check=True, capture_output=True)


@pytest.mark.git
@pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")
def test_checkout_command(project_dir: Path) -> None:
    """main plans users, flips; feature branches after users and plans likes."""
    _git("init", "-q")
    _git("checkout", "-q", "-b", "main")
    _git("config", "user.email", "ann@example.com")
    _git("config", "user.name", "Ann Planner")
    _invoke("init", "flipr")
    _invoke("add", "users")
    _git("add", "stratum.plan")
    _git("commit", "-q", "-m", "users")
    _git("checkout", "-q", "-b", "feature")
    _invoke("add", "likes")
    _git("commit", "-q", "-am", "likes")
    _git("checkout", "-q", "main")
    _invoke("add", "flips")
    _git("commit", "-q", "-am", "flips")
    write_table_scripts(project_dir, "users", "flips", "likes")
    assert _invoke("deploy").exit_code == 0

    result = _invoke("checkout", "feature", "-y")

    assert result.exit_code == 0, result.output
    assert "Switched from main to feature" in result.output
    assert "Common ancestor: users" in result.output
    assert "  - flips" in result.output
    assert "  + likes" in result.output

    result = _invoke("checkout", "feature")
    assert result.exit_code == 1
    assert "Already on branch feature" in result.output
