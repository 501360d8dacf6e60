"""Stratum Command Line Interface.

Entry point for the stratum CLI tool.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from stratum import __version__
from stratum.cli_helpers import (
    load_plan,
    merge_variables,
    open_driver,
    open_engine,
    parse_assignments,
    resolve_checkout_options,
    resolve_settings,
)
from stratum.contracts.enums import DeployMode, ScriptKind, VariableScope, VerifyStatus
from stratum.contracts.errors import OperationCancelledError, RegistryLockedError, StratumError
from stratum.contracts.reports import DeployReport, RevertReport
from stratum.core.config import StratumSettings

__all__ = ["app"]

app = typer.Typer(
    name="stratum",
    help="Stratum: plan-driven database change management.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"stratum version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Args:
        env_file: Explicit path to .env file. If None, searches for .env
                 in current directory and parent directories.

    Returns:
        True if .env was found and loaded, False otherwise.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    # load_dotenv searches current dir and parents by default
    return load_dotenv(override=False)  # Don't override existing env vars


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to settings YAML file (default: ./stratum.yaml if present).",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,  # We handle existence check ourselves for better error message
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """Stratum: plan-driven database change management."""
    from stratum.core.logging import configure_logging

    log_level = "DEBUG" if verbose else "INFO"
    configure_logging(json_output=json_logs, level=log_level)

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )

    ctx.obj = {"config": config}


@contextmanager
def _cli_errors() -> Iterator[None]:
    """Report expected failures on stderr and exit 1."""
    try:
        yield
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError as e:
        typer.echo(f"Error: File not found: {e.filename or e}", err=True)
        raise typer.Exit(1) from None
    except OperationCancelledError as e:
        typer.echo(f"Cancelled: {e}", err=True)
        if e.completed:
            typer.echo(f"  Committed before cancellation: {', '.join(e.completed)}", err=True)
        raise typer.Exit(1) from None
    except RegistryLockedError as e:
        typer.echo(f"Error: {e}", err=True)
        typer.echo("  If that process no longer exists, run 'stratum unlock'.", err=True)
        raise typer.Exit(1) from None
    except StratumError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


def _settings(ctx: typer.Context) -> StratumSettings:
    config = ctx.obj.get("config") if ctx.obj else None
    return resolve_settings(config)


def _assignments(values: list[str] | None, option: str) -> dict[str, str]:
    try:
        return parse_assignments(values, option)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint=option) from None


def _echo_deploy(report: DeployReport) -> None:
    if report.nothing_to_do:
        typer.echo(f"Nothing to deploy (project '{report.project}' is up to date)")
        return
    suffix = " (log only)" if report.log_only else ""
    typer.echo(f"Deployed to project '{report.project}'{suffix}:")
    for ref in report.deployed:
        typer.echo(f"  + {ref.display}")


def _echo_revert(report: RevertReport) -> None:
    if report.nothing_to_do:
        typer.echo(f"Nothing to revert in project '{report.project}'")
        return
    suffix = " (log only)" if report.log_only else ""
    typer.echo(f"Reverted from project '{report.project}'{suffix}:")
    for ref in report.reverted:
        typer.echo(f"  - {ref.display}")


# === Engine commands ===


@app.command()
def deploy(
    ctx: typer.Context,
    target: str | None = typer.Argument(None, help="Deploy up to and including this change."),
    mode: DeployMode | None = typer.Option(
        None,
        "--mode",
        "-m",
        case_sensitive=False,
        help="Checkpoint granularity: change, tag or all.",
    ),
    verify: bool | None = typer.Option(
        None,
        "--verify/--no-verify",
        help="Run each change's verify script after its deploy script.",
    ),
    set_vars: list[str] | None = typer.Option(
        None,
        "--set",
        "-s",
        help="Script variable as key=value (repeatable).",
    ),
    log_only: bool = typer.Option(
        False,
        "--log-only",
        help="Record changes in the registry without running scripts.",
    ),
) -> None:
    """Deploy pending plan changes to the target database."""
    cli_vars = _assignments(set_vars, "--set")
    with _cli_errors():
        settings = _settings(ctx)
        plan = load_plan(settings)
        with open_engine(settings, plan) as engine:
            engine.set_variables(
                VariableScope.DEPLOY,
                merge_variables(settings.variables, settings.deploy.variables, cli_vars),
            )
            engine.with_verify(settings.deploy.verify if verify is None else verify)
            report = engine.deploy(target, mode or settings.deploy.mode, log_only)
    _echo_deploy(report)


@app.command()
def revert(
    ctx: typer.Context,
    target: str | None = typer.Argument(None, help="Revert changes after this one (default: all)."),
    set_vars: list[str] | None = typer.Option(
        None,
        "--set",
        "-s",
        help="Script variable as key=value (repeatable).",
    ),
    log_only: bool = typer.Option(
        False,
        "--log-only",
        help="Remove registry records without running scripts.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation.",
    ),
) -> None:
    """Revert deployed changes from the target database."""
    cli_vars = _assignments(set_vars, "--set")
    with _cli_errors():
        settings = _settings(ctx)
        plan = load_plan(settings)
        with open_engine(settings, plan, confirm=typer.confirm) as engine:
            engine.set_variables(
                VariableScope.REVERT,
                merge_variables(settings.variables, settings.revert.variables, cli_vars),
            )
            engine.no_prompt(yes or settings.revert.no_prompt)
            report = engine.revert(target, log_only)
    _echo_revert(report)


@app.command()
def verify(
    ctx: typer.Context,
    target: str | None = typer.Argument(None, help="Verify up to and including this change."),
    set_vars: list[str] | None = typer.Option(
        None,
        "--set",
        "-s",
        help="Script variable as key=value (repeatable).",
    ),
) -> None:
    """Run verify scripts of deployed changes. Exits 1 on any failure."""
    cli_vars = _assignments(set_vars, "--set")
    with _cli_errors():
        settings = _settings(ctx)
        plan = load_plan(settings)
        with open_engine(settings, plan) as engine:
            engine.set_variables(
                VariableScope.DEPLOY,
                merge_variables(settings.variables, settings.deploy.variables, cli_vars),
            )
            report = engine.verify(target)

    typer.echo(f"Verifying project '{report.project}':")
    for result in report.results:
        typer.echo(f"  * {result.change.display} .. {result.status.value}")
        if result.status == VerifyStatus.FAILED and result.output:
            typer.echo(f"      {result.output}", err=True)
    for change_id in report.not_in_plan:
        typer.echo(f"  ! {change_id} is deployed but not in the plan", err=True)
    if report.undeployed:
        typer.echo("Undeployed changes:")
        for ref in report.undeployed:
            typer.echo(f"  * {ref.display}")
    if not report.ok:
        typer.echo(f"Verify failed: {len(report.failures)} failure(s)", err=True)
        raise typer.Exit(1)
    typer.echo("Verify successful")


@app.command()
def checkout(
    ctx: typer.Context,
    branch: str = typer.Argument(..., help="Branch to check out."),
    mode: DeployMode | None = typer.Option(
        None,
        "--mode",
        "-m",
        case_sensitive=False,
        help="Checkpoint granularity for the redeploy.",
    ),
    verify: bool | None = typer.Option(
        None,
        "--verify/--no-verify",
        help="Run verify scripts during the redeploy.",
    ),
    set_vars: list[str] | None = typer.Option(
        None,
        "--set",
        "-s",
        help="Variable for both revert and deploy scripts (repeatable).",
    ),
    set_deploy: list[str] | None = typer.Option(
        None,
        "--set-deploy",
        "-d",
        help="Variable for deploy scripts only (repeatable).",
    ),
    set_revert: list[str] | None = typer.Option(
        None,
        "--set-revert",
        "-r",
        help="Variable for revert scripts only (repeatable).",
    ),
    log_only: bool = typer.Option(
        False,
        "--log-only",
        help="Update the registry without running scripts.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation before reverting.",
    ),
) -> None:
    """Revert to the common ancestor, switch branches, and deploy the new branch."""
    from stratum.core.vcs import GitVCS
    from stratum.engine import CheckoutOrchestrator

    cli_vars = _assignments(set_vars, "--set")
    deploy_vars = _assignments(set_deploy, "--set-deploy")
    revert_vars = _assignments(set_revert, "--set-revert")
    with _cli_errors():
        settings = _settings(ctx)
        options = resolve_checkout_options(settings, mode=mode, verify=verify, no_prompt=True if yes else None)
        from_plan = load_plan(settings)
        with open_engine(settings, from_plan, confirm=typer.confirm) as engine:
            engine.with_verify(options.verify)
            engine.no_prompt(options.no_prompt)
            orchestrator = CheckoutOrchestrator(
                engine,
                GitVCS(),
                plan_file=settings.plan_file,
                mode=options.mode,
                log_only=log_only,
                deploy_variables=merge_variables(
                    settings.variables, settings.deploy.variables, cli_vars, deploy_vars
                ),
                revert_variables=merge_variables(
                    settings.variables, settings.revert.variables, cli_vars, revert_vars
                ),
            )
            result = orchestrator.checkout(branch, from_plan)

    typer.echo(f"Switched from {result.from_branch} to {result.to_branch}")
    typer.echo(f"Common ancestor: {result.common_ancestor.display}")
    if result.revert is not None:
        _echo_revert(result.revert)
    _echo_deploy(result.deploy)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show deployed and pending changes."""
    with _cli_errors():
        settings = _settings(ctx)
        plan = load_plan(settings)
        with open_engine(settings, plan) as engine:
            deployed = engine.deployed_changes()
            pending = engine.pending_changes()
            lock = engine.driver.lock_holder()

    typer.echo(f"Project: {plan.project}")
    typer.echo(f"Target: {settings.target.url}")
    if lock is not None:
        typer.echo(f"Locked by {lock.holder} since {lock.acquired_at.isoformat()}")
    if deployed:
        last = deployed[-1]
        typer.echo(f"Deployed: {len(deployed)} change(s), last '{last.name}' at {last.committed_at.isoformat()}")
    else:
        typer.echo("Deployed: none")
    if pending:
        typer.echo(f"Undeployed: {len(pending)} change(s)")
        for change in pending:
            typer.echo(f"  * {change.format_name_with_tags()}")
    else:
        typer.echo("Nothing to deploy (up to date)")


@app.command()
def unlock(
    ctx: typer.Context,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation.",
    ),
) -> None:
    """Remove a registry lock left behind by a process that died holding it."""
    with _cli_errors():
        settings = _settings(ctx)
        with open_driver(settings) as driver:
            lock = driver.lock_holder()
            if lock is None:
                typer.echo("Registry is not locked")
                return
            held = f"{lock.holder} since {lock.acquired_at.isoformat()}"
            if not yes and not typer.confirm(f"Remove the registry lock held by {held}?"):
                typer.echo("Aborted.")
                raise typer.Exit(1)
            driver.force_unlock()
    typer.echo(f"Removed registry lock held by {held}")


# === Plan commands ===


@app.command("plan")
def plan_command(
    ctx: typer.Context,
    check: bool = typer.Option(
        False,
        "--check",
        help="Verify the hash chain and the dependency graph.",
    ),
) -> None:
    """List plan entries with their ids."""
    from stratum.cli_helpers import build_plan_lookup
    from stratum.core.dependencies import DependencyGraph

    with _cli_errors():
        settings = _settings(ctx)
        plan = load_plan(settings)
        graph = None
        if check:
            plan.verify_chain()
            graph = DependencyGraph.build(plan, build_plan_lookup(settings))

    typer.echo(f"# Project: {plan.project}")
    if plan.uri:
        typer.echo(f"# URI: {plan.uri}")
    for entry in plan.entries():
        typer.echo(f"{entry.id} {entry}")
    if graph is not None:
        typer.echo(
            f"Plan OK: {len(plan)} changes, {len(list(plan.tags()))} tags, "
            f"graph {graph.node_count} nodes across {len(graph.projects)} project(s)"
        )


@app.command()
def init(
    ctx: typer.Context,
    project: str = typer.Argument(..., help="Project name."),
    uri: str | None = typer.Option(None, "--uri", help="Project URI, hashed into every id."),
) -> None:
    """Create an empty plan and the script directories."""
    from stratum.core.plan import Plan, write_plan
    from stratum.core.plan.models import is_valid_name

    with _cli_errors():
        settings = _settings(ctx)
        plan_path = Path(settings.plan_file)
        if plan_path.exists():
            typer.echo(f"Error: Plan file already exists: {plan_path}", err=True)
            raise typer.Exit(1)
        if not is_valid_name(project):
            typer.echo(f"Error: Invalid project name '{project}'", err=True)
            raise typer.Exit(1)
        top_dir = settings.resolved_top_dir()
        for kind in ScriptKind:
            (top_dir / kind.value).mkdir(parents=True, exist_ok=True)
        write_plan(Plan(project, [], uri=uri), plan_path)
    typer.echo(f"Created {plan_path} for project '{project}'")


_SCRIPT_STUBS: dict[ScriptKind, str] = {
    ScriptKind.DEPLOY: "-- Deploy {project}:{name}\n\n",
    ScriptKind.REVERT: "-- Revert {project}:{name}\n\n",
    ScriptKind.VERIFY: "-- Verify {project}:{name}\n\n",
}


@app.command()
def add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Change name."),
    requires: list[str] | None = typer.Option(
        None,
        "--requires",
        "-r",
        help="Required change (repeatable; 'name', 'project:name' or 'name@tag').",
    ),
    conflicts: list[str] | None = typer.Option(
        None,
        "--conflicts",
        "-x",
        help="Conflicting change (repeatable).",
    ),
    note: str = typer.Option("", "--note", "-n", help="One-line note."),
) -> None:
    """Append a change to the plan and create its script stubs."""
    from stratum.core.plan import write_plan

    with _cli_errors():
        settings = _settings(ctx)
        plan = load_plan(settings)
        plan = plan.append_change(
            name,
            planner=settings.identity(),
            requires=requires or (),
            conflicts=conflicts or (),
            note=note,
        )
        write_plan(plan, Path(settings.plan_file))

        change = plan.last_change
        assert change is not None
        top_dir = settings.resolved_top_dir()
        for kind, stub in _SCRIPT_STUBS.items():
            path = top_dir / kind.value / f"{change.script_name}.sql"
            if path.exists():
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(stub.format(project=plan.project, name=change.name), encoding="utf-8")
            typer.echo(f"Created {path}")
    typer.echo(f"Added '{change.name}' ({change.id}) to {settings.plan_file}")


@app.command()
def tag(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Tag name (leading '@' optional)."),
    note: str = typer.Option("", "--note", "-n", help="One-line note."),
) -> None:
    """Tag the last change of the plan."""
    from stratum.core.plan import write_plan

    with _cli_errors():
        settings = _settings(ctx)
        plan = load_plan(settings)
        plan = plan.append_tag(name, planner=settings.identity(), note=note)
        write_plan(plan, Path(settings.plan_file))
    entry = plan.last_entry
    assert entry is not None
    typer.echo(f"Tagged '{plan.last_change}' with {entry} ({entry.id})")


@app.command("check-idempotence")
def check_idempotence_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Script name (change name, or name@tag)."),
) -> None:
    """Flag deploy/revert statements that are not safe to re-run."""
    from stratum.core.idempotence import check_idempotence

    with _cli_errors():
        settings = _settings(ctx)
        reports = check_idempotence(settings.resolved_top_dir(), name)

    if not reports:
        typer.echo(f"Error: No deploy or revert script named '{name}'", err=True)
        raise typer.Exit(1)

    failed = False
    for report in reports:
        if report.idempotent:
            typer.echo(f"{report.path}: ok")
            continue
        failed = True
        typer.echo(f"{report.path}: {len(report.offending)} non-idempotent statement(s)")
        for statement in report.offending:
            typer.echo(f"  {statement}")
    if failed:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
