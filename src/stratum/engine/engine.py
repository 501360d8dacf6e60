# src/stratum/engine/engine.py
"""Engine: applies and unapplies plan changes against the registry.

State machine:

    IDLE | FAILED  ->  DEPLOYING | REVERTING | VERIFYING
    DEPLOYING | REVERTING  ->  IDLE | FAILED
    VERIFYING  ->  IDLE

All validation (registry prefix, target resolution, dependency graph,
foreign requires, conflicts) happens before the registry lock is taken and
before any script runs. Once running, a failure stops at the failing
change; earlier checkpoints stay committed.

Cancellation is checked only at change boundaries. The in-flight change
always finishes (commit or rollback) first.
"""

from __future__ import annotations

import os
import socket
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import AbstractContextManager, contextmanager, nullcontext
from datetime import UTC, datetime
from pathlib import Path
from typing import Self

import structlog

from stratum.contracts.driver import Driver
from stratum.contracts.enums import (
    DeployMode,
    EngineState,
    EventType,
    ScriptKind,
    VariableScope,
    VerifyStatus,
)
from stratum.contracts.errors import (
    ChangeNotFoundError,
    ConflictError,
    DependencyNotDeployedError,
    DependentChangeError,
    IntegrityError,
    InvalidStateError,
    InvalidTargetError,
    NotDeployedError,
    OperationAbortedError,
    OperationCancelledError,
    RegistryLockedError,
    ScriptExecutionError,
)
from stratum.contracts.registry import Identity, RegistryEntry, RegistryEvent
from stratum.contracts.reports import (
    ChangeRef,
    DeployReport,
    RevertReport,
    VerifyReport,
    VerifyResult,
)
from stratum.core.dependencies import DependencyGraph, PlanLookup
from stratum.core.plan import Change, Dependency, Plan, Tag
from stratum.engine.signals import shutdown_handler_context

logger = structlog.get_logger(__name__)

type ConfirmHook = Callable[[str], bool]

_TRANSITIONS: dict[EngineState, frozenset[EngineState]] = {
    EngineState.IDLE: frozenset({EngineState.DEPLOYING, EngineState.REVERTING, EngineState.VERIFYING}),
    EngineState.FAILED: frozenset({EngineState.DEPLOYING, EngineState.REVERTING, EngineState.VERIFYING}),
    EngineState.DEPLOYING: frozenset({EngineState.IDLE, EngineState.FAILED}),
    EngineState.REVERTING: frozenset({EngineState.IDLE, EngineState.FAILED}),
    EngineState.VERIFYING: frozenset({EngineState.IDLE}),
}

_BUSY_STATES = frozenset({EngineState.DEPLOYING, EngineState.REVERTING, EngineState.VERIFYING})


def change_ref(change: Change) -> ChangeRef:
    return ChangeRef(change_id=change.id, name=change.name, display=change.format_name_with_tags())


class Engine:
    """Deploy/revert/verify state machine for one plan against one registry.

    Args:
        driver: Backend capability (scripts, transactions, registry)
        plan: Plan to operate on (replaceable between operations)
        top_dir: Directory holding deploy/, revert/ and verify/
        committer: Identity recorded on registry rows and events
        plan_lookup: Resolves foreign project names to plans
        confirm: Asked before multi-change reverts; None means "no"
        shutdown_event: Cancellation flag; if None, SIGINT/SIGTERM handlers
            are installed around each deploy/revert
    """

    def __init__(
        self,
        driver: Driver,
        plan: Plan,
        *,
        top_dir: Path,
        committer: Identity,
        plan_lookup: PlanLookup | None = None,
        confirm: ConfirmHook | None = None,
        shutdown_event: threading.Event | None = None,
    ) -> None:
        self._driver = driver
        self._plan = plan
        self._top_dir = Path(top_dir)
        self._committer = committer
        self._plan_lookup = plan_lookup
        self._confirm = confirm
        self._shutdown_event = shutdown_event
        self._state = EngineState.IDLE
        self._variables: dict[VariableScope, dict[str, str]] = {scope: {} for scope in VariableScope}
        self._with_verify = False
        self._no_prompt = False

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def driver(self) -> Driver:
        return self._driver

    @property
    def plan(self) -> Plan:
        return self._plan

    @plan.setter
    def plan(self, plan: Plan) -> None:
        if self._state in _BUSY_STATES:
            raise InvalidStateError(f"Cannot replace the plan while {self._state.value}")
        self._plan = plan

    @property
    def top_dir(self) -> Path:
        return self._top_dir

    @property
    def plan_lookup(self) -> PlanLookup | None:
        return self._plan_lookup

    def set_variables(self, scope: VariableScope | str, variables: Mapping[str, str]) -> None:
        """Merge script variables over earlier values for a scope."""
        self._variables[VariableScope(scope)].update(variables)

    def variables(self, scope: VariableScope | str) -> dict[str, str]:
        return dict(self._variables[VariableScope(scope)])

    def with_verify(self, flag: bool = True) -> Self:
        """Run verify scripts after each deploy script."""
        self._with_verify = flag
        return self

    def no_prompt(self, flag: bool = True) -> Self:
        """Skip the confirmation before multi-change reverts."""
        self._no_prompt = flag
        return self

    def script_path(self, kind: ScriptKind, change: Change) -> Path:
        return self._top_dir / kind.value / f"{change.script_name}.sql"

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, target: EngineState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise InvalidStateError(f"Illegal engine transition {self._state.value} -> {target.value}")
        logger.debug("engine_state", source=self._state.value, target=target.value)
        self._state = target

    @contextmanager
    def _operation(self, state: EngineState) -> Iterator[None]:
        self._transition(state)
        try:
            yield
        except OperationCancelledError:
            self._transition(EngineState.IDLE)
            raise
        except BaseException:
            self._transition(EngineState.FAILED)
            raise
        else:
            self._transition(EngineState.IDLE)

    def _cancellation(self) -> AbstractContextManager[threading.Event]:
        if self._shutdown_event is not None:
            return nullcontext(self._shutdown_event)
        return shutdown_handler_context()

    def _lock_holder_name(self) -> str:
        return f"{self._committer} ({socket.gethostname()}:{os.getpid()})"

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    def deployed_changes(self) -> list[RegistryEntry]:
        """Deployed changes of the current plan's project, in deploy order."""
        return self._driver.deployed_changes(self._plan.project)

    def pending_changes(self, to: str | None = None) -> list[Change]:
        """Plan changes after the deployed high-water mark, up to and including to."""
        deployed = self.deployed_changes()
        self._check_registry_prefix(deployed)
        if len(self._plan) == 0:
            return []
        target = self._plan.last_change if to is None else self._plan.get_change(to)
        assert target is not None
        end = self._plan.index_of(target.id)
        return [self._plan.change_at(i) for i in range(len(deployed), end + 1)]

    def _check_registry_prefix(self, deployed: list[RegistryEntry]) -> None:
        """Deployed ids, in deploy order, must be a prefix of the plan's change ids.

        Raises:
            IntegrityError: If history was edited or the plan diverged
        """
        for index, entry in enumerate(deployed):
            if index >= len(self._plan) or self._plan.change_at(index).id != entry.change_id:
                raise IntegrityError(
                    f"Deployed change '{entry.name}' ({entry.change_id}) is not change #{index + 1} of "
                    f"plan '{self._plan.project}': history edited or plan diverged",
                    entry_id=entry.change_id,
                    entry_name=entry.name,
                )

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    def deploy(
        self,
        to: str | None = None,
        mode: DeployMode | str = DeployMode.ALL,
        log_only: bool = False,
    ) -> DeployReport:
        """Deploy plan changes up to and including to (default: the last change).

        Args:
            to: Target change key (see Plan.get)
            mode: Checkpoint granularity
            log_only: Record changes without running scripts

        Raises:
            IntegrityError: If the registry is not a prefix of the plan
            InvalidTargetError: If the target precedes the deployed high-water mark
            DependencyError: On unresolved, unsatisfied or conflicting dependencies
            RegistryLockedError: If another operation holds the lock
            ScriptExecutionError: If a deploy or verify script fails
            OperationCancelledError: If shutdown was requested
        """
        mode = DeployMode(mode)
        plan = self._plan
        report = DeployReport(project=plan.project, mode=mode, log_only=log_only)

        deployed = self._driver.deployed_changes(plan.project)
        self._check_registry_prefix(deployed)

        if len(plan) == 0:
            logger.info("nothing_to_deploy", project=plan.project, reason="empty plan")
            return report

        target = plan.last_change if to is None else plan.get_change(to)
        assert target is not None
        target_index = plan.index_of(target.id)
        high_water = len(deployed) - 1
        if target_index == high_water:
            logger.info("nothing_to_deploy", project=plan.project, target=target.name)
            return report
        if target_index < high_water:
            raise InvalidTargetError(
                f"Cannot deploy to '{target.format_name_with_tags()}': it precedes the deployed change "
                f"'{deployed[-1].name}'; use revert"
            )

        pending = [plan.change_at(i) for i in range(high_water + 1, target_index + 1)]
        graph = DependencyGraph.build(plan, self._plan_lookup)
        self._check_foreign_requires(graph, pending)
        self._check_conflicts(graph, pending, deployed)

        self._driver.ensure_project(plan.project, plan.uri, str(self._committer))
        with self._cancellation() as cancel, self._driver.lock(self._lock_holder_name()):
            with self._operation(EngineState.DEPLOYING):
                self._deploy_changes(pending, mode, log_only, cancel, report)
        return report

    def _check_foreign_requires(self, graph: DependencyGraph, pending: list[Change]) -> None:
        for change in pending:
            for node in graph.foreign_requires_of(change.id):
                if not self._driver.is_deployed(*node):
                    raise DependencyNotDeployedError(change.format_name_with_tags(), graph.label(node))

    def _check_conflicts(
        self,
        graph: DependencyGraph,
        pending: list[Change],
        deployed: list[RegistryEntry],
    ) -> None:
        deployed_names: dict[str, set[str]] = {self._plan.project: {entry.name for entry in deployed}}
        batch: set[str] = set()
        for change in pending:
            for node in graph.conflicts_of(change.id):
                project = node[0]
                if project not in deployed_names:
                    deployed_names[project] = {entry.name for entry in self._driver.deployed_changes(project)}
                name = graph.change(node).name
                if name in deployed_names[project] or (project == self._plan.project and name in batch):
                    raise ConflictError(change.format_name_with_tags(), graph.label(node))
            batch.add(change.name)

    def _deploy_changes(
        self,
        pending: list[Change],
        mode: DeployMode,
        log_only: bool,
        cancel: threading.Event,
        report: DeployReport,
    ) -> None:
        variables = self.variables(VariableScope.DEPLOY)
        uncheckpointed: list[ChangeRef] = []

        for index, change in enumerate(pending):
            if cancel.is_set():
                self._cancel_deploy(report, uncheckpointed)

            if not self._driver.in_transaction:
                self._driver.begin()
            try:
                if not log_only:
                    self._run_script(change, ScriptKind.DEPLOY, variables)
                    verify_path = self.script_path(ScriptKind.VERIFY, change)
                    if self._with_verify and verify_path.exists():
                        self._run_script(change, ScriptKind.VERIFY, variables)
                now = datetime.now(UTC)
                self._driver.record_change(self._registry_entry(change, now))
                self._driver.record_event(self._event(EventType.DEPLOY, change, now))
            except ScriptExecutionError:
                self._driver.rollback()
                self._record_failure(change)
                raise
            except BaseException:
                if self._driver.in_transaction:
                    self._driver.rollback()
                raise

            uncheckpointed.append(change_ref(change))
            logger.info("change_deployed", project=self._plan.project, change=change.format_name_with_tags(), change_id=change.id, log_only=log_only)

            is_last = index == len(pending) - 1
            if mode == DeployMode.CHANGE or (mode == DeployMode.TAG and change.tags) or is_last:
                self._driver.commit()
                report.checkpoints += 1
                report.deployed.extend(uncheckpointed)
                logger.debug("checkpoint_committed", project=self._plan.project, changes=[ref.name for ref in uncheckpointed])
                uncheckpointed.clear()

    def _cancel_deploy(self, report: DeployReport, uncheckpointed: list[ChangeRef]) -> None:
        if self._driver.in_transaction:
            self._driver.rollback()
        logger.warning(
            "deploy_cancelled",
            project=self._plan.project,
            committed=[ref.name for ref in report.deployed],
            rolled_back=[ref.name for ref in uncheckpointed],
        )
        raise OperationCancelledError(
            f"Deploy of '{self._plan.project}' cancelled after {len(report.deployed)} committed change(s)",
            completed=[ref.display for ref in report.deployed],
        )

    # ------------------------------------------------------------------
    # Revert
    # ------------------------------------------------------------------

    def revert(self, to: str | None = None, log_only: bool = False) -> RevertReport:
        """Revert deployed changes after to (exclusive); None reverts everything.

        Raises:
            IntegrityError: If the registry is not a prefix of the plan
            NotDeployedError: If to is not in the plan or not deployed
            DependentChangeError: If another project still requires a change being reverted
            OperationAbortedError: If confirmation was refused
            RegistryLockedError: If another operation holds the lock
            ScriptExecutionError: If a revert script fails
            OperationCancelledError: If shutdown was requested
        """
        plan = self._plan
        deployed = self._driver.deployed_changes(plan.project)
        self._check_registry_prefix(deployed)

        target: Change | None = None
        if to is not None:
            try:
                target = plan.get_change(to)
            except ChangeNotFoundError:
                raise NotDeployedError(to, plan.project) from None
            positions = [i for i, entry in enumerate(deployed) if entry.change_id == target.id]
            if not positions:
                raise NotDeployedError(target.format_name_with_tags(), plan.project)
            to_revert = deployed[positions[0] + 1 :]
        else:
            to_revert = list(deployed)

        report = RevertReport(
            project=plan.project,
            log_only=log_only,
            target=change_ref(target) if target is not None else None,
        )
        if not to_revert:
            logger.info("nothing_to_revert", project=plan.project)
            return report

        changes = [plan.get_change(entry.change_id) for entry in reversed(to_revert)]
        self._check_dependents(changes)

        if len(changes) > 1 and not self._no_prompt:
            destination = f"'{target.format_name_with_tags()}'" if target is not None else "the beginning"
            message = f"Revert {len(changes)} changes from project '{plan.project}' back to {destination}?"
            if self._confirm is None or not self._confirm(message):
                raise OperationAbortedError(f"Revert of '{plan.project}' aborted")

        with self._cancellation() as cancel, self._driver.lock(self._lock_holder_name()):
            with self._operation(EngineState.REVERTING):
                self._revert_changes(changes, log_only, cancel, report)
        return report

    def _check_dependents(self, changes: list[Change]) -> None:
        """Refuse to revert a change that a deployed change in another project requires.

        Each stored requires token is resolved against this plan, so tag
        references (project:@tag) and reworked instances (project:name@tag)
        match by change id. A token this plan no longer resolves falls back
        to its change name.
        """
        plan = self._plan
        reverting = {change.id for change in changes}
        blocked: dict[str, list[str]] = {}
        for entry in self._driver.dependents_of(plan.project):
            for token in entry.requires:
                dep = Dependency.parse(token)
                if dep.project != plan.project or dep.conflict:
                    continue
                for change_id in self._required_ids(dep, changes):
                    if change_id in reverting:
                        blocked.setdefault(change_id, []).append(f"{entry.project}:{entry.name}")

        for change in changes:
            if change.id in blocked:
                raise DependentChangeError(f"{plan.project}:{change.name}", blocked[change.id])

    def _required_ids(self, dep: Dependency, changes: list[Change]) -> list[str]:
        found = self._plan.get(dep.key)
        if isinstance(found, Tag):
            found = self._plan.get(found.change_id)
        if isinstance(found, Change):
            return [found.id]
        return [change.id for change in changes if dep.change is not None and change.name == dep.change]

    def _revert_changes(
        self,
        changes: list[Change],
        log_only: bool,
        cancel: threading.Event,
        report: RevertReport,
    ) -> None:
        variables = self.variables(VariableScope.REVERT)
        for change in changes:
            if cancel.is_set():
                logger.warning("revert_cancelled", project=self._plan.project, reverted=[ref.name for ref in report.reverted])
                raise OperationCancelledError(
                    f"Revert of '{self._plan.project}' cancelled after {len(report.reverted)} change(s)",
                    completed=[ref.display for ref in report.reverted],
                )

            self._driver.begin()
            try:
                if not log_only:
                    self._run_script(change, ScriptKind.REVERT, variables)
                self._driver.remove_change(self._plan.project, change.id)
                self._driver.record_event(self._event(EventType.REVERT, change, datetime.now(UTC)))
            except ScriptExecutionError:
                self._driver.rollback()
                self._record_failure(change)
                raise
            except BaseException:
                if self._driver.in_transaction:
                    self._driver.rollback()
                raise
            self._driver.commit()

            report.reverted.append(change_ref(change))
            logger.info("change_reverted", project=self._plan.project, change=change.format_name_with_tags(), change_id=change.id, log_only=log_only)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, to: str | None = None) -> VerifyReport:
        """Run verify scripts of deployed changes (up to and including to).

        Never mutates the registry: every script runs in a transaction that is
        rolled back.

        Raises:
            RegistryLockedError: If a deploy or revert is in progress
            NotDeployedError: If to is not deployed
        """
        holder = self._driver.lock_holder()
        if holder is not None:
            raise RegistryLockedError(holder.holder, holder.acquired_at)

        plan = self._plan
        report = VerifyReport(project=plan.project)
        self._transition(EngineState.VERIFYING)
        try:
            deployed = self._driver.deployed_changes(plan.project)
            if to is not None:
                target = plan.get_change(to)
                positions = [i for i, entry in enumerate(deployed) if entry.change_id == target.id]
                if not positions:
                    raise NotDeployedError(target.format_name_with_tags(), plan.project)
                checked = deployed[: positions[0] + 1]
            else:
                checked = deployed

            variables = self.variables(VariableScope.DEPLOY)
            for entry in checked:
                change = plan.get(entry.change_id)
                if not isinstance(change, Change):
                    report.not_in_plan.append(entry.change_id)
                    continue
                report.results.append(self._verify_change(change, variables))

            deployed_ids = {entry.change_id for entry in deployed}
            report.undeployed.extend(change_ref(change) for change in plan.changes() if change.id not in deployed_ids)
        finally:
            self._transition(EngineState.IDLE)

        logger.info(
            "verify_completed",
            project=plan.project,
            checked=len(report.results),
            failed=len(report.failures),
            undeployed=len(report.undeployed),
            not_in_plan=len(report.not_in_plan),
        )
        return report

    def _verify_change(self, change: Change, variables: Mapping[str, str]) -> VerifyResult:
        ref = change_ref(change)
        path = self.script_path(ScriptKind.VERIFY, change)
        if not path.exists():
            return VerifyResult(change=ref, status=VerifyStatus.SKIPPED, output="no verify script")
        self._driver.begin()
        try:
            output = self._driver.run_script(path, variables)
        except ScriptExecutionError as exc:
            logger.warning("verify_failed", change=ref.display, path=str(path))
            return VerifyResult(change=ref, status=VerifyStatus.FAILED, output=exc.output)
        finally:
            self._driver.rollback()
        return VerifyResult(change=ref, status=VerifyStatus.OK, output=output)

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    def _run_script(self, change: Change, kind: ScriptKind, variables: Mapping[str, str]) -> str:
        path = self.script_path(kind, change)
        try:
            return self._driver.run_script(path, variables)
        except ScriptExecutionError as exc:
            logger.error(
                "script_failed",
                project=self._plan.project,
                change=change.format_name_with_tags(),
                change_id=change.id,
                kind=kind.value,
                path=str(path),
            )
            raise ScriptExecutionError(
                change=change.format_name_with_tags(),
                change_id=change.id,
                kind=kind.value,
                path=path,
                output=exc.output,
            ) from exc

    def _record_failure(self, change: Change) -> None:
        """Record a fail event in its own transaction."""
        self._driver.begin()
        try:
            self._driver.record_event(self._event(EventType.FAIL, change, datetime.now(UTC)))
        except BaseException:
            self._driver.rollback()
            raise
        self._driver.commit()

    def _registry_entry(self, change: Change, committed_at: datetime) -> RegistryEntry:
        return RegistryEntry(
            project=change.project,
            change_id=change.id,
            name=change.name,
            note=change.note,
            committer=self._committer,
            planner=change.planner,
            planned_at=change.planned_at,
            committed_at=committed_at,
            tags=change.tags,
            requires=tuple(str(dep) for dep in change.requires),
            conflicts=tuple(str(dep) for dep in change.conflicts),
        )

    def _event(self, event: EventType, change: Change, committed_at: datetime) -> RegistryEvent:
        return RegistryEvent(
            event=event,
            project=change.project,
            change_id=change.id,
            name=change.name,
            committer=self._committer,
            committed_at=committed_at,
            tags=change.tags,
        )
