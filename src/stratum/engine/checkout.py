# src/stratum/engine/checkout.py
"""Checkout: move a database from one branch's plan to another's.

    1. Refuse if the target branch is already checked out
    2. Read and validate the target branch's plan (before any mutation)
    3. Find the common ancestor: the last change shared, in order, by both plans
    4. Revert to the common ancestor using the current plan
    5. Switch the working tree
    6. Deploy the target plan

A failure between steps 4 and 6 is not rolled back automatically; the
registry is left consistent at whatever point was reached and the operator
re-runs the checkout (or deploy) once the cause is fixed.
"""

from __future__ import annotations

from collections.abc import Mapping

import structlog

from stratum.contracts.enums import DeployMode, VariableScope
from stratum.contracts.errors import AlreadyOnBranchError, NoCommonAncestorError
from stratum.contracts.reports import CheckoutResult, RevertReport
from stratum.contracts.vcs import VCS
from stratum.core.dependencies import DependencyGraph
from stratum.core.plan import Change, Plan, parse_plan_bytes
from stratum.engine.engine import Engine, change_ref

logger = structlog.get_logger(__name__)


def find_common_ancestor(from_plan: Plan, to_plan: Plan) -> Change | None:
    """Forward scan of to_plan; the last change also present in from_plan.

    Stops at the first change of to_plan that from_plan does not contain,
    so only a shared prefix counts.
    """
    ancestor: Change | None = None
    for change in to_plan.changes():
        if from_plan.get(change.id) is None:
            break
        ancestor = change
    return ancestor


class CheckoutOrchestrator:
    """Drives an Engine through revert, VCS switch, and deploy.

    Args:
        engine: Engine bound to the target database
        vcs: Version-control capability
        plan_file: Repository-relative path of the plan file
        mode: Checkpoint granularity for the redeploy
        log_only: Record without running scripts
        deploy_variables: Variables applied before the redeploy
        revert_variables: Variables applied before the revert
    """

    def __init__(
        self,
        engine: Engine,
        vcs: VCS,
        *,
        plan_file: str,
        mode: DeployMode = DeployMode.ALL,
        log_only: bool = False,
        deploy_variables: Mapping[str, str] | None = None,
        revert_variables: Mapping[str, str] | None = None,
    ) -> None:
        self._engine = engine
        self._vcs = vcs
        self._plan_file = plan_file
        self._mode = DeployMode(mode)
        self._log_only = log_only
        self._deploy_variables = dict(deploy_variables or {})
        self._revert_variables = dict(revert_variables or {})

    def checkout(self, branch: str, from_plan: Plan) -> CheckoutResult:
        """Check out branch, reverting and redeploying the database to match.

        Args:
            branch: Branch to switch to
            from_plan: Plan of the currently checked-out branch

        Raises:
            AlreadyOnBranchError: If branch is already checked out
            VCSError: If a VCS command fails
            PlanSyntaxError: If the target plan cannot be decoded or parsed
            DependencyError: If the target plan's dependencies are invalid
            NoCommonAncestorError: If the plans share no leading change
        """
        current = self._vcs.current_branch()
        if current == branch:
            raise AlreadyOnBranchError(branch)

        content = self._vcs.file_content_at(branch, self._plan_file)
        to_plan = parse_plan_bytes(content, default_project=from_plan.project)
        DependencyGraph.build(to_plan, self._engine.plan_lookup)

        ancestor = find_common_ancestor(from_plan, to_plan)
        if ancestor is None:
            raise NoCommonAncestorError(branch, current)
        logger.info(
            "common_ancestor_found",
            from_branch=current,
            to_branch=branch,
            change=ancestor.format_name_with_tags(),
            change_id=ancestor.id,
        )

        engine = self._engine
        revert_report: RevertReport | None = None
        engine.set_variables(VariableScope.REVERT, self._revert_variables)
        engine.plan = from_plan
        if engine.driver.is_deployed(from_plan.project, ancestor.id):
            revert_report = engine.revert(ancestor.id, log_only=self._log_only)
        else:
            logger.info("checkout_revert_skipped", reason="common ancestor not deployed", change=ancestor.name)

        self._vcs.switch_to(branch)

        engine.set_variables(VariableScope.DEPLOY, self._deploy_variables)
        engine.plan = to_plan
        deploy_report = engine.deploy(None, self._mode, self._log_only)

        return CheckoutResult(
            from_branch=current,
            to_branch=branch,
            common_ancestor=change_ref(ancestor),
            revert=revert_report,
            deploy=deploy_report,
        )
