"""Operation result types returned by the Engine and the checkout orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field

from stratum.contracts.enums import DeployMode, VerifyStatus


@dataclass(frozen=True, slots=True)
class ChangeRef:
    """Lightweight reference to a plan change used in reports."""

    change_id: str
    name: str
    display: str


@dataclass
class DeployReport:
    """Result of a deploy.

    Attributes:
        project: Project that was deployed
        mode: Checkpoint granularity used
        log_only: True if scripts were not executed
        deployed: Changes recorded in the registry, in deploy order
        checkpoints: Number of registry commits performed
    """

    project: str
    mode: DeployMode
    log_only: bool = False
    deployed: list[ChangeRef] = field(default_factory=list)
    checkpoints: int = 0

    @property
    def nothing_to_do(self) -> bool:
        return not self.deployed


@dataclass
class RevertReport:
    """Result of a revert. reverted is in revert order (most recent first)."""

    project: str
    log_only: bool = False
    target: ChangeRef | None = None
    reverted: list[ChangeRef] = field(default_factory=list)

    @property
    def nothing_to_do(self) -> bool:
        return not self.reverted


@dataclass(frozen=True, slots=True)
class VerifyResult:
    """Outcome of verifying one deployed change."""

    change: ChangeRef
    status: VerifyStatus
    output: str = ""


@dataclass
class VerifyReport:
    """Result of a verify. Never implies any registry mutation."""

    project: str
    results: list[VerifyResult] = field(default_factory=list)
    undeployed: list[ChangeRef] = field(default_factory=list)
    not_in_plan: list[str] = field(default_factory=list)

    @property
    def failures(self) -> list[VerifyResult]:
        return [r for r in self.results if r.status == VerifyStatus.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failures and not self.not_in_plan


@dataclass
class CheckoutResult:
    """Result of a branch checkout: the revert and redeploy it performed."""

    from_branch: str
    to_branch: str
    common_ancestor: ChangeRef
    revert: RevertReport | None
    deploy: DeployReport
