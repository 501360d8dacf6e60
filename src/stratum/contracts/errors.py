"""Error taxonomy.

Every failure Stratum surfaces to an operator derives from StratumError.
Validation errors (PlanError, DependencyError) are raised before anything
is applied; execution errors (EngineError) stop the running operation at
the failing change and leave earlier checkpoints in place.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from pathlib import Path


class StratumError(Exception):
    """Base class for all Stratum errors."""

    pass


# =============================================================================
# Plan errors
# =============================================================================


class PlanError(StratumError):
    """Raised for problems with plan content or lookups."""

    pass


class PlanSyntaxError(PlanError):
    """Raised when plan text cannot be parsed.

    Attributes:
        line_number: 1-based line number of the offending line (None if not line-specific)
        line: Raw text of the offending line
    """

    def __init__(self, message: str, *, line_number: int | None = None, line: str | None = None) -> None:
        self.line_number = line_number
        self.line = line
        location = f" at line {line_number}" if line_number is not None else ""
        context = f": {line!r}" if line is not None else ""
        super().__init__(f"{message}{location}{context}")


class IntegrityError(PlanError):
    """Raised when the hash chain does not reproduce, or registry and plan disagree.

    Treated as corruption. There is no automatic repair.
    """

    def __init__(self, message: str, *, entry_id: str, entry_name: str) -> None:
        self.entry_id = entry_id
        self.entry_name = entry_name
        super().__init__(message)


class ChangeNotFoundError(PlanError):
    """Raised when a change reference does not resolve in the plan."""

    def __init__(self, key: str, project: str) -> None:
        self.key = key
        self.project = project
        super().__init__(f"Unknown change '{key}' in project '{project}'")


# =============================================================================
# Dependency errors
# =============================================================================


class DependencyError(StratumError):
    """Raised when dependency declarations are invalid or unsatisfied."""

    pass


class UnresolvedDependencyError(DependencyError):
    """Raised when a requires/conflicts reference cannot be resolved."""

    def __init__(self, change: str, reference: str, reason: str = "") -> None:
        self.change = change
        self.reference = reference
        suffix = f": {reason}" if reason else ""
        super().__init__(f"Change '{change}' references unknown '{reference}'{suffix}")


class CycleError(DependencyError):
    """Raised when requires edges form a cycle, possibly across projects."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = tuple(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class OrderViolationError(DependencyError):
    """Raised when a change requires a change that appears later in its own plan."""

    def __init__(self, change: str, reference: str) -> None:
        self.change = change
        self.reference = reference
        super().__init__(f"Change '{change}' requires '{reference}', which is planned after it")


class DependencyNotDeployedError(DependencyError):
    """Raised when a required change from another project is not deployed."""

    def __init__(self, change: str, reference: str) -> None:
        self.change = change
        self.reference = reference
        super().__init__(f"Change '{change}' requires '{reference}', which is not deployed")


class ConflictError(DependencyError):
    """Raised when deploying a change would coexist with a change it conflicts with."""

    def __init__(self, change: str, reference: str) -> None:
        self.change = change
        self.reference = reference
        super().__init__(f"Change '{change}' conflicts with '{reference}', which is deployed")


class DependentChangeError(DependencyError):
    """Raised when a revert would remove a change another project still requires."""

    def __init__(self, change: str, dependents: Sequence[str]) -> None:
        self.change = change
        self.dependents = tuple(dependents)
        super().__init__(f"Cannot revert '{change}': required by deployed {', '.join(self.dependents)}")


# =============================================================================
# Engine errors
# =============================================================================


class EngineError(StratumError):
    """Raised when a deploy, revert, or verify operation cannot proceed."""

    pass


class NotDeployedError(EngineError):
    """Raised when a revert target is not among the deployed changes."""

    def __init__(self, target: str, project: str) -> None:
        self.target = target
        self.project = project
        super().__init__(f"Change '{target}' is not deployed in project '{project}'")


class InvalidTargetError(EngineError):
    """Raised when a deploy target precedes the deployed high-water mark."""

    pass


class ScriptExecutionError(EngineError):
    """Raised when a deploy, revert, or verify script fails.

    Attributes:
        change: Change name (with tags) that failed
        change_id: Id of the failing change
        kind: Script kind ("deploy", "revert", "verify")
        path: Script path
        output: Underlying error output from the driver
    """

    def __init__(self, *, change: str, change_id: str, kind: str, path: Path, output: str) -> None:
        self.change = change
        self.change_id = change_id
        self.kind = kind
        self.path = path
        self.output = output
        super().__init__(f"{kind} script for '{change}' ({change_id[:12]}) failed: {path}\n{output}")


class RegistryLockedError(EngineError):
    """Raised when another operation holds the registry lock."""

    def __init__(self, holder: str, acquired_at: datetime | None = None) -> None:
        self.holder = holder
        self.acquired_at = acquired_at
        since = f" since {acquired_at.isoformat()}" if acquired_at is not None else ""
        super().__init__(f"Registry is locked by {holder}{since}")


class OperationAbortedError(EngineError):
    """Raised when the operator declines (or cannot be asked) to confirm a revert."""

    pass


class OperationCancelledError(EngineError):
    """Raised when a shutdown request is honored at a change boundary."""

    def __init__(self, message: str, *, completed: Sequence[str] = ()) -> None:
        self.completed = tuple(completed)
        super().__init__(message)


class InvalidStateError(EngineError):
    """Raised on an illegal engine state transition."""

    pass


# =============================================================================
# Checkout and VCS errors
# =============================================================================


class CheckoutError(StratumError):
    """Raised when a checkout precondition fails."""

    pass


class AlreadyOnBranchError(CheckoutError):
    """Raised when checking out the branch that is already checked out."""

    def __init__(self, branch: str) -> None:
        self.branch = branch
        super().__init__(f"Already on branch {branch}")


class NoCommonAncestorError(CheckoutError):
    """Raised when two plans share no change id."""

    def __init__(self, target: str, source: str) -> None:
        self.target = target
        self.source = source
        super().__init__(f"Target branch {target} has no changes in common with source branch {source}")


class VCSError(StratumError):
    """Raised when a version-control command fails."""

    pass
