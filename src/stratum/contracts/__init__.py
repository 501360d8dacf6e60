"""Shared contracts: enums, errors, registry records, reports, and protocols.

Leaf package - nothing here imports from stratum.core or stratum.engine.
"""

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
    AlreadyOnBranchError,
    ChangeNotFoundError,
    CheckoutError,
    ConflictError,
    CycleError,
    DependencyError,
    DependencyNotDeployedError,
    DependentChangeError,
    EngineError,
    IntegrityError,
    InvalidStateError,
    InvalidTargetError,
    NoCommonAncestorError,
    NotDeployedError,
    OperationAbortedError,
    OperationCancelledError,
    OrderViolationError,
    PlanError,
    PlanSyntaxError,
    RegistryLockedError,
    ScriptExecutionError,
    StratumError,
    UnresolvedDependencyError,
    VCSError,
)
from stratum.contracts.registry import Identity, LockInfo, RegistryEntry, RegistryEvent
from stratum.contracts.reports import (
    ChangeRef,
    CheckoutResult,
    DeployReport,
    RevertReport,
    VerifyReport,
    VerifyResult,
)
from stratum.contracts.vcs import VCS

__all__ = [
    "VCS",
    "AlreadyOnBranchError",
    "ChangeNotFoundError",
    "ChangeRef",
    "CheckoutError",
    "CheckoutResult",
    "ConflictError",
    "CycleError",
    "DependencyError",
    "DependencyNotDeployedError",
    "DependentChangeError",
    "DeployMode",
    "DeployReport",
    "Driver",
    "EngineError",
    "EngineState",
    "EventType",
    "Identity",
    "IntegrityError",
    "InvalidStateError",
    "InvalidTargetError",
    "LockInfo",
    "NoCommonAncestorError",
    "NotDeployedError",
    "OperationAbortedError",
    "OperationCancelledError",
    "OrderViolationError",
    "PlanError",
    "PlanSyntaxError",
    "RegistryEntry",
    "RegistryEvent",
    "RegistryLockedError",
    "RevertReport",
    "ScriptExecutionError",
    "ScriptKind",
    "StratumError",
    "UnresolvedDependencyError",
    "VCSError",
    "VariableScope",
    "VerifyReport",
    "VerifyResult",
    "VerifyStatus",
]
