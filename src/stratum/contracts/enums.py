"""All status codes, modes, and kinds used across subsystem boundaries."""

from enum import StrEnum


class DeployMode(StrEnum):
    """Checkpoint granularity for a deploy.

    Values:
        CHANGE: Commit the registry after every change
        TAG: Commit after each change that carries a tag (and at the end)
        ALL: Commit once, after the whole requested span succeeds
    """

    CHANGE = "change"
    TAG = "tag"
    ALL = "all"


class EngineState(StrEnum):
    """Lifecycle state of an Engine instance."""

    IDLE = "idle"
    DEPLOYING = "deploying"
    REVERTING = "reverting"
    VERIFYING = "verifying"
    FAILED = "failed"


class ScriptKind(StrEnum):
    """Kind of change script. Doubles as the script subdirectory name."""

    DEPLOY = "deploy"
    REVERT = "revert"
    VERIFY = "verify"


class EventType(StrEnum):
    """Type of registry event.

    Stored in database (stratum_events.event).
    """

    DEPLOY = "deploy"
    REVERT = "revert"
    FAIL = "fail"


class VerifyStatus(StrEnum):
    """Outcome of running one verify script."""

    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


class VariableScope(StrEnum):
    """Scope that script variables apply to."""

    DEPLOY = "deploy"
    REVERT = "revert"
