"""Engine: deploy/revert/verify state machine, checkout orchestration, SQL driver."""

from stratum.engine.checkout import CheckoutOrchestrator, find_common_ancestor
from stratum.engine.driver import SQLAlchemyDriver, split_sqlite_statements
from stratum.engine.engine import ConfirmHook, Engine
from stratum.engine.signals import shutdown_handler_context

__all__ = [
    "CheckoutOrchestrator",
    "ConfirmHook",
    "Engine",
    "SQLAlchemyDriver",
    "find_common_ancestor",
    "shutdown_handler_context",
    "split_sqlite_statements",
]
