"""Registry: persisted record of which changes are deployed to a target."""

from stratum.core.registry.database import RegistryDB
from stratum.core.registry.repository import (
    REGISTRY_LOCK_NAME,
    ChangeRepository,
    EventRepository,
    RegistryRepository,
)
from stratum.core.registry.schema import (
    changes_table,
    events_table,
    locks_table,
    metadata,
    projects_table,
)

__all__ = [
    "REGISTRY_LOCK_NAME",
    "ChangeRepository",
    "EventRepository",
    "RegistryDB",
    "RegistryRepository",
    "changes_table",
    "events_table",
    "locks_table",
    "metadata",
    "projects_table",
]
