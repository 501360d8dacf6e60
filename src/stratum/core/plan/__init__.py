"""Plan subsystem: hash-chained change ledger, its text format, and lookups."""

from stratum.core.plan.builder import PlanBuilder
from stratum.core.plan.models import (
    Change,
    Dependency,
    PlanEntry,
    Tag,
    format_name_with_tags,
)
from stratum.core.plan.parser import format_plan, parse_plan, parse_plan_bytes, write_plan
from stratum.core.plan.plan import Plan

__all__ = [
    "Change",
    "Dependency",
    "Plan",
    "PlanBuilder",
    "PlanEntry",
    "Tag",
    "format_name_with_tags",
    "format_plan",
    "parse_plan",
    "parse_plan_bytes",
    "write_plan",
]
