"""Cross-project dependency resolution and ordering checks."""

from stratum.core.dependencies.graph import DependencyGraph, Node, PlanLookup

__all__ = ["DependencyGraph", "Node", "PlanLookup"]
