# src/stratum/core/dependencies/graph.py
"""DependencyGraph: resolved requires/conflicts edges across projects.

Wraps a NetworkX DiGraph whose nodes are (project, change_id) pairs.
Edges point from prerequisite to dependent and come in two kinds:

    order     implicit edge between consecutive changes of one plan
    requires  declared requires reference (prerequisite -> dependent)

Conflicts are resolved but kept out of the edge set; they constrain what
may be deployed together, not in which order.

Build with DependencyGraph.build(); the constructor is internal.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

import networkx as nx
import structlog

from stratum.contracts.errors import (
    CycleError,
    OrderViolationError,
    UnresolvedDependencyError,
)
from stratum.core.plan import Change, Dependency, Plan, Tag

logger = structlog.get_logger(__name__)

type Node = tuple[str, str]
type PlanLookup = Callable[[str], Plan | None]

EdgeKind = Literal["order", "requires"]


@dataclass(frozen=True, slots=True)
class _ForwardReference:
    """Same-project requires that points at a later change."""

    dependent: Node
    prerequisite: Node
    reference: str


class DependencyGraph:
    """Resolved dependency graph for a plan and every plan it reaches."""

    def __init__(self, home: Plan) -> None:
        self._graph: nx.DiGraph[Node] = nx.DiGraph()
        self._home = home
        self._plans: dict[str, Plan] = {home.project: home}
        self._requires: dict[Node, list[Node]] = {}
        self._conflicts: dict[Node, list[Node]] = {}
        self._forward: list[_ForwardReference] = []

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def build(cls, plan: Plan, external_plan_lookup: PlanLookup | None = None) -> DependencyGraph:
        """Resolve every reference reachable from plan and validate the result.

        Args:
            plan: Home plan
            external_plan_lookup: Returns the plan for a foreign project name
                (None, or raising KeyError, when unknown). Called at most once
                per project per build.

        Raises:
            UnresolvedDependencyError: If a reference cannot be resolved
            OrderViolationError: If a same-project requires points forward
            CycleError: If requires and order edges form a cycle
        """
        graph = cls(plan)
        pending: deque[Plan] = deque([plan])
        expanded: set[str] = set()

        while pending:
            current = pending.popleft()
            if current.project in expanded:
                continue
            expanded.add(current.project)
            graph._add_plan_nodes(current)
            for foreign in graph._resolve_plan(current, external_plan_lookup):
                if foreign.project not in expanded:
                    pending.append(foreign)

        graph.topological_check()
        logger.debug(
            "dependency_graph_built",
            project=plan.project,
            projects=sorted(graph._plans),
            nodes=graph.node_count,
            edges=graph.edge_count,
        )
        return graph

    def _add_plan_nodes(self, plan: Plan) -> None:
        previous: Node | None = None
        for change in plan.changes():
            node = (plan.project, change.id)
            self._graph.add_node(node, change=change)
            if previous is not None:
                self._graph.add_edge(previous, node, kind="order")
            previous = node

    def _resolve_plan(self, plan: Plan, lookup: PlanLookup | None) -> list[Plan]:
        """Resolve plan's references; returns foreign plans newly reached."""
        reached: list[Plan] = []
        for position, change in enumerate(plan.changes()):
            node = (plan.project, change.id)
            requires: list[Node] = []
            conflicts: list[Node] = []

            for dep in change.requires:
                target_plan = self._plan_for(plan, change, dep, lookup, reached)
                target, forward = self._resolve(target_plan, plan, change, position, dep)
                requires.append(target)
                if forward:
                    self._forward.append(_ForwardReference(node, target, str(dep)))
                if not self._graph.has_edge(target, node):
                    self._graph.add_edge(target, node, kind="requires")

            for dep in change.conflicts:
                target_plan = self._plan_for(plan, change, dep, lookup, reached)
                target, _ = self._resolve(target_plan, plan, change, position, dep)
                conflicts.append(target)

            self._requires[node] = requires
            self._conflicts[node] = conflicts
        return reached

    def _plan_for(
        self,
        plan: Plan,
        change: Change,
        dep: Dependency,
        lookup: PlanLookup | None,
        reached: list[Plan],
    ) -> Plan:
        if not dep.is_foreign(plan.project):
            return plan
        project = dep.project
        assert project is not None  # is_foreign() implies a project
        if project in self._plans:
            return self._plans[project]

        foreign: Plan | None = None
        if lookup is not None:
            try:
                foreign = lookup(project)
            except KeyError:
                foreign = None
        if foreign is None:
            raise UnresolvedDependencyError(
                f"{plan.project}:{change.name}",
                str(dep),
                f"no plan available for project '{project}'",
            )
        self._plans[project] = foreign
        reached.append(foreign)
        return foreign

    @staticmethod
    def _resolve(
        target_plan: Plan,
        home_plan: Plan,
        change: Change,
        position: int,
        dep: Dependency,
    ) -> tuple[Node, bool]:
        """Resolve dep to a node. Returns (node, points_forward)."""
        local = target_plan is home_plan
        resolved: Change | None = None

        if local and dep.change is not None and dep.tag is None:
            resolved = home_plan.latest_instance_before(dep.change, position)
            if resolved is None:
                later = home_plan.instances(dep.change)
                resolved = later[0] if later else None
        else:
            entry = target_plan.get(dep.key)
            if isinstance(entry, Tag):
                entry = target_plan.get(entry.change_id)
            resolved = entry if isinstance(entry, Change) else None

        if resolved is None:
            raise UnresolvedDependencyError(f"{home_plan.project}:{change.name}", str(dep))

        forward = local and not dep.conflict and home_plan.index_of(resolved.id) >= position
        return (target_plan.project, resolved.id), forward

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def topological_check(self) -> None:
        """Validate ordering constraints.

        Raises:
            OrderViolationError: For a same-project requires pointing forward
            CycleError: For any cycle over requires and order edges
        """
        if self._forward:
            first = self._forward[0]
            raise OrderViolationError(self.label(first.dependent), self.label(first.prerequisite))

        if not nx.is_directed_acyclic_graph(self._graph):
            try:
                cycle = nx.find_cycle(self._graph)
            except nx.NetworkXNoCycle:
                raise CycleError([]) from None
            labels = [self.label(edge[0]) for edge in cycle]
            labels.append(labels[0])
            raise CycleError(labels)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def project(self) -> str:
        return self._home.project

    @property
    def node_count(self) -> int:
        return self._graph.number_of_nodes()

    @property
    def edge_count(self) -> int:
        return self._graph.number_of_edges()

    @property
    def projects(self) -> list[str]:
        return sorted(self._plans)

    def plan_for(self, project: str) -> Plan:
        """Plan of a project reached during the build.

        Raises:
            KeyError: If the project was never reached
        """
        return self._plans[project]

    def change(self, node: Node) -> Change:
        change: Change = self._graph.nodes[node]["change"]
        return change

    def label(self, node: Node) -> str:
        """Display label "project:name" for a node."""
        return f"{node[0]}:{self.change(node).name}"

    def _node(self, change_id: str, project: str | None) -> Node:
        return (project or self._home.project, change_id)

    def requires_of(self, change_id: str, project: str | None = None) -> list[Node]:
        """Resolved requires of a change (home project unless project is given)."""
        return list(self._requires.get(self._node(change_id, project), ()))

    def conflicts_of(self, change_id: str, project: str | None = None) -> list[Node]:
        return list(self._conflicts.get(self._node(change_id, project), ()))

    def foreign_requires_of(self, change_id: str, project: str | None = None) -> list[Node]:
        """Resolved requires that live in a different project than the change."""
        node = self._node(change_id, project)
        return [target for target in self._requires.get(node, ()) if target[0] != node[0]]

    def edges(self, kind: EdgeKind | None = None) -> list[tuple[Node, Node]]:
        """Edges (prerequisite, dependent), optionally filtered by kind."""
        return [(u, v) for u, v, data in self._graph.edges(data=True) if kind is None or data["kind"] == kind]
