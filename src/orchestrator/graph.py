"""Resource dependency graph construction and validation.

This module holds the static shape of a deployment:
1. Resource nodes with their declared dependencies
2. Validation (duplicate ids, dangling references, cycles)
3. Ready-node queries used by the scheduler
4. Flat sub-plans used by failover boot groups

DESIGN PHILOSOPHY:
- A plan is validated once, at build time. A cycle or a dangling reference is
  a validation error, never a runtime state: if build_plan raises, no node
  has left Pending.
- Node ids and edges are immutable after build. Only node state and outputs
  change, and only the scheduler changes them.
- Iteration is always in sorted id order so the same node/edge set yields
  the same plan and the same topological order.

EXAMPLE:
```python
plan = build_plan(
    [
        ResourceNode("db"),
        ResourceNode("app", depends_on={"db"}),
        ResourceNode("web", depends_on={"app"}),
    ]
)
ready_nodes(plan)  # {"db"}
```
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from .config import MAX_NODES_PER_PLAN, VALID_NODE_ID_PATTERN

if TYPE_CHECKING:
    from .executor import BootstrapAction, RetryPolicy

logger = logging.getLogger(__name__)


class NodeState(str, Enum):
    """Lifecycle state of a resource node within one deployment run."""

    PENDING = "pending"  # Waiting on dependencies
    READY = "ready"  # Dependencies succeeded, waiting for a worker slot
    PROVISIONING = "provisioning"  # Bootstrap task running
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # A dependency failed or was skipped


TERMINAL_NODE_STATES: frozenset[NodeState] = frozenset(
    {NodeState.SUCCEEDED, NodeState.FAILED, NodeState.SKIPPED}
)


class PlanValidationError(Exception):
    """Raised when a deployment plan is malformed. The deployment never starts."""

    pass


class CyclicDependencyError(PlanValidationError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class DanglingDependencyError(PlanValidationError):
    """Raised when an edge references an unknown node id."""

    def __init__(self, node_id: str, missing: str, message: str | None = None) -> None:
        self.node_id = node_id
        self.missing = missing
        super().__init__(message or f"Unknown node '{missing}' referenced from '{node_id}'")


class DuplicateNodeError(PlanValidationError):
    """Raised when two nodes share an id."""

    pass


@dataclass
class ResourceNode:
    """A unit of provisionable infrastructure.

    Attributes:
        id: Unique node id.
        depends_on: Ids of nodes that must succeed before this one starts.
        provision_payload: Opaque payload handed to the bootstrap action.
        state: Current lifecycle state.
        outputs: Values published on success (e.g. a principal reference).
        contended_resource: Shared lock the bootstrap task waits on, if any.
        max_wait_seconds: Override for the contended-resource wait.
        retry_policy: Override for the bootstrap action retry policy.
        action: Override for the scheduler's default bootstrap action.
    """

    id: str
    depends_on: frozenset[str] = field(default_factory=frozenset)
    provision_payload: Any = None
    state: NodeState = NodeState.PENDING
    outputs: dict[str, str] = field(default_factory=dict)
    contended_resource: str | None = None
    max_wait_seconds: float | None = None
    retry_policy: RetryPolicy | None = None
    action: BootstrapAction | None = None

    def __post_init__(self) -> None:
        self.depends_on = frozenset(self.depends_on)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_NODE_STATES

    def fresh_copy(self, depends_on: Iterable[str] | None = None) -> ResourceNode:
        """Return a Pending copy with no outputs."""
        return replace(
            self,
            depends_on=frozenset(self.depends_on if depends_on is None else depends_on),
            state=NodeState.PENDING,
            outputs={},
        )


@dataclass(frozen=True, eq=False)
class DeploymentPlan:
    """Validated, immutable set of resource nodes and dependency edges.

    Build instances with build_plan(); the constructor performs no validation.
    Edges are (dependent, dependency) pairs.
    """

    nodes: Mapping[str, ResourceNode]
    edges: frozenset[tuple[str, str]]

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __getitem__(self, node_id: str) -> ResourceNode:
        return self.nodes[node_id]

    @property
    def node_ids(self) -> list[str]:
        return sorted(self.nodes)

    def states(self) -> dict[str, NodeState]:
        """Snapshot of every node's state."""
        return {node_id: self.nodes[node_id].state for node_id in self.node_ids}

    def direct_dependents(self, node_id: str) -> list[str]:
        """Ids of nodes that depend directly on node_id."""
        return sorted(dependent for dependent, dependency in self.edges if dependency == node_id)

    def dependents_of(self, node_id: str) -> set[str]:
        """Ids of every node that transitively depends on node_id."""
        found: set[str] = set()
        frontier = [node_id]
        while frontier:
            current = frontier.pop()
            for dependent in self.direct_dependents(current):
                if dependent not in found:
                    found.add(dependent)
                    frontier.append(dependent)
        return found

    def topological_order(self) -> list[str]:
        """Return node ids in dependency order (dependencies first).

        Ties are broken by id so the order is deterministic.
        """
        in_degree = {node_id: len(self.nodes[node_id].depends_on) for node_id in self.nodes}
        queue = sorted(node_id for node_id, degree in in_degree.items() if degree == 0)
        result: list[str] = []

        while queue:
            current = queue.pop(0)
            result.append(current)
            for dependent in self.direct_dependents(current):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)
            queue.sort()

        return result

    def subset(self, node_ids: Iterable[str]) -> DeploymentPlan:
        """Build a flat plan of fresh copies of the given nodes.

        Dependencies are dropped: the resulting plan has no edges, so every
        node is ready immediately. Used for failover boot groups.

        Raises:
            DanglingDependencyError: If an id is not part of this plan.
        """
        copies: dict[str, ResourceNode] = {}
        for node_id in sorted(set(node_ids)):
            if node_id not in self.nodes:
                raise DanglingDependencyError("<subset>", node_id)
            copies[node_id] = self.nodes[node_id].fresh_copy(depends_on=())
        return DeploymentPlan(nodes=MappingProxyType(copies), edges=frozenset())

    def reset(self) -> None:
        """Return every node to Pending and clear outputs."""
        for node in self.nodes.values():
            node.state = NodeState.PENDING
            node.outputs = {}


def build_plan(
    nodes: Iterable[ResourceNode],
    edges: Iterable[tuple[str, str]] = (),
) -> DeploymentPlan:
    """Validate nodes and edges and build an immutable deployment plan.

    Input nodes are copied; the plan owns its own node objects, all Pending.

    Args:
        nodes: Resource nodes. Their depends_on sets contribute edges.
        edges: Extra (dependent, dependency) pairs.

    Returns:
        Validated deployment plan.

    Raises:
        DuplicateNodeError: If two nodes share an id.
        DanglingDependencyError: If an edge references an unknown node.
        CyclicDependencyError: If the dependency graph has a cycle.
        PlanValidationError: If a node id is malformed or the plan is too large.
    """
    copies: dict[str, ResourceNode] = {}
    for node in nodes:
        if not re.match(VALID_NODE_ID_PATTERN, node.id):
            raise PlanValidationError(
                f"Node id must match pattern {VALID_NODE_ID_PATTERN}: '{node.id}'"
            )
        if node.id in copies:
            raise DuplicateNodeError(f"Duplicate node id: '{node.id}'")
        copies[node.id] = node.fresh_copy()

    if len(copies) > MAX_NODES_PER_PLAN:
        raise PlanValidationError(
            f"Plan has {len(copies)} nodes, maximum is {MAX_NODES_PER_PLAN}"
        )

    dependencies: dict[str, set[str]] = {
        node_id: set(node.depends_on) for node_id, node in copies.items()
    }
    for dependent, dependency in edges:
        if dependent not in copies:
            raise DanglingDependencyError(
                dependency,
                dependent,
                f"Edge '{dependent}' -> '{dependency}' has unknown dependent '{dependent}'",
            )
        dependencies[dependent].add(dependency)

    for node_id in sorted(dependencies):
        for dependency in sorted(dependencies[node_id]):
            if dependency not in copies:
                raise DanglingDependencyError(node_id, dependency)

    _check_acyclic(dependencies)

    for node_id, deps in dependencies.items():
        copies[node_id].depends_on = frozenset(deps)

    all_edges = frozenset(
        (node_id, dependency) for node_id, deps in dependencies.items() for dependency in deps
    )

    logger.debug(
        "Built deployment plan",
        extra={"node_count": len(copies), "edge_count": len(all_edges)},
    )

    ordered = {node_id: copies[node_id] for node_id in sorted(copies)}
    return DeploymentPlan(nodes=MappingProxyType(ordered), edges=all_edges)


def _check_acyclic(dependencies: Mapping[str, set[str]]) -> None:
    """Depth-first colouring cycle check.

    White nodes are unvisited, grey nodes are on the current path, black
    nodes are fully explored. Reaching a grey node closes a cycle.
    """
    white, grey, black = 0, 1, 2
    colour = dict.fromkeys(dependencies, white)
    path: list[str] = []

    def visit(node_id: str) -> None:
        colour[node_id] = grey
        path.append(node_id)
        for dependency in sorted(dependencies[node_id]):
            if colour[dependency] == grey:
                start = path.index(dependency)
                raise CyclicDependencyError([*path[start:], dependency])
            if colour[dependency] == white:
                visit(dependency)
        path.pop()
        colour[node_id] = black

    for node_id in sorted(dependencies):
        if colour[node_id] == white:
            visit(node_id)


def ready_nodes(plan: DeploymentPlan) -> set[str]:
    """Ids of Pending nodes whose dependencies have all Succeeded.

    Pure query: does not change any node state.
    """
    return {
        node_id
        for node_id, node in plan.nodes.items()
        if node.state == NodeState.PENDING
        and all(plan.nodes[dep].state == NodeState.SUCCEEDED for dep in node.depends_on)
    }
