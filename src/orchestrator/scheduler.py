"""Deployment scheduler: execute a whole plan with maximal safe parallelism.

Run state machine: NOT_STARTED -> RUNNING -> {COMPLETED, PARTIALLY_FAILED, CANCELLED}

CONCURRENCY MODEL:
- One asyncio worker per ready node, bounded by an optional semaphore.
- The plan's node-state table is the only shared mutable state. Every
  transition happens under a single asyncio.Lock, held only for the
  transition itself and never across an action, probe or sleep.
- A worker blocks only itself while waiting on a contended resource or
  between retries. The scheduler loop suspends only when nothing is ready
  and at least one node is still provisioning.

ORDERING:
- A node enters PROVISIONING only after every dependency SUCCEEDED.
- Sibling order is unspecified.

FAILURE PROPAGATION:
- A failed node marks all of its transitive dependents SKIPPED.
- Unrelated branches keep running to completion.
- Nothing is rolled back.

CANCELLATION:
- Once the cancel event is set no new node enters PROVISIONING. In-flight
  tasks finish their current attempt; the run reports CANCELLED.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import (
    DEFAULT_LOCK_MAX_WAIT_SECONDS,
    DEFAULT_LOCK_POLL_INTERVAL_SECONDS,
    OrchestratorConfig,
)
from .executor import (
    BootstrapAction,
    BootstrapTask,
    ConvergenceExecutor,
    ConvergenceResult,
    ConvergenceStatus,
    RetryPolicy,
)
from .graph import DeploymentPlan, NodeState, PlanValidationError, ResourceNode, ready_nodes

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    """State of a deployment run."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"  # Every node succeeded
    PARTIALLY_FAILED = "partially_failed"  # At least one node failed or skipped
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class NodeEvent:
    """A single node state transition, in the order it happened."""

    sequence: int
    node_id: str
    state: NodeState
    timestamp: datetime


@dataclass
class DeploymentResult:
    """Terminal report of a deployment run."""

    state: RunState = RunState.NOT_STARTED
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    node_states: dict[str, NodeState] = field(default_factory=dict)
    node_outputs: dict[str, dict[str, str]] = field(default_factory=dict)
    node_results: dict[str, ConvergenceResult] = field(default_factory=dict)
    events: list[NodeEvent] = field(default_factory=list)
    cancelled: bool = False

    def _ids_in(self, state: NodeState) -> list[str]:
        return sorted(node_id for node_id, s in self.node_states.items() if s == state)

    @property
    def succeeded(self) -> list[str]:
        return self._ids_in(NodeState.SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        return self._ids_in(NodeState.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._ids_in(NodeState.SKIPPED)

    @property
    def not_started(self) -> list[str]:
        """Nodes left untouched by a cancelled run."""
        return sorted(
            node_id
            for node_id, s in self.node_states.items()
            if s in (NodeState.PENDING, NodeState.READY)
        )

    @property
    def success(self) -> bool:
        return self.state == RunState.COMPLETED

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def events_for(self, node_id: str) -> list[NodeEvent]:
        return [event for event in self.events if event.node_id == node_id]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "state": self.state.value,
            "start_time": self.start_time.isoformat(),
            "duration_seconds": self.duration_seconds,
            "nodes": {node_id: s.value for node_id, s in sorted(self.node_states.items())},
            "failed": self.failed,
            "skipped": self.skipped,
            "not_started": self.not_started,
            "failures": {
                node_id: {
                    "reason": result.reason.value if result.reason else None,
                    "error": result.error_detail,
                    "attempts": result.attempts,
                }
                for node_id, result in sorted(self.node_results.items())
                if not result.succeeded
            },
        }


@dataclass
class _RunContext:
    """Per-run bookkeeping shared by the scheduler loop and its workers."""

    plan: DeploymentPlan
    result: DeploymentResult
    lock: asyncio.Lock
    semaphore: asyncio.Semaphore | None
    cancel_event: asyncio.Event
    sequence: int = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class Scheduler:
    """Executes a deployment plan to completion.

    The plan is owned by the scheduler for the duration of one deploy() call.
    """

    def __init__(
        self,
        executor: ConvergenceExecutor | None = None,
        *,
        default_action: BootstrapAction | None = None,
        max_concurrency: int | None = None,
        default_retry_policy: RetryPolicy | None = None,
        lock_max_wait_seconds: float = DEFAULT_LOCK_MAX_WAIT_SECONDS,
        lock_poll_interval_seconds: float = DEFAULT_LOCK_POLL_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the scheduler.

        Args:
            executor: Convergence executor used for every node.
            default_action: Bootstrap action for nodes without their own.
            max_concurrency: Max nodes provisioning at once. None or 0 is unbounded.
            default_retry_policy: Retry policy for nodes without their own.
            lock_max_wait_seconds: Contended-resource wait for nodes without their own.
            lock_poll_interval_seconds: Interval between contended-resource checks.
        """
        self._executor = executor or ConvergenceExecutor()
        self._default_action = default_action
        self._max_concurrency = max_concurrency or None
        self._default_retry_policy = default_retry_policy or RetryPolicy()
        self._lock_max_wait_seconds = lock_max_wait_seconds
        self._lock_poll_interval_seconds = lock_poll_interval_seconds

    @classmethod
    def from_config(
        cls,
        config: OrchestratorConfig,
        executor: ConvergenceExecutor | None = None,
        default_action: BootstrapAction | None = None,
    ) -> Scheduler:
        """Create a scheduler with defaults taken from configuration."""
        return cls(
            executor,
            default_action=default_action,
            max_concurrency=config.max_concurrency,
            default_retry_policy=config.default_retry_policy(),
            lock_max_wait_seconds=config.lock_max_wait_seconds,
            lock_poll_interval_seconds=config.lock_poll_interval_seconds,
        )

    def task_for(self, node: ResourceNode) -> BootstrapTask:
        """Build the bootstrap task for a node, applying scheduler defaults.

        Raises:
            PlanValidationError: If neither the node nor the scheduler has an action.
        """
        action = node.action or self._default_action
        if action is None:
            raise PlanValidationError(f"No bootstrap action for node '{node.id}'")

        return BootstrapTask(
            node_id=node.id,
            action=action,
            payload=node.provision_payload,
            contended_resource=node.contended_resource or None,
            max_wait_seconds=(
                node.max_wait_seconds
                if node.max_wait_seconds is not None
                else self._lock_max_wait_seconds
            ),
            poll_interval_seconds=self._lock_poll_interval_seconds,
            retry_policy=node.retry_policy or self._default_retry_policy,
        )

    async def deploy(
        self,
        plan: DeploymentPlan,
        cancel_event: asyncio.Event | None = None,
    ) -> DeploymentResult:
        """Execute every node of the plan, respecting dependency order.

        Args:
            plan: Validated deployment plan. Node states are updated in place.
            cancel_event: Run-level cancellation signal.

        Returns:
            Terminal deployment result.

        Raises:
            PlanValidationError: If a node has no bootstrap action. Raised
                before any node starts.
        """
        missing = [
            node.id
            for node in plan.nodes.values()
            if (node.action or self._default_action) is None
        ]
        if missing:
            raise PlanValidationError(f"No bootstrap action for nodes: {sorted(missing)}")

        result = DeploymentResult(state=RunState.RUNNING)
        ctx = _RunContext(
            plan=plan,
            result=result,
            lock=asyncio.Lock(),
            semaphore=asyncio.Semaphore(self._max_concurrency) if self._max_concurrency else None,
            cancel_event=cancel_event or asyncio.Event(),
        )

        logger.info(
            "Deployment started",
            extra={"node_count": len(plan), "max_concurrency": self._max_concurrency},
        )

        in_flight: dict[asyncio.Task[ConvergenceResult | None], str] = {}

        while True:
            async with ctx.lock:
                launch: list[str] = []
                if not ctx.cancelled:
                    launch = sorted(ready_nodes(plan))
                    for node_id in launch:
                        self._transition(ctx, node_id, NodeState.READY)

            for node_id in launch:
                worker = asyncio.create_task(self._execute_node(ctx, node_id))
                in_flight[worker] = node_id

            if not in_flight:
                break

            done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for worker in done:
                node_id = in_flight.pop(worker)
                try:
                    outcome = worker.result()
                except Exception as e:
                    logger.exception(
                        "Node worker crashed",
                        extra={"node_id": node_id, "error": str(e)},
                    )
                    outcome = ConvergenceResult(
                        node_id=node_id,
                        status=ConvergenceStatus.FAILED,
                        error_detail=f"{type(e).__name__}: {e}",
                    )
                    async with ctx.lock:
                        result.node_results[node_id] = outcome
                        self._transition(ctx, node_id, NodeState.FAILED)

                if outcome is not None and not outcome.succeeded:
                    async with ctx.lock:
                        self._cascade_skip(ctx, node_id)

        return self._finish(ctx)

    async def _execute_node(self, ctx: _RunContext, node_id: str) -> ConvergenceResult | None:
        """Drive one Ready node through Provisioning to a terminal state.

        Returns:
            The convergence result, or None if cancellation prevented the start.
        """
        slot = ctx.semaphore if ctx.semaphore is not None else contextlib.nullcontext()
        async with slot:
            async with ctx.lock:
                if ctx.cancelled:
                    self._transition(ctx, node_id, NodeState.PENDING)
                    return None
                self._transition(ctx, node_id, NodeState.PROVISIONING)
                task = self.task_for(ctx.plan[node_id])

            outcome = await self._executor.run(task, ctx.cancel_event)

        async with ctx.lock:
            ctx.result.node_results[node_id] = outcome
            node = ctx.plan[node_id]
            if outcome.succeeded:
                node.outputs = dict(outcome.outputs)
                self._transition(ctx, node_id, NodeState.SUCCEEDED)
            else:
                self._transition(ctx, node_id, NodeState.FAILED)

        return outcome

    def _cascade_skip(self, ctx: _RunContext, failed_id: str) -> None:
        """Mark every not-yet-started dependent of a failed node as Skipped."""
        for dependent in sorted(ctx.plan.dependents_of(failed_id)):
            if ctx.plan[dependent].state in (NodeState.PENDING, NodeState.READY):
                logger.warning(
                    "Skipping node because a dependency did not succeed",
                    extra={"node_id": dependent, "failed_dependency": failed_id},
                )
                self._transition(ctx, dependent, NodeState.SKIPPED)

    def _transition(self, ctx: _RunContext, node_id: str, state: NodeState) -> None:
        """Record a node state change. Caller holds ctx.lock."""
        ctx.plan[node_id].state = state
        ctx.sequence += 1
        ctx.result.events.append(
            NodeEvent(
                sequence=ctx.sequence,
                node_id=node_id,
                state=state,
                timestamp=datetime.now(UTC),
            )
        )
        logger.debug("Node state changed", extra={"node_id": node_id, "state": state.value})

    def _finish(self, ctx: _RunContext) -> DeploymentResult:
        result = ctx.result
        result.node_states = ctx.plan.states()
        result.node_outputs = {
            node_id: dict(node.outputs)
            for node_id, node in ctx.plan.nodes.items()
            if node.state == NodeState.SUCCEEDED
        }
        result.cancelled = ctx.cancelled

        if all(state == NodeState.SUCCEEDED for state in result.node_states.values()):
            result.state = RunState.COMPLETED
        elif ctx.cancelled:
            result.state = RunState.CANCELLED
        else:
            result.state = RunState.PARTIALLY_FAILED

        result.end_time = datetime.now(UTC)

        log = logger.info if result.success else logger.error
        log(
            "Deployment finished",
            extra={
                "state": result.state.value,
                "succeeded": len(result.succeeded),
                "failed": result.failed,
                "skipped": result.skipped,
                "not_started": result.not_started,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result
