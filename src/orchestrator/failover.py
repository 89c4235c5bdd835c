"""Phased failover across ordered boot groups.

A recovery plan replays part of a completed deployment as an ordered list of
boot groups. Run state machine:

    NOT_STARTED -> IN_PROGRESS -> (WAITING_ON_GATE <-> IN_PROGRESS) -> {SUCCEEDED, FAILED}

For each group:
1. Every member is provisioned through the scheduler as a flat plan. The
   group is a barrier: nothing moves on until every member is terminal.
2. The group's wait condition is polled until ready or timeout (e.g. "data
   tier reports live" before the app tier starts).
3. A MANUAL gate parks the run in WAITING_ON_GATE until resume_manual_gate()
   is called. An AUTOMATIC gate moves straight to the next group.

Any member failure or wait-condition timeout fails the whole run. Boot order
is a hard precondition, so groups are never retried or continued partially.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import DEFAULT_GATE_POLL_INTERVAL_SECONDS, DEFAULT_GATE_TIMEOUT_SECONDS
from .executor import SleepFunc, invoke
from .graph import DeploymentPlan, PlanValidationError
from .scheduler import DeploymentResult, Scheduler

logger = logging.getLogger(__name__)


class GateMode(str, Enum):
    """Transition control after a boot group completes."""

    AUTOMATIC = "automatic"
    MANUAL = "manual"


class FailoverState(str, Enum):
    """State of a failover run."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    WAITING_ON_GATE = "waiting_on_gate"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_FAILOVER_STATES: frozenset[FailoverState] = frozenset(
    {FailoverState.SUCCEEDED, FailoverState.FAILED}
)


class FailoverFailureReason(str, Enum):
    """Why a failover run failed."""

    MEMBER_FAILURE = "member_failure"
    GATE_TIMEOUT = "gate_timeout"
    GROUP_REJECTED = "group_rejected"  # Scheduler refused the group plan


class FailoverStateError(Exception):
    """Raised on an illegal failover transition or unknown run id."""

    pass


class RecoveryPlanError(PlanValidationError):
    """Raised when a recovery plan is malformed."""

    pass


@dataclass(frozen=True)
class WaitContext:
    """What a wait-condition probe gets to look at."""

    group_name: str
    group_index: int
    member_outputs: Mapping[str, Mapping[str, str]]


# Wait-condition probe: WaitContext -> bool (sync or async)
WaitProbe = Callable[[WaitContext], Any]


@dataclass(frozen=True)
class WaitCondition:
    """Precondition polled after a group's members are terminal.

    A condition without a probe is satisfied immediately.
    """

    probe: WaitProbe | None = None
    timeout_seconds: float = DEFAULT_GATE_TIMEOUT_SECONDS
    poll_interval_seconds: float = DEFAULT_GATE_POLL_INTERVAL_SECONDS


@dataclass(frozen=True)
class BootGroup:
    """A set of nodes that reach a terminal state together."""

    name: str
    members: frozenset[str]
    wait_condition: WaitCondition = field(default_factory=WaitCondition)
    gate: GateMode = GateMode.AUTOMATIC


@dataclass(frozen=True, eq=False)
class RecoveryPlan:
    """Ordered boot groups drawn from a completed deployment plan."""

    source_plan: DeploymentPlan
    groups: tuple[BootGroup, ...]


def build_recovery_plan(source_plan: DeploymentPlan, groups: Iterable[BootGroup]) -> RecoveryPlan:
    """Validate boot groups against their source plan.

    Raises:
        RecoveryPlanError: If there are no groups, a group is empty, group
            names repeat, a member is unknown, or a member appears in more
            than one group.
    """
    ordered = tuple(groups)
    if not ordered:
        raise RecoveryPlanError("Recovery plan must have at least one boot group")

    seen_names: set[str] = set()
    owner: dict[str, str] = {}
    for group in ordered:
        if group.name in seen_names:
            raise RecoveryPlanError(f"Duplicate boot group name: '{group.name}'")
        seen_names.add(group.name)

        if not group.members:
            raise RecoveryPlanError(f"Boot group '{group.name}' has no members")

        for member in sorted(group.members):
            if member not in source_plan:
                raise RecoveryPlanError(
                    f"Boot group '{group.name}' references unknown node '{member}'"
                )
            if member in owner:
                raise RecoveryPlanError(
                    f"Node '{member}' appears in boot groups '{owner[member]}' and '{group.name}'"
                )
            owner[member] = group.name

    return RecoveryPlan(source_plan=source_plan, groups=ordered)


@dataclass
class GroupOutcome:
    """What happened to one boot group."""

    group_name: str
    group_index: int
    deployment: DeploymentResult
    wait_satisfied: bool = False
    wait_seconds: float = 0.0


@dataclass(frozen=True)
class FailoverTransition:
    """A single failover run state change."""

    state: FailoverState
    group_index: int
    timestamp: datetime


@dataclass
class FailoverRun:
    """One attempt at executing a recovery plan."""

    plan: RecoveryPlan
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    current_group_index: int = 0
    state: FailoverState = FailoverState.NOT_STARTED
    group_outcomes: list[GroupOutcome] = field(default_factory=list)
    failure_reason: FailoverFailureReason | None = None
    failed_members: list[str] = field(default_factory=list)
    error_detail: str | None = None
    history: list[FailoverTransition] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_FAILOVER_STATES

    @property
    def current_group(self) -> BootGroup | None:
        if 0 <= self.current_group_index < len(self.plan.groups):
            return self.plan.groups[self.current_group_index]
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        group = self.current_group
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "current_group_index": self.current_group_index,
            "current_group": group.name if group else None,
            "group_count": len(self.plan.groups),
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "failed_members": list(self.failed_members),
            "error": self.error_detail,
            "groups": [
                {
                    "name": outcome.group_name,
                    "deployment_state": outcome.deployment.state.value,
                    "nodes": {k: v.value for k, v in outcome.deployment.node_states.items()},
                    "wait_satisfied": outcome.wait_satisfied,
                }
                for outcome in self.group_outcomes
            ],
        }


class FailoverOrchestrator:
    """Drives failover runs through their boot groups.

    Active runs are kept by id so a manual gate can be resumed by id alone.
    Runs move to the archive once terminal.
    """

    def __init__(self, scheduler: Scheduler, sleep: SleepFunc = asyncio.sleep) -> None:
        """Initialize the orchestrator.

        Args:
            scheduler: Executes each group's members.
            sleep: Awaitable sleep used between wait-condition probes.
        """
        self._scheduler = scheduler
        self._sleep = sleep
        self._active: dict[str, FailoverRun] = {}
        self._archive: dict[str, FailoverRun] = {}

    @property
    def active_runs(self) -> list[FailoverRun]:
        return list(self._active.values())

    @property
    def archived_runs(self) -> list[FailoverRun]:
        return list(self._archive.values())

    def get_run(self, run_id: str) -> FailoverRun:
        """Look up an active or archived run.

        Raises:
            FailoverStateError: If the run id is unknown.
        """
        run = self._active.get(run_id) or self._archive.get(run_id)
        if run is None:
            raise FailoverStateError(f"Failover run not found: {run_id}")
        return run

    def start(self, plan: RecoveryPlan) -> FailoverRun:
        """Create a run positioned at the first boot group."""
        run = FailoverRun(plan=plan)
        self._active[run.run_id] = run
        self._set_state(run, FailoverState.IN_PROGRESS)
        logger.info(
            "Failover started",
            extra={"run_id": run.run_id, "group_count": len(plan.groups)},
        )
        return run

    async def advance(self, run: FailoverRun) -> FailoverRun:
        """Execute the current boot group and apply its gate.

        Raises:
            FailoverStateError: If the run is not IN_PROGRESS.
        """
        if run.state != FailoverState.IN_PROGRESS:
            raise FailoverStateError(
                f"Run {run.run_id} cannot advance from state {run.state.value}"
            )

        index = run.current_group_index
        group = run.plan.groups[index]
        logger.info(
            "Starting boot group",
            extra={
                "run_id": run.run_id,
                "group": group.name,
                "group_index": index,
                "members": sorted(group.members),
            },
        )

        group_plan = run.plan.source_plan.subset(group.members)
        try:
            deployment = await self._scheduler.deploy(group_plan)
        except PlanValidationError as e:
            run.failed_members = sorted(group.members)
            run.error_detail = str(e)
            self._fail(run, FailoverFailureReason.GROUP_REJECTED)
            return run
        outcome = GroupOutcome(group_name=group.name, group_index=index, deployment=deployment)
        run.group_outcomes.append(outcome)

        if not deployment.success:
            run.failed_members = deployment.failed + deployment.skipped + deployment.not_started
            self._fail(run, FailoverFailureReason.MEMBER_FAILURE)
            return run

        outcome.wait_satisfied, outcome.wait_seconds = await self._await_condition(
            run, group, index, deployment.node_outputs
        )
        if not outcome.wait_satisfied:
            self._fail(run, FailoverFailureReason.GATE_TIMEOUT)
            return run

        if group.gate == GateMode.MANUAL:
            self._set_state(run, FailoverState.WAITING_ON_GATE)
            logger.warning(
                "Boot group complete, waiting on manual gate",
                extra={"run_id": run.run_id, "group": group.name, "group_index": index},
            )
            return run

        self._next_group(run)
        return run

    def resume_manual_gate(self, run_id: str) -> FailoverRun:
        """Release a run parked on a manual gate.

        Raises:
            FailoverStateError: If the run is unknown or not waiting on a gate.
        """
        run = self.get_run(run_id)
        if run.state != FailoverState.WAITING_ON_GATE:
            raise FailoverStateError(
                f"Run {run_id} is not waiting on a gate (state: {run.state.value})"
            )
        logger.info(
            "Manual gate resumed",
            extra={"run_id": run_id, "group_index": run.current_group_index},
        )
        self._next_group(run)
        return run

    async def drive(self, run: FailoverRun) -> FailoverRun:
        """Advance until the run is terminal or waiting on a manual gate."""
        while run.state == FailoverState.IN_PROGRESS:
            await self.advance(run)
        return run

    async def _await_condition(
        self,
        run: FailoverRun,
        group: BootGroup,
        index: int,
        member_outputs: Mapping[str, Mapping[str, str]],
    ) -> tuple[bool, float]:
        """Poll a group's wait condition until ready or timeout.

        Returns:
            Tuple of (satisfied, seconds waited).
        """
        condition = group.wait_condition
        if condition.probe is None:
            return True, 0.0

        context = WaitContext(
            group_name=group.name,
            group_index=index,
            member_outputs=member_outputs,
        )
        waited = 0.0

        while True:
            try:
                ready = bool(await invoke(condition.probe, context))
            except Exception as e:
                logger.warning(
                    "Wait-condition probe failed, treating as not ready",
                    extra={
                        "run_id": run.run_id,
                        "group": group.name,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                ready = False

            if ready:
                logger.info(
                    "Wait condition satisfied",
                    extra={"run_id": run.run_id, "group": group.name, "waited_seconds": waited},
                )
                return True, waited

            if waited >= condition.timeout_seconds:
                logger.error(
                    "Timeout waiting for boot group wait condition",
                    extra={
                        "run_id": run.run_id,
                        "group": group.name,
                        "timeout_seconds": condition.timeout_seconds,
                    },
                )
                return False, waited

            # Never sleep past the timeout
            delay = min(condition.poll_interval_seconds, condition.timeout_seconds - waited)
            await self._sleep(delay)
            waited += delay

    def _next_group(self, run: FailoverRun) -> None:
        run.current_group_index += 1
        if run.current_group_index >= len(run.plan.groups):
            self._set_state(run, FailoverState.SUCCEEDED)
            logger.info("Failover succeeded", extra={"run_id": run.run_id})
        else:
            self._set_state(run, FailoverState.IN_PROGRESS)

    def _fail(self, run: FailoverRun, reason: FailoverFailureReason) -> None:
        run.failure_reason = reason
        self._set_state(run, FailoverState.FAILED)
        logger.error(
            "Failover failed",
            extra={
                "run_id": run.run_id,
                "reason": reason.value,
                "group_index": run.current_group_index,
                "failed_members": run.failed_members,
            },
        )

    def _set_state(self, run: FailoverRun, state: FailoverState) -> None:
        run.state = state
        run.history.append(
            FailoverTransition(
                state=state,
                group_index=run.current_group_index,
                timestamp=datetime.now(UTC),
            )
        )
        if run.is_terminal:
            run.finished_at = datetime.now(UTC)
            self._active.pop(run.run_id, None)
            self._archive[run.run_id] = run
