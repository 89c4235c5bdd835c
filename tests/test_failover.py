"""Tests for phased failover across boot groups."""

from __future__ import annotations

from typing import Any

import pytest
from provisioning_mock import FakeProvisioner, RecordingSleep, node

from orchestrator.executor import ConvergenceExecutor, RetryPolicy
from orchestrator.failover import (
    BootGroup,
    FailoverFailureReason,
    FailoverOrchestrator,
    FailoverState,
    FailoverStateError,
    GateMode,
    RecoveryPlan,
    RecoveryPlanError,
    WaitCondition,
    WaitContext,
    build_recovery_plan,
)
from orchestrator.graph import DeploymentPlan, NodeState, PlanValidationError, build_plan
from orchestrator.scheduler import Scheduler


@pytest.fixture
def source_plan() -> DeploymentPlan:
    """Completed three-tier deployment to fail over."""
    return build_plan([node("db"), node("app", "db"), node("web", "app")])


def _orchestrator(
    provisioner: FakeProvisioner, sleep: RecordingSleep | None = None
) -> FailoverOrchestrator:
    scheduler = Scheduler(
        ConvergenceExecutor(sleep=RecordingSleep()),
        default_action=provisioner,
        default_retry_policy=RetryPolicy(max_attempts=1),
    )
    return FailoverOrchestrator(scheduler, sleep=sleep or RecordingSleep())


def _group(name: str, *members: str, **kwargs: Any) -> BootGroup:
    return BootGroup(name=name, members=frozenset(members), **kwargs)


class TestFailoverState:
    """Tests for failover enums."""

    def test_values(self) -> None:
        """Test enum values."""
        assert FailoverState.NOT_STARTED.value == "not_started"
        assert FailoverState.IN_PROGRESS.value == "in_progress"
        assert FailoverState.WAITING_ON_GATE.value == "waiting_on_gate"
        assert FailoverState.SUCCEEDED.value == "succeeded"
        assert FailoverState.FAILED.value == "failed"

    def test_gate_modes(self) -> None:
        """Test gate mode values."""
        assert GateMode.AUTOMATIC.value == "automatic"
        assert GateMode.MANUAL.value == "manual"


class TestBuildRecoveryPlan:
    """Tests for recovery plan validation."""

    def test_valid_plan(self, source_plan: DeploymentPlan) -> None:
        """Test groups are kept in order."""
        plan = build_recovery_plan(
            source_plan, [_group("data", "db"), _group("apps", "app", "web")]
        )
        assert [g.name for g in plan.groups] == ["data", "apps"]

    def test_no_groups(self, source_plan: DeploymentPlan) -> None:
        """Test a recovery plan needs at least one group."""
        with pytest.raises(RecoveryPlanError):
            build_recovery_plan(source_plan, [])

    def test_empty_group(self, source_plan: DeploymentPlan) -> None:
        """Test groups need members."""
        with pytest.raises(RecoveryPlanError):
            build_recovery_plan(source_plan, [_group("data")])

    def test_unknown_member(self, source_plan: DeploymentPlan) -> None:
        """Test members must exist in the source plan."""
        with pytest.raises(RecoveryPlanError) as exc_info:
            build_recovery_plan(source_plan, [_group("data", "cache")])
        assert "cache" in str(exc_info.value)

    def test_member_in_two_groups(self, source_plan: DeploymentPlan) -> None:
        """Test a node belongs to at most one group."""
        with pytest.raises(RecoveryPlanError) as exc_info:
            build_recovery_plan(source_plan, [_group("a", "db"), _group("b", "db")])
        assert "'a'" in str(exc_info.value)

    def test_duplicate_group_name(self, source_plan: DeploymentPlan) -> None:
        """Test group names are unique."""
        with pytest.raises(RecoveryPlanError):
            build_recovery_plan(source_plan, [_group("a", "db"), _group("a", "app")])

    def test_is_plan_validation_error(self, source_plan: DeploymentPlan) -> None:
        """Test recovery plan errors are plan validation errors."""
        with pytest.raises(PlanValidationError):
            build_recovery_plan(source_plan, [])


class TestGates:
    """Tests for automatic and manual gates."""

    @pytest.mark.asyncio
    async def test_automatic_groups_run_to_completion(self, source_plan: DeploymentPlan) -> None:
        """Test automatic gates advance without intervention."""
        provisioner = FakeProvisioner()
        orchestrator = _orchestrator(provisioner)
        plan = build_recovery_plan(
            source_plan, [_group("data", "db"), _group("apps", "app", "web")]
        )

        run = await orchestrator.drive(orchestrator.start(plan))

        assert run.state == FailoverState.SUCCEEDED
        assert provisioner.calls[0] == "db"
        assert sorted(provisioner.calls[1:]) == ["app", "web"]
        assert run.finished_at is not None

    @pytest.mark.asyncio
    async def test_manual_gate_waits_then_resumes(self, source_plan: DeploymentPlan) -> None:
        """Test a manual gate parks the run until resumed."""
        provisioner = FakeProvisioner()
        orchestrator = _orchestrator(provisioner)
        plan = build_recovery_plan(
            source_plan,
            [_group("data", "db", gate=GateMode.MANUAL), _group("apps", "app", "web")],
        )

        run = await orchestrator.drive(orchestrator.start(plan))

        assert run.state == FailoverState.WAITING_ON_GATE
        assert run.current_group_index == 0
        assert provisioner.calls == ["db"]

        orchestrator.resume_manual_gate(run.run_id)
        assert run.state == FailoverState.IN_PROGRESS
        assert run.current_group_index == 1

        await orchestrator.drive(run)
        assert run.state == FailoverState.SUCCEEDED
        assert sorted(provisioner.calls) == ["app", "db", "web"]

    @pytest.mark.asyncio
    async def test_automatic_then_manual_last_group(self, source_plan: DeploymentPlan) -> None:
        """Test a manual gate on the last group still needs a resume."""
        orchestrator = _orchestrator(FakeProvisioner())
        plan = build_recovery_plan(
            source_plan,
            [_group("data", "db"), _group("apps", "app", "web", gate=GateMode.MANUAL)],
        )

        run = await orchestrator.drive(orchestrator.start(plan))
        assert run.state == FailoverState.WAITING_ON_GATE
        assert run.current_group_index == 1

        orchestrator.resume_manual_gate(run.run_id)
        assert run.state == FailoverState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_history_records_transitions(self, source_plan: DeploymentPlan) -> None:
        """Test every state change is recorded."""
        orchestrator = _orchestrator(FakeProvisioner())
        plan = build_recovery_plan(
            source_plan, [_group("data", "db", gate=GateMode.MANUAL), _group("apps", "app")]
        )

        run = await orchestrator.drive(orchestrator.start(plan))
        orchestrator.resume_manual_gate(run.run_id)
        await orchestrator.drive(run)

        assert [t.state for t in run.history] == [
            FailoverState.IN_PROGRESS,
            FailoverState.WAITING_ON_GATE,
            FailoverState.IN_PROGRESS,
            FailoverState.SUCCEEDED,
        ]


class TestFailures:
    """Tests for member failures and wait-condition timeouts."""

    @pytest.mark.asyncio
    async def test_member_failure_fails_run(self, source_plan: DeploymentPlan) -> None:
        """Test a failed member fails the run and later groups never start."""
        provisioner = FakeProvisioner(fail={"db"})
        orchestrator = _orchestrator(provisioner)
        plan = build_recovery_plan(source_plan, [_group("data", "db"), _group("apps", "app")])

        run = await orchestrator.drive(orchestrator.start(plan))

        assert run.state == FailoverState.FAILED
        assert run.failure_reason == FailoverFailureReason.MEMBER_FAILURE
        assert run.failed_members == ["db"]
        assert run.current_group_index == 0
        assert provisioner.call_count("app") == 0

    @pytest.mark.asyncio
    async def test_group_is_a_barrier(self, source_plan: DeploymentPlan) -> None:
        """Test other members still finish when one member fails."""
        provisioner = FakeProvisioner(fail={"app"})
        orchestrator = _orchestrator(provisioner)
        plan = build_recovery_plan(source_plan, [_group("apps", "app", "web")])

        run = await orchestrator.drive(orchestrator.start(plan))

        assert run.state == FailoverState.FAILED
        deployment = run.group_outcomes[0].deployment
        assert deployment.node_states["web"] == NodeState.SUCCEEDED
        assert run.failed_members == ["app"]

    @pytest.mark.asyncio
    async def test_wait_condition_timeout(self, source_plan: DeploymentPlan) -> None:
        """Test a wait condition that never holds fails with GATE_TIMEOUT."""
        sleep = RecordingSleep()
        provisioner = FakeProvisioner()
        orchestrator = _orchestrator(provisioner, sleep)
        condition = WaitCondition(
            probe=lambda ctx: False, timeout_seconds=30, poll_interval_seconds=10
        )
        plan = build_recovery_plan(
            source_plan,
            [_group("data", "db", wait_condition=condition), _group("apps", "app")],
        )

        run = await orchestrator.drive(orchestrator.start(plan))

        assert run.state == FailoverState.FAILED
        assert run.failure_reason == FailoverFailureReason.GATE_TIMEOUT
        assert sleep.delays == [10, 10, 10]
        assert provisioner.call_count("app") == 0

    @pytest.mark.asyncio
    async def test_wait_condition_stops_at_timeout(self, source_plan: DeploymentPlan) -> None:
        """Test the last poll interval is shortened to the remaining timeout."""
        sleep = RecordingSleep()
        orchestrator = _orchestrator(FakeProvisioner(), sleep)
        condition = WaitCondition(
            probe=lambda ctx: False, timeout_seconds=25, poll_interval_seconds=10
        )
        plan = build_recovery_plan(source_plan, [_group("data", "db", wait_condition=condition)])

        run = await orchestrator.drive(orchestrator.start(plan))

        assert run.failure_reason == FailoverFailureReason.GATE_TIMEOUT
        assert run.group_outcomes[0].wait_seconds == 25
        assert sleep.delays == [10, 10, 5]

    @pytest.mark.asyncio
    async def test_wait_condition_eventually_ready(self, source_plan: DeploymentPlan) -> None:
        """Test the run proceeds once the probe reports ready."""
        polls: list[WaitContext] = []

        def data_tier_live(ctx: WaitContext) -> bool:
            polls.append(ctx)
            return len(polls) >= 3

        sleep = RecordingSleep()
        provisioner = FakeProvisioner(outputs={"db": {"endpoint": "db.internal"}})
        orchestrator = _orchestrator(provisioner, sleep)
        condition = WaitCondition(
            probe=data_tier_live, timeout_seconds=300, poll_interval_seconds=10
        )
        plan = build_recovery_plan(
            source_plan,
            [_group("data", "db", wait_condition=condition), _group("apps", "app")],
        )

        run = await orchestrator.drive(orchestrator.start(plan))

        assert run.state == FailoverState.SUCCEEDED
        assert run.group_outcomes[0].wait_seconds == 20
        assert polls[0].group_name == "data"
        assert polls[0].member_outputs == {"db": {"endpoint": "db.internal"}}

    @pytest.mark.asyncio
    async def test_probe_error_treated_as_not_ready(self, source_plan: DeploymentPlan) -> None:
        """Test a failing probe counts as not ready until timeout."""

        def broken(ctx: WaitContext) -> bool:
            raise ConnectionError("health endpoint unreachable")

        orchestrator = _orchestrator(FakeProvisioner())
        condition = WaitCondition(probe=broken, timeout_seconds=10, poll_interval_seconds=5)
        plan = build_recovery_plan(source_plan, [_group("data", "db", wait_condition=condition)])

        run = await orchestrator.drive(orchestrator.start(plan))

        assert run.failure_reason == FailoverFailureReason.GATE_TIMEOUT

    @pytest.mark.asyncio
    async def test_group_without_action_fails_run(self, source_plan: DeploymentPlan) -> None:
        """Test a group the scheduler rejects ends the run instead of leaving it active."""
        scheduler = Scheduler(ConvergenceExecutor(sleep=RecordingSleep()))
        orchestrator = FailoverOrchestrator(scheduler, sleep=RecordingSleep())
        plan = build_recovery_plan(source_plan, [_group("data", "db"), _group("apps", "app")])

        run = await orchestrator.drive(orchestrator.start(plan))

        assert run.state == FailoverState.FAILED
        assert run.failure_reason == FailoverFailureReason.GROUP_REJECTED
        assert run.failed_members == ["db"]
        assert "No bootstrap action" in (run.error_detail or "")
        assert orchestrator.active_runs == []
        with pytest.raises(FailoverStateError):
            await orchestrator.advance(run)


class TestRunRegistry:
    """Tests for run lookup, state errors and archiving."""

    @pytest.mark.asyncio
    async def test_terminal_runs_archived(self, source_plan: DeploymentPlan) -> None:
        """Test finished runs move from active to archive."""
        orchestrator = _orchestrator(FakeProvisioner())
        plan = build_recovery_plan(source_plan, [_group("data", "db")])

        run = await orchestrator.drive(orchestrator.start(plan))

        assert orchestrator.active_runs == []
        assert orchestrator.archived_runs == [run]
        assert orchestrator.get_run(run.run_id) is run

    @pytest.mark.asyncio
    async def test_waiting_run_stays_active(self, source_plan: DeploymentPlan) -> None:
        """Test a run on a manual gate remains active."""
        orchestrator = _orchestrator(FakeProvisioner())
        plan = build_recovery_plan(source_plan, [_group("data", "db", gate=GateMode.MANUAL)])

        run = await orchestrator.drive(orchestrator.start(plan))

        assert orchestrator.active_runs == [run]

    def test_unknown_run(self) -> None:
        """Test resuming an unknown run id fails."""
        orchestrator = _orchestrator(FakeProvisioner())
        with pytest.raises(FailoverStateError):
            orchestrator.resume_manual_gate("no-such-run")

    def test_resume_when_not_waiting(self, source_plan: DeploymentPlan) -> None:
        """Test resume is only legal on a waiting run."""
        orchestrator = _orchestrator(FakeProvisioner())
        run = orchestrator.start(build_recovery_plan(source_plan, [_group("data", "db")]))

        with pytest.raises(FailoverStateError) as exc_info:
            orchestrator.resume_manual_gate(run.run_id)
        assert "in_progress" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_advance_when_waiting(self, source_plan: DeploymentPlan) -> None:
        """Test advance is only legal on an in-progress run."""
        orchestrator = _orchestrator(FakeProvisioner())
        plan = build_recovery_plan(source_plan, [_group("data", "db", gate=GateMode.MANUAL)])
        run = await orchestrator.drive(orchestrator.start(plan))

        with pytest.raises(FailoverStateError):
            await orchestrator.advance(run)

    @pytest.mark.asyncio
    async def test_source_plan_untouched(self, source_plan: DeploymentPlan) -> None:
        """Test boot groups run on copies of the source nodes."""
        orchestrator = _orchestrator(FakeProvisioner())
        plan = build_recovery_plan(source_plan, [_group("apps", "app", "web")])

        await orchestrator.drive(orchestrator.start(plan))

        assert all(state == NodeState.PENDING for state in source_plan.states().values())

    @pytest.mark.asyncio
    async def test_to_dict(self, source_plan: DeploymentPlan) -> None:
        """Test the run serializes for logging."""
        orchestrator = _orchestrator(FakeProvisioner(fail={"db"}))
        plan = build_recovery_plan(source_plan, [_group("data", "db")])

        run = await orchestrator.drive(orchestrator.start(plan))
        data = run.to_dict()

        assert data["state"] == "failed"
        assert data["failure_reason"] == "member_failure"
        assert data["failed_members"] == ["db"]
        assert data["groups"][0]["nodes"] == {"db": "failed"}

    def test_recovery_plan_type(self, source_plan: DeploymentPlan) -> None:
        """Test build_recovery_plan returns a RecoveryPlan bound to its source."""
        plan = build_recovery_plan(source_plan, [_group("data", "db")])
        assert isinstance(plan, RecoveryPlan)
        assert plan.source_plan is source_plan
