"""Deployment facade: provisioning, secret binding and failover entry points.

Control flow:
1. The scheduler drives every node of the plan through the convergence
   executor.
2. Once the run is Completed or PartiallyFailed, the secret binder runs
   exactly once as a separate phase, using principal references from the
   nodes that succeeded. It is not a graph node, so a failed tier can never
   cascade into the secret store step.
3. Failover is a distinct entry point that reuses the same scheduler for each
   boot group.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .actions import ShellWaitProbe
from .config import OrchestratorConfig
from .executor import BootstrapAction, ContentionProbe, ConvergenceExecutor, SleepFunc
from .failover import (
    BootGroup,
    FailoverOrchestrator,
    FailoverRun,
    RecoveryPlan,
    WaitCondition,
    build_recovery_plan,
)
from .graph import DeploymentPlan, PlanValidationError, ResourceNode, build_plan
from .models import DeploymentManifest, IncludedResource, OmittedResource
from .scheduler import DeploymentResult, RunState, Scheduler
from .secret_binder import (
    AccessPolicyClient,
    BindingRequest,
    BindResult,
    PrincipalRefValidator,
    SecretBinder,
    collect_bindings,
)

logger = logging.getLogger(__name__)

# Run states after which the secret-binding phase runs
BINDABLE_RUN_STATES: frozenset[RunState] = frozenset(
    {RunState.COMPLETED, RunState.PARTIALLY_FAILED}
)


def plan_from_manifest(manifest: DeploymentManifest) -> DeploymentPlan:
    """Resolve conditional resources and build a validated plan.

    Omitted resources, and edges touching them, are dropped before the
    graph is built.

    Raises:
        PlanValidationError: If the resulting graph is malformed.
    """
    nodes: list[ResourceNode] = []
    omitted: set[str] = set()

    for declaration in manifest.declarations():
        record = declaration.record
        if isinstance(declaration, OmittedResource):
            omitted.add(record.id)
            logger.info("Resource omitted by its enabled flag", extra={"node_id": record.id})
            continue
        assert isinstance(declaration, IncludedResource)
        nodes.append(
            ResourceNode(
                id=record.id,
                depends_on=frozenset(record.depends_on),
                provision_payload=record.provision_payload,
                contended_resource=record.contended_resource,
                max_wait_seconds=record.max_wait_seconds,
                retry_policy=record.retry_policy.to_policy() if record.retry_policy else None,
            )
        )

    edges = [
        (edge.dependent, edge.dependency)
        for edge in manifest.edges
        if edge.dependent not in omitted and edge.dependency not in omitted
    ]
    return build_plan(nodes, edges)


def binding_requests_from_manifest(manifest: DeploymentManifest) -> list[BindingRequest]:
    """Binding requests for resources that take part in the deployment."""
    included = manifest.included_ids()
    requests: list[BindingRequest] = []
    for spec in manifest.secret_bindings:
        if spec.node_id not in included:
            logger.info(
                "Secret binding dropped, resource is omitted",
                extra={"node_id": spec.node_id, "vault_ref": spec.vault_ref},
            )
            continue
        requests.append(spec.to_request())
    return requests


def recovery_plan_from_manifest(
    manifest: DeploymentManifest,
    source_plan: DeploymentPlan,
    config: OrchestratorConfig,
) -> RecoveryPlan | None:
    """Build the manifest's recovery plan, if it declares one.

    Raises:
        RecoveryPlanError: If a group is malformed.
    """
    if manifest.recovery_plan is None:
        return None

    groups: list[BootGroup] = []
    for spec in manifest.recovery_plan.groups:
        condition = WaitCondition()
        if spec.wait_condition is not None:
            condition = WaitCondition(
                probe=ShellWaitProbe(spec.wait_condition.command),
                timeout_seconds=(
                    spec.wait_condition.timeout_seconds or config.gate_timeout_seconds
                ),
                poll_interval_seconds=(
                    spec.wait_condition.poll_interval_seconds or config.gate_poll_interval_seconds
                ),
            )
        groups.append(
            BootGroup(
                name=spec.name,
                members=frozenset(spec.members),
                wait_condition=condition,
                gate=spec.gate,
            )
        )
    return build_recovery_plan(source_plan, groups)


@dataclass
class DeploymentReport:
    """Terminal report: every node's final state and every binding outcome."""

    deployment: DeploymentResult
    bindings: list[BindResult] = field(default_factory=list)

    @property
    def state(self) -> RunState:
        return self.deployment.state

    @property
    def success(self) -> bool:
        # Binding rejections never escalate to a run-level failure
        return self.deployment.success

    @property
    def rejected_principal_refs(self) -> dict[str, list[str | None]]:
        return {b.vault_ref: b.rejected_refs for b in self.bindings if b.rejected}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            **self.deployment.to_dict(),
            "bindings": [binding.to_dict() for binding in self.bindings],
        }


class Orchestrator:
    """Wires executor, scheduler, secret binder and failover together."""

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        *,
        action: BootstrapAction | None = None,
        binding_client: AccessPolicyClient,
        contention_probe: ContentionProbe | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Orchestrator configuration. Defaults to env-based config.
            action: Default bootstrap action for nodes.
            binding_client: Issues secret store access bindings.
            contention_probe: Reports whether a contended resource is held.
            sleep: Awaitable sleep shared by lock waits, retries and gates.
        """
        self._config = config or OrchestratorConfig.from_env()
        executor = ConvergenceExecutor(contention_probe=contention_probe, sleep=sleep)
        self._scheduler = Scheduler.from_config(self._config, executor, action)
        self._binder = SecretBinder(
            binding_client,
            PrincipalRefValidator(self._config.min_principal_ref_length),
        )
        self._failover = FailoverOrchestrator(self._scheduler, sleep=sleep)

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def failover_orchestrator(self) -> FailoverOrchestrator:
        return self._failover

    async def deploy(
        self,
        plan: DeploymentPlan,
        binding_requests: Iterable[BindingRequest] = (),
        cancel_event: asyncio.Event | None = None,
    ) -> DeploymentReport:
        """Deploy a plan, then bind secrets once.

        Args:
            plan: Validated deployment plan.
            binding_requests: Vault bindings to issue after provisioning.
            cancel_event: Run-level cancellation signal.

        Returns:
            Deployment report. Bindings are empty for cancelled runs.

        Raises:
            PlanValidationError: If a binding request has no vault, or a node
                has no bootstrap action. Raised before anything starts.
        """
        binding_requests = list(binding_requests)
        empty_vault = sorted({r.node_id for r in binding_requests if not r.vault_ref})
        if empty_vault:
            raise PlanValidationError(f"Secret binding without vault_ref for nodes: {empty_vault}")

        result = await self._scheduler.deploy(plan, cancel_event)
        report = DeploymentReport(deployment=result)

        if result.state not in BINDABLE_RUN_STATES:
            logger.warning(
                "Skipping secret binding for cancelled deployment",
                extra={"state": result.state.value},
            )
            return report

        report.bindings = await self.bind(binding_requests, result.node_outputs)
        return report

    async def deploy_manifest(
        self,
        manifest: DeploymentManifest,
        cancel_event: asyncio.Event | None = None,
    ) -> DeploymentReport:
        """Build the plan from a manifest and deploy it."""
        plan = plan_from_manifest(manifest)
        return await self.deploy(plan, binding_requests_from_manifest(manifest), cancel_event)

    async def bind(
        self,
        requests: Iterable[BindingRequest],
        node_outputs: Mapping[str, Mapping[str, str]],
    ) -> list[BindResult]:
        """Run the secret-binding phase for every vault."""
        results: list[BindResult] = []
        for binding in collect_bindings(requests, node_outputs):
            results.append(await self._binder.apply(binding))
        return results

    async def failover(self, plan: RecoveryPlan) -> FailoverRun:
        """Start a failover run and drive it to a manual gate or terminal state."""
        run = self._failover.start(plan)
        return await self._failover.drive(run)

    async def resume(self, run_id: str) -> FailoverRun:
        """Release a manual gate and keep driving the run."""
        run = self._failover.resume_manual_gate(run_id)
        return await self._failover.drive(run)
