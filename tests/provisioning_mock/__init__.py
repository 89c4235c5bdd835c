"""Provisioning fakes for scheduler and failover testing.

This package provides in-memory stand-ins for the shell adapters so that
deployment runs can be tested without spawning processes or sleeping.

Key Features:
- Scripted bootstrap actions with per-node failures and outputs
- Call and concurrency tracking for ordering assertions
- Contention probes that report a resource held for N checks
- Access policy client that records grants and injects failures
- Recording sleep that returns immediately

Usage:
    from provisioning_mock import FakeProvisioner, RecordingSleep, node

    provisioner = FakeProvisioner(fail={"app"})
    scheduler = Scheduler(
        ConvergenceExecutor(sleep=RecordingSleep()),
        default_action=provisioner,
    )
    result = await scheduler.deploy(build_plan([node("db"), node("app", "db")]))

    assert provisioner.calls == ["db", "app"]
"""

from .access import FakeAccessPolicyClient
from .clock import RecordingSleep
from .contention import ScriptedContentionProbe
from .provisioner import FakeProvisioner, ProvisionCall, node

__all__ = [
    "FakeAccessPolicyClient",
    "FakeProvisioner",
    "ProvisionCall",
    "RecordingSleep",
    "ScriptedContentionProbe",
    "node",
]
