"""Pydantic models for deployment manifests with validation.

These models provide:
1. Type-safe parsing of already-deserialized resource records
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to graph nodes, binding requests and boot groups

Conditional declarations ("deploy only if flag set") are resolved here, before
graph build, into Included/Omitted variants. The scheduler never reasons about
conditionality at runtime.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import (
    DEFAULT_RETRY_BACKOFF_MULTIPLIER,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_ATTEMPTS,
    MAX_GATE_TIMEOUT_SECONDS,
    MAX_LOCK_MAX_WAIT_SECONDS,
    MAX_RETRY_MAX_ATTEMPTS,
    VALID_NODE_ID_PATTERN,
)
from .executor import RetryPolicy
from .failover import GateMode
from .secret_binder import DEFAULT_PRINCIPAL_OUTPUT_KEY, BindingRequest

# =============================================================================
# Resources
# =============================================================================


class RetryPolicySpec(BaseModel):
    """Per-resource retry policy override."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    max_attempts: Annotated[
        int, Field(ge=1, le=MAX_RETRY_MAX_ATTEMPTS, alias="maxAttempts")
    ] = DEFAULT_RETRY_MAX_ATTEMPTS
    base_delay_seconds: Annotated[
        float, Field(ge=0, alias="baseDelaySeconds")
    ] = DEFAULT_RETRY_BASE_DELAY_SECONDS
    backoff_multiplier: Annotated[
        float, Field(ge=1, alias="backoffMultiplier")
    ] = DEFAULT_RETRY_BACKOFF_MULTIPLIER

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay_seconds=self.base_delay_seconds,
            backoff_multiplier=self.backoff_multiplier,
        )


def _check_node_id(v: str) -> str:
    if not re.match(VALID_NODE_ID_PATTERN, v):
        raise ValueError(f"must match pattern {VALID_NODE_ID_PATTERN}")
    return v


class ResourceRecord(BaseModel):
    """A resource declaration: identity, dependencies and opaque payload."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    provision_payload: Any = Field(None, alias="provisionPayload")

    # Conditional deployment flag, resolved before graph build
    enabled: bool = True

    # Convergence settings
    contended_resource: str | None = Field(None, alias="contendedResource")
    max_wait_seconds: Annotated[
        float | None, Field(ge=0, le=MAX_LOCK_MAX_WAIT_SECONDS, alias="maxWaitSeconds")
    ] = None
    retry_policy: RetryPolicySpec | None = Field(None, alias="retryPolicy")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return _check_node_id(v)

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        for dep in v:
            _check_node_id(dep)
        return v


class EdgeSpec(BaseModel):
    """An explicit dependency edge in addition to dependsOn."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    dependent: str
    dependency: str


@dataclass(frozen=True)
class IncludedResource:
    """A resource that takes part in the deployment."""

    record: ResourceRecord


@dataclass(frozen=True)
class OmittedResource:
    """A resource switched off by its enabled flag."""

    record: ResourceRecord


ResourceDeclaration = IncludedResource | OmittedResource


def resolve_inclusion(records: list[ResourceRecord]) -> list[ResourceDeclaration]:
    """Split records into included and omitted variants.

    Dependencies on omitted resources are dropped from included ones, the same
    way a conditional template resource drops out of dependsOn when its
    condition is false.
    """
    omitted = {record.id for record in records if not record.enabled}
    declarations: list[ResourceDeclaration] = []
    for record in records:
        if record.id in omitted:
            declarations.append(OmittedResource(record=record))
            continue
        kept = [dep for dep in record.depends_on if dep not in omitted]
        if len(kept) != len(record.depends_on):
            record = record.model_copy(update={"depends_on": kept})
        declarations.append(IncludedResource(record=record))
    return declarations


# =============================================================================
# Secret bindings
# =============================================================================


class SecretBindingRequest(BaseModel):
    """Bind the principal published by a node to a vault."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    node_id: str = Field(alias="nodeId")
    vault_ref: Annotated[str, Field(min_length=1, alias="vaultRef")]
    output_key: Annotated[
        str, Field(min_length=1, alias="outputKey")
    ] = DEFAULT_PRINCIPAL_OUTPUT_KEY

    def to_request(self) -> BindingRequest:
        return BindingRequest(
            node_id=self.node_id,
            vault_ref=self.vault_ref,
            output_key=self.output_key,
        )


# =============================================================================
# Recovery plan
# =============================================================================


class WaitConditionSpec(BaseModel):
    """Shell probe polled after a boot group completes. Ready iff exit code 0."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    command: Annotated[list[str], Field(min_length=1)]
    timeout_seconds: Annotated[
        float | None, Field(gt=0, le=MAX_GATE_TIMEOUT_SECONDS, alias="timeoutSeconds")
    ] = None
    poll_interval_seconds: Annotated[
        float | None, Field(gt=0, alias="pollIntervalSeconds")
    ] = None


class BootGroupSpec(BaseModel):
    """An ordered failover phase."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    members: Annotated[list[str], Field(min_length=1)]
    gate: GateMode = GateMode.AUTOMATIC
    wait_condition: WaitConditionSpec | None = Field(None, alias="waitCondition")


class RecoveryPlanSpec(BaseModel):
    """Ordered boot groups for failover."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    groups: Annotated[list[BootGroupSpec], Field(min_length=1)]


# =============================================================================
# Manifest
# =============================================================================


class DeploymentManifest(BaseModel):
    """Complete deployment input: resources, bindings and optional failover plan."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    resources: Annotated[list[ResourceRecord], Field(min_length=1)]
    edges: list[EdgeSpec] = Field(default_factory=list)
    secret_bindings: list[SecretBindingRequest] = Field(
        default_factory=list, alias="secretBindings"
    )
    recovery_plan: RecoveryPlanSpec | None = Field(None, alias="recoveryPlan")

    # Contended resource id -> probe commands; held while any probe exits 0
    # Example:
    #   contention:
    #     pkg-lock:
    #       - ["fuser", "/var/lib/dpkg/lock-frontend"]
    #       - ["fuser", "/var/lib/apt/lists/lock"]
    contention: dict[str, list[list[str]]] = Field(default_factory=dict)

    # Access binding command template with {vault_ref} and {principal_ref}
    bind_command: list[str] | None = Field(None, alias="bindCommand")

    @model_validator(mode="after")
    def validate_unique_ids(self) -> DeploymentManifest:
        seen: set[str] = set()
        for record in self.resources:
            if record.id in seen:
                raise ValueError(f"duplicate resource id '{record.id}'")
            seen.add(record.id)
        return self

    def declarations(self) -> list[ResourceDeclaration]:
        return resolve_inclusion(self.resources)

    def included_ids(self) -> set[str]:
        return {d.record.id for d in self.declarations() if isinstance(d, IncludedResource)}
