"""Secret store access binding for principals surfaced by a deployment.

After a deployment (complete or partial) each vault's access policy is bound
to the principal references published by the nodes that provisioned
successfully.

DESIGN PHILOSOPHY:
- Filter before binding. A single empty or malformed principal reference
  (typically from a node that failed or was skipped) must not fail the bind
  for every other principal.
- Rejections are recorded, never raised, and never retried in the same run.
  The remediation path is a later deployment run that brings the missing
  node to Succeeded.
- One binding request per principal, so a failed request is isolated to
  the principal it was issued for.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .config import DEFAULT_MIN_PRINCIPAL_REF_LENGTH
from .executor import invoke

logger = logging.getLogger(__name__)

# Identifier shape: no whitespace, starts alphanumeric. Covers GUID object
# ids and ARM-style resource ids; the exact format is opaque here.
VALID_PRINCIPAL_REF_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._:/-]*$"
DEFAULT_PRINCIPAL_OUTPUT_KEY = "principalId"


class RejectionReason(str, Enum):
    """Why a candidate principal reference was not bound."""

    INVALID_PRINCIPAL_REF = "invalid_principal_ref"
    BIND_FAILED = "bind_failed"


class AccessBindingError(Exception):
    """Raised by an access policy client when a binding request fails."""

    pass


class AccessPolicyClient(Protocol):
    """Issues access-binding requests against a secret store."""

    def grant(self, vault_ref: str, principal_ref: str) -> Any:
        """Grant principal_ref access to vault_ref. May be sync or async."""
        ...


@dataclass(frozen=True)
class RejectedPrincipalRef:
    """A candidate that was not bound, and why."""

    ref: str | None
    reason: RejectionReason
    detail: str = ""


@dataclass
class BindResult:
    """Outcome of binding one vault."""

    vault_ref: str
    accepted: list[str] = field(default_factory=list)
    rejected: list[RejectedPrincipalRef] = field(default_factory=list)

    @property
    def rejected_refs(self) -> list[str | None]:
        return [r.ref for r in self.rejected]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "vault_ref": self.vault_ref,
            "accepted": list(self.accepted),
            "rejected": [
                {"ref": r.ref, "reason": r.reason.value, "detail": r.detail}
                for r in self.rejected
            ],
        }


@dataclass
class SecretBinding:
    """A vault and the principals that should be able to read it."""

    vault_ref: str
    candidate_principal_refs: list[str | None] = field(default_factory=list)
    bound_principal_refs: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class BindingRequest:
    """Bind the principal published by node_id under output_key to vault_ref."""

    node_id: str
    vault_ref: str
    output_key: str = DEFAULT_PRINCIPAL_OUTPUT_KEY


class PrincipalRefValidator:
    """Validity predicate for principal references."""

    def __init__(self, min_length: int = DEFAULT_MIN_PRINCIPAL_REF_LENGTH) -> None:
        if min_length < 1:
            raise ValueError("min_length must be at least 1")
        self._min_length = min_length
        self._pattern = re.compile(VALID_PRINCIPAL_REF_PATTERN)

    def explain(self, ref: object) -> str | None:
        """Return why ref is invalid, or None if it is valid."""
        if not isinstance(ref, str):
            return f"not a string: {type(ref).__name__}"
        if not ref:
            return "empty"
        if len(ref) < self._min_length:
            return f"shorter than {self._min_length} characters"
        if not self._pattern.match(ref):
            return "does not match identifier shape"
        return None

    def is_valid(self, ref: object) -> bool:
        return self.explain(ref) is None


class SecretBinder:
    """Binds vault access policies to filtered principal references."""

    def __init__(
        self,
        client: AccessPolicyClient,
        validator: PrincipalRefValidator | None = None,
    ) -> None:
        """Initialize the binder.

        Args:
            client: Issues the actual access-binding requests.
            validator: Principal reference predicate.
        """
        self._client = client
        self._validator = validator or PrincipalRefValidator()

    async def bind(
        self,
        vault_ref: str,
        candidate_principal_refs: Iterable[str | None],
    ) -> BindResult:
        """Bind a vault to every valid candidate principal.

        Args:
            vault_ref: Vault to bind.
            candidate_principal_refs: Candidates in order; may contain empty
                or malformed entries.

        Returns:
            Accepted and rejected references. Never raises for bad candidates
            or failed binding requests.

        Raises:
            ValueError: If vault_ref is empty.
        """
        if not vault_ref:
            raise ValueError("vault_ref is required")

        result = BindResult(vault_ref=vault_ref)
        valid: list[str] = []

        for candidate in candidate_principal_refs:
            problem = self._validator.explain(candidate)
            if problem is not None:
                logger.warning(
                    "Rejected principal reference",
                    extra={"vault_ref": vault_ref, "principal_ref": candidate, "problem": problem},
                )
                result.rejected.append(
                    RejectedPrincipalRef(
                        ref=candidate,
                        reason=RejectionReason.INVALID_PRINCIPAL_REF,
                        detail=problem,
                    )
                )
                continue
            assert isinstance(candidate, str)
            if candidate in valid:
                logger.debug(
                    "Duplicate principal reference collapsed",
                    extra={"vault_ref": vault_ref, "principal_ref": candidate},
                )
                continue
            valid.append(candidate)

        for principal_ref in valid:
            try:
                await invoke(self._client.grant, vault_ref, principal_ref)
            except Exception as e:
                logger.error(
                    "Access binding request failed",
                    extra={
                        "vault_ref": vault_ref,
                        "principal_ref": principal_ref,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                result.rejected.append(
                    RejectedPrincipalRef(
                        ref=principal_ref,
                        reason=RejectionReason.BIND_FAILED,
                        detail=f"{type(e).__name__}: {e}",
                    )
                )
                continue
            result.accepted.append(principal_ref)

        logger.info(
            "Secret binding complete",
            extra={
                "vault_ref": vault_ref,
                "accepted_count": len(result.accepted),
                "rejected_count": len(result.rejected),
            },
        )
        return result

    async def apply(self, binding: SecretBinding) -> BindResult:
        """Bind a SecretBinding and record its bound principals."""
        result = await self.bind(binding.vault_ref, binding.candidate_principal_refs)
        binding.bound_principal_refs = list(result.accepted)
        return result


def collect_bindings(
    requests: Iterable[BindingRequest],
    node_outputs: Mapping[str, Mapping[str, str]],
) -> list[SecretBinding]:
    """Gather candidate principal refs per vault from node outputs.

    A request whose node did not succeed, or did not publish the output key,
    contributes an empty candidate so the gap shows up as a rejection in the
    report instead of disappearing silently.

    Args:
        requests: Binding requests in declaration order.
        node_outputs: Outputs of succeeded nodes, keyed by node id.

    Returns:
        One SecretBinding per vault, in first-seen order.
    """
    bindings: dict[str, SecretBinding] = {}
    for request in requests:
        binding = bindings.setdefault(
            request.vault_ref, SecretBinding(vault_ref=request.vault_ref)
        )
        outputs = node_outputs.get(request.node_id, {})
        binding.candidate_principal_refs.append(outputs.get(request.output_key, ""))
    return list(bindings.values())
