"""Convergence executor: drive one node's bootstrap task to a terminal result.

Two independent policies compose here:
1. Contention wait: if the task declares a contended resource (e.g. the
   package manager lock held by unattended upgrades on first boot), poll
   until it is released, up to max_wait. On timeout the task fails with
   LOCK_TIMEOUT. The executor never acts while the resource is held.
2. Action retry: invoke the bootstrap action, retrying failures with
   exponential backoff (base_delay * multiplier ** attempt). The first
   success short-circuits the remaining attempts.

Bootstrap actions must be idempotent. The executor does not try to detect
partial side effects of a failed attempt; it simply runs the action again.

Contention is advisory: the orchestrator cannot lock a resource it does not
own. It can only wait for signs of release.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import (
    DEFAULT_LOCK_MAX_WAIT_SECONDS,
    DEFAULT_LOCK_POLL_INTERVAL_SECONDS,
    DEFAULT_RETRY_BACKOFF_MULTIPLIER,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_ATTEMPTS,
)

logger = logging.getLogger(__name__)

# Bootstrap action: payload -> ActionResult | (success, outputs, error_detail)
BootstrapAction = Callable[[Any], Any]
# Contention probe: resource id -> True while the resource is held
ContentionProbe = Callable[[str], Any]
SleepFunc = Callable[[float], Awaitable[None]]


class ConvergenceStatus(str, Enum):
    """Terminal status of a convergence run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a convergence run failed."""

    LOCK_TIMEOUT = "lock_timeout"  # Contended resource never released
    ACTION_FAILURE = "action_failure"  # Retry policy exhausted
    CANCELLED = "cancelled"  # Run-level cancellation raised


async def invoke(func: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async callable and return its result.

    Coroutine functions are awaited on the loop. Plain callables run in the
    default executor so a blocking action or probe does not stall other
    workers.
    """
    if inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    ):
        return await func(*args)

    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, functools.partial(func, *args))
    if inspect.isawaitable(result):
        return await result
    return result


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy for a bootstrap action."""

    max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    backoff_multiplier: float = DEFAULT_RETRY_BACKOFF_MULTIPLIER

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must not be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (0-based)."""
        return self.base_delay_seconds * (self.backoff_multiplier**attempt)


@dataclass(frozen=True)
class ActionResult:
    """Outcome of a single bootstrap action invocation."""

    success: bool
    outputs: Mapping[str, str] = field(default_factory=dict)
    error_detail: str = ""

    @classmethod
    def coerce(cls, value: Any) -> ActionResult:
        """Normalize what an action returned.

        Accepts an ActionResult, a (success, outputs, error_detail) tuple,
        or a bare bool.

        Raises:
            TypeError: If the value has none of these shapes.
        """
        if isinstance(value, ActionResult):
            return value
        if isinstance(value, bool):
            return cls(success=value)
        if isinstance(value, tuple) and len(value) == 3:
            success, outputs, error_detail = value
            return cls(
                success=bool(success),
                outputs={str(k): str(v) for k, v in (outputs or {}).items()},
                error_detail=str(error_detail or ""),
            )
        raise TypeError(
            "Bootstrap action must return ActionResult, bool or "
            f"(success, outputs, error_detail), got {type(value).__name__}"
        )


@dataclass
class BootstrapTask:
    """One node's bootstrap unit. Created at Provisioning time, discarded after."""

    node_id: str
    action: BootstrapAction
    payload: Any = None
    contended_resource: str | None = None
    max_wait_seconds: float = DEFAULT_LOCK_MAX_WAIT_SECONDS
    poll_interval_seconds: float = DEFAULT_LOCK_POLL_INTERVAL_SECONDS
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class ConvergenceResult:
    """Terminal result of a convergence run."""

    node_id: str
    status: ConvergenceStatus
    outputs: dict[str, str] = field(default_factory=dict)
    reason: FailureReason | None = None
    error_detail: str = ""
    attempts: int = 0
    lock_wait_seconds: float = 0.0
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == ConvergenceStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "error_detail": self.error_detail,
            "attempts": self.attempts,
            "lock_wait_seconds": self.lock_wait_seconds,
            "outputs": dict(self.outputs),
        }


class ContentionRegistry:
    """In-process registry of advisory holds on shared resources.

    Usable directly as a contention probe: calling the registry with a
    resource id returns True while anyone holds it.
    """

    def __init__(self) -> None:
        self._holders: dict[str, set[str]] = {}

    def hold(self, resource: str, holder: str = "external") -> None:
        self._holders.setdefault(resource, set()).add(holder)

    def release(self, resource: str, holder: str = "external") -> None:
        holders = self._holders.get(resource)
        if holders is None:
            return
        holders.discard(holder)
        if not holders:
            del self._holders[resource]

    def is_held(self, resource: str) -> bool:
        return bool(self._holders.get(resource))

    def __call__(self, resource: str) -> bool:
        return self.is_held(resource)


class ConvergenceExecutor:
    """Runs bootstrap tasks with lock-wait and retry semantics.

    Stateless between runs: the same idempotent task run twice yields the
    same result.
    """

    def __init__(
        self,
        contention_probe: ContentionProbe | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            contention_probe: Returns True while a resource is held.
                Defaults to an empty ContentionRegistry.
            sleep: Awaitable sleep, injectable for tests.
        """
        self._probe = contention_probe or ContentionRegistry()
        self._sleep = sleep

    async def run(
        self,
        task: BootstrapTask,
        cancel_event: asyncio.Event | None = None,
    ) -> ConvergenceResult:
        """Drive a bootstrap task to Succeeded or Failed.

        Args:
            task: The task to run.
            cancel_event: When set, the current attempt finishes and no
                further attempt starts.

        Returns:
            Terminal convergence result. Never raises for action failures.
        """
        start_time = time.monotonic()

        lock_wait_seconds = 0.0
        if task.contended_resource:
            lock_wait_seconds, blocked = await self._wait_for_release(task, cancel_event)
            if blocked is not None:
                return self._finish(
                    ConvergenceResult(
                        node_id=task.node_id,
                        status=ConvergenceStatus.FAILED,
                        reason=blocked,
                        error_detail=(
                            f"Contended resource '{task.contended_resource}' not released "
                            f"within {task.max_wait_seconds}s"
                            if blocked == FailureReason.LOCK_TIMEOUT
                            else "Cancelled while waiting for contended resource"
                        ),
                        lock_wait_seconds=lock_wait_seconds,
                    ),
                    start_time,
                )

        result = await self._run_with_retry(task, cancel_event)
        result.lock_wait_seconds = lock_wait_seconds
        return self._finish(result, start_time)

    async def _wait_for_release(
        self,
        task: BootstrapTask,
        cancel_event: asyncio.Event | None,
    ) -> tuple[float, FailureReason | None]:
        """Poll the contended resource until released.

        Returns:
            Tuple of (seconds waited, failure reason or None when released).
        """
        resource = task.contended_resource
        assert resource is not None
        waited = 0.0

        while await self._is_held(resource, task.node_id):
            if waited >= task.max_wait_seconds:
                logger.error(
                    "Timeout waiting for contended resource",
                    extra={
                        "node_id": task.node_id,
                        "resource": resource,
                        "waited_seconds": waited,
                    },
                )
                return waited, FailureReason.LOCK_TIMEOUT

            if cancel_event is not None and cancel_event.is_set():
                return waited, FailureReason.CANCELLED

            delay = min(task.poll_interval_seconds, task.max_wait_seconds - waited)
            logger.info(
                "Contended resource is held, waiting",
                extra={
                    "node_id": task.node_id,
                    "resource": resource,
                    "interval_seconds": delay,
                    "waited_seconds": waited,
                },
            )
            await self._sleep(delay)
            waited += delay

        if waited:
            logger.info(
                "Contended resource released, proceeding",
                extra={"node_id": task.node_id, "resource": resource, "waited_seconds": waited},
            )
        return waited, None

    async def _is_held(self, resource: str, node_id: str) -> bool:
        try:
            return bool(await invoke(self._probe, resource))
        except Exception as e:
            # Fail-closed: an unreadable lock is treated as held
            logger.warning(
                "Contention probe failed, treating resource as held",
                extra={
                    "node_id": node_id,
                    "resource": resource,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return True

    async def _run_with_retry(
        self,
        task: BootstrapTask,
        cancel_event: asyncio.Event | None,
    ) -> ConvergenceResult:
        """Invoke the action under the task's retry policy."""
        policy = task.retry_policy
        last_detail = ""

        for attempt in range(policy.max_attempts):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(
                    "Cancellation raised, not starting another attempt",
                    extra={"node_id": task.node_id, "attempts": attempt},
                )
                return ConvergenceResult(
                    node_id=task.node_id,
                    status=ConvergenceStatus.FAILED,
                    reason=FailureReason.CANCELLED,
                    error_detail=last_detail or "Cancelled before first attempt",
                    attempts=attempt,
                )

            outcome = await self._attempt(task)

            if outcome.success:
                logger.info(
                    "Bootstrap action succeeded",
                    extra={"node_id": task.node_id, "attempt": attempt + 1},
                )
                return ConvergenceResult(
                    node_id=task.node_id,
                    status=ConvergenceStatus.SUCCEEDED,
                    outputs=dict(outcome.outputs),
                    attempts=attempt + 1,
                )

            last_detail = outcome.error_detail

            if attempt + 1 < policy.max_attempts:
                wait_time = policy.delay_for(attempt)
                logger.warning(
                    "Bootstrap action failed, retrying",
                    extra={
                        "node_id": task.node_id,
                        "attempt": attempt + 1,
                        "max_attempts": policy.max_attempts,
                        "wait_seconds": wait_time,
                        "error": last_detail,
                    },
                )
                await self._sleep(wait_time)

        logger.error(
            "Bootstrap action failed after all attempts",
            extra={
                "node_id": task.node_id,
                "max_attempts": policy.max_attempts,
                "error": last_detail,
            },
        )
        return ConvergenceResult(
            node_id=task.node_id,
            status=ConvergenceStatus.FAILED,
            reason=FailureReason.ACTION_FAILURE,
            error_detail=last_detail,
            attempts=policy.max_attempts,
        )

    async def _attempt(self, task: BootstrapTask) -> ActionResult:
        """Run the action once. Exceptions count as a failed attempt."""
        try:
            return ActionResult.coerce(await invoke(task.action, task.payload))
        except Exception as e:
            logger.warning(
                "Bootstrap action raised",
                extra={
                    "node_id": task.node_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return ActionResult(success=False, error_detail=f"{type(e).__name__}: {e}")

    def _finish(self, result: ConvergenceResult, start_time: float) -> ConvergenceResult:
        result.duration_seconds = time.monotonic() - start_time
        return result
