"""Shell-backed bootstrap actions, contention probes and binding clients.

A bootstrap task is an opaque shell unit with an exit code. These adapters
turn manifest payloads into subprocess invocations:

- ShellCommandAction: runs a node's command; exit 0 is success. Lines of the
  form key=value printed after a "::outputs::" marker become node outputs.
- CommandContentionProbe: a contended resource is held while any of its
  probe commands exits 0 (e.g. `fuser /var/lib/dpkg/lock-frontend`).
- ShellWaitProbe: a boot group wait condition is ready when its command exits 0.
- CommandAccessPolicyClient: issues one binding command per principal.

SECURITY: Commands are always executed as argv lists, never through a shell.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from .config import OrchestratorConfig
from .executor import ActionResult
from .failover import WaitContext
from .secret_binder import AccessBindingError

logger = logging.getLogger(__name__)

OUTPUTS_MARKER = "::outputs::"

# Timeout constants (seconds)
DEFAULT_COMMAND_TIMEOUT_SECONDS = 1800
DEFAULT_PROBE_TIMEOUT_SECONDS = 10
MAX_ERROR_DETAIL_CHARS = 2000


class CommandError(Exception):
    """Raised when a command cannot be started."""

    pass


@dataclass
class CommandOutcome:
    """Result of a finished (or killed) subprocess."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


async def run_command(
    cmd: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
) -> CommandOutcome:
    """Run a command to completion, killing it on timeout.

    Args:
        cmd: Command and arguments.
        env: Environment variables (merged with current env).
        cwd: Working directory.
        timeout: Command timeout in seconds.

    Returns:
        CommandOutcome. A timed-out command has timed_out set.

    Raises:
        CommandError: If the command is empty or cannot be found.
    """
    if not cmd:
        raise CommandError("Command is empty")

    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=full_env,
            cwd=cwd,
        )
    except FileNotFoundError as e:
        raise CommandError(f"Command not found: {cmd[0]}") from e
    except PermissionError as e:
        raise CommandError(f"Command not executable: {cmd[0]}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        logger.error(
            "Command timed out",
            extra={"command": cmd[0], "timeout_seconds": timeout},
        )
        return CommandOutcome(returncode=-1, timed_out=True)

    return CommandOutcome(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def parse_outputs(stdout: str) -> dict[str, str]:
    """Extract key=value outputs printed after the outputs marker."""
    outputs: dict[str, str] = {}
    in_outputs = False
    for line in stdout.splitlines():
        stripped = line.strip()
        if stripped == OUTPUTS_MARKER:
            in_outputs = True
            continue
        if in_outputs and "=" in stripped:
            key, _, value = stripped.partition("=")
            if key.strip():
                outputs[key.strip()] = value.strip()
    return outputs


def _as_argv(command: Any) -> list[str]:
    if isinstance(command, str):
        return shlex.split(command)
    if isinstance(command, (list, tuple)) and all(isinstance(part, str) for part in command):
        return list(command)
    raise ValueError("command must be a string or a list of strings")


class ShellCommandAction:
    """Bootstrap action running the command described by a node payload.

    Payload format:
        command: argv list or string (split with shlex, never run via a shell)
        env: optional extra environment variables
        cwd: optional working directory
        timeoutSeconds: optional per-invocation timeout

    The command must be idempotent: it may run more than once for one node.
    """

    def __init__(self, timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS) -> None:
        self._timeout_seconds = timeout_seconds

    async def __call__(self, payload: Any) -> ActionResult:
        if not isinstance(payload, Mapping) or "command" not in payload:
            return ActionResult(
                success=False,
                error_detail="payload must be a mapping with 'command'",
            )

        try:
            argv = _as_argv(payload["command"])
        except ValueError as e:
            return ActionResult(success=False, error_detail=str(e))

        env = {str(k): str(v) for k, v in (payload.get("env") or {}).items()}
        timeout = float(payload.get("timeoutSeconds", self._timeout_seconds))

        try:
            outcome = await run_command(argv, env=env, cwd=payload.get("cwd"), timeout=timeout)
        except CommandError as e:
            return ActionResult(success=False, error_detail=str(e))

        if outcome.timed_out:
            return ActionResult(success=False, error_detail=f"Command timed out after {timeout}s")

        if outcome.returncode != 0:
            detail = outcome.stderr.strip() or outcome.stdout.strip()
            return ActionResult(
                success=False,
                error_detail=f"exit code {outcome.returncode}: {detail[-MAX_ERROR_DETAIL_CHARS:]}",
            )

        return ActionResult(success=True, outputs=parse_outputs(outcome.stdout))


class CommandContentionProbe:
    """Contention probe backed by shell commands.

    A resource is held while any of its probe commands exits 0. Resources
    without probe commands are reported as held (fail-closed), so a
    misconfigured manifest ends in LOCK_TIMEOUT rather than a racing install.
    """

    def __init__(
        self,
        commands: Mapping[str, Sequence[Sequence[str]]],
        timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
    ) -> None:
        self._commands = {
            resource: [list(command) for command in cmds] for resource, cmds in commands.items()
        }
        self._timeout_seconds = timeout_seconds

    async def __call__(self, resource: str) -> bool:
        commands = self._commands.get(resource)
        if not commands:
            logger.error(
                "No probe commands for contended resource, treating as held",
                extra={"resource": resource},
            )
            return True

        for command in commands:
            try:
                outcome = await run_command(command, timeout=self._timeout_seconds)
            except CommandError as e:
                logger.warning(
                    "Contention probe command failed to start, treating as held",
                    extra={"resource": resource, "error": str(e)},
                )
                return True
            if outcome.timed_out or outcome.returncode == 0:
                return True
        return False


class ShellWaitProbe:
    """Boot group wait condition backed by a shell command.

    The group name and index are exported as FAILOVER_GROUP and
    FAILOVER_GROUP_INDEX.
    """

    def __init__(
        self,
        command: Sequence[str],
        timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
    ) -> None:
        self._command = list(command)
        self._timeout_seconds = timeout_seconds

    async def __call__(self, context: WaitContext) -> bool:
        outcome = await run_command(
            self._command,
            env={
                "FAILOVER_GROUP": context.group_name,
                "FAILOVER_GROUP_INDEX": str(context.group_index),
            },
            timeout=self._timeout_seconds,
        )
        return outcome.ok


class CommandAccessPolicyClient:
    """Access policy client running a command template per principal.

    Template arguments may contain {vault_ref} and {principal_ref}, e.g.
    ["az", "keyvault", "set-policy", "--name", "{vault_ref}",
     "--object-id", "{principal_ref}", "--secret-permissions", "get", "list"].
    """

    def __init__(
        self,
        template: Sequence[str],
        timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        if not template:
            raise ValueError("Binding command template is empty")
        self._template = list(template)
        self._timeout_seconds = timeout_seconds

    async def grant(self, vault_ref: str, principal_ref: str) -> None:
        argv = [
            part.format(vault_ref=vault_ref, principal_ref=principal_ref)
            for part in self._template
        ]
        try:
            outcome = await run_command(argv, timeout=self._timeout_seconds)
        except CommandError as e:
            raise AccessBindingError(str(e)) from e

        if not outcome.ok:
            detail = "timed out" if outcome.timed_out else outcome.stderr.strip()
            raise AccessBindingError(
                f"Binding command failed (exit {outcome.returncode}): "
                f"{detail[-MAX_ERROR_DETAIL_CHARS:]}"
            )


class LoggingAccessPolicyClient:
    """Dry-run client: logs the binding it would issue."""

    def __init__(self) -> None:
        self.granted: list[tuple[str, str]] = []

    def grant(self, vault_ref: str, principal_ref: str) -> None:
        self.granted.append((vault_ref, principal_ref))
        logger.info(
            "Dry run: would bind principal to vault",
            extra={"vault_ref": vault_ref, "principal_ref": principal_ref},
        )


def binding_client_for(
    config: OrchestratorConfig,
    bind_command: Sequence[str] | None,
) -> CommandAccessPolicyClient | LoggingAccessPolicyClient:
    """Pick the binding client: dry run or no command template logs only."""
    if config.dry_run or not bind_command:
        return LoggingAccessPolicyClient()
    return CommandAccessPolicyClient(bind_command)
