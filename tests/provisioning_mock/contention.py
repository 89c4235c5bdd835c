"""Scripted contention probe."""

from __future__ import annotations

from collections.abc import Mapping


class ScriptedContentionProbe:
    """Reports a resource as held for a fixed number of checks.

    A count of None means the resource is held forever. Resources not in the
    script are free.
    """

    def __init__(self, held_checks: Mapping[str, int | None], *, error: bool = False) -> None:
        self._remaining = dict(held_checks)
        self._error = error
        self.checks: dict[str, int] = {}

    def __call__(self, resource: str) -> bool:
        self.checks[resource] = self.checks.get(resource, 0) + 1
        if self._error:
            raise OSError(f"cannot read lock state for {resource}")

        if resource not in self._remaining:
            return False
        remaining = self._remaining[resource]
        if remaining is None:
            return True
        if remaining > 0:
            self._remaining[resource] = remaining - 1
            return True
        return False
