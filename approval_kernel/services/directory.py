"""
approval_kernel.services.directory -- Role to user lookup.

The engine resolves role-based chain steps through a ``RoleDirectory`` at
the moment the step becomes current.  Production deployments plug in their
HR or identity system; ``StaticRoleDirectory`` is built from configuration.
"""

from __future__ import annotations

from typing import Mapping, Protocol, runtime_checkable


@runtime_checkable
class RoleDirectory(Protocol):
    """Resolve the user who holds ``role`` for a given submitter."""

    def approver_for_role(self, role: str, submitter_id: str) -> str | None:
        ...


class StaticRoleDirectory:
    """Fixed role assignments, optionally overridden per submitter.

    ``per_submitter`` maps submitter id -> {role: approver id}; it is
    consulted first so that, e.g., each employee's "manager" can differ.
    """

    def __init__(
        self,
        roles: Mapping[str, str] | None = None,
        per_submitter: Mapping[str, Mapping[str, str]] | None = None,
    ) -> None:
        self._roles = dict(roles or {})
        self._per_submitter = {
            submitter: dict(mapping)
            for submitter, mapping in (per_submitter or {}).items()
        }

    def approver_for_role(self, role: str, submitter_id: str) -> str | None:
        override = self._per_submitter.get(submitter_id, {}).get(role)
        if override is not None:
            return override
        return self._roles.get(role)
