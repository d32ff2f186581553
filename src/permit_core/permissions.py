"""Role capability checks.

Role semantics come from a ``PermissionProvider`` rather than a table in code,
so deployments can change what a role may do through configuration.
"""
import logging
from typing import Optional, Protocol

from .errors import PermissionDeniedError

logger = logging.getLogger("permit-core.permissions")

CAP_TASK_WRITE = "task:write"
CAP_TASK_APPROVE = "task:approve"


class PermissionProvider(Protocol):
    """Answers whether a role holds a capability."""

    def has_capability(self, role_id: Optional[int], capability: str) -> bool:
        ...


class StaticPermissionProvider:
    """
    Capability lookup backed by a role id -> capability list mapping.

    An empty mapping grants every capability to every role. Once a mapping is
    configured, roles missing from it hold no capabilities.
    """

    def __init__(self, role_capabilities: dict[int, list[str]]):
        self._role_capabilities = {
            int(role): frozenset(caps) for role, caps in role_capabilities.items()
        }

    def has_capability(self, role_id: Optional[int], capability: str) -> bool:
        if not self._role_capabilities:
            return True
        if role_id is None:
            return False
        return capability in self._role_capabilities.get(int(role_id), frozenset())


def require_capability(provider: PermissionProvider, role_id: Optional[int], capability: str) -> None:
    """
    Raise if the role lacks the capability.

    Raises:
        PermissionDeniedError: If the provider denies the capability
    """
    if not provider.has_capability(role_id, capability):
        logger.warning(f"Denied '{capability}' for role {role_id}")
        raise PermissionDeniedError(role_id, capability)
