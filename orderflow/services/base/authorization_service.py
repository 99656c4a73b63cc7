"""
Authorization (permission) service for role-based access control.
"""

from fnmatch import fnmatchcase
from typing import Any, Dict, Iterable, List, Mapping, Optional

from orderflow.services.base.base_service import BaseService


class RolePermissionService(BaseService):
    """
    Permission capability backed by a static role -> grant table.

    Capabilities look like ``"{kind}:{action}:{scope}"`` where scope is
    ``own`` or ``any``. Grants are glob patterns matched against the whole
    capability string. An ``own`` capability additionally requires the actor
    to be the owner named in the check context.
    """

    def __init__(self, role_grants: Mapping[str, Iterable[str]]):
        super().__init__()
        self._grants: Dict[str, List[str]] = {
            role: list(patterns) for role, patterns in role_grants.items()
        }

    def check(
        self,
        actor_id: str,
        actor_role: str,
        capability: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        context = context or {}

        if capability.endswith(":own") and context.get("owner_id") != actor_id:
            self._logger.info(
                "Permission denied: actor is not the owner",
                extra={"actor_id": actor_id, "actor_role": actor_role, "capability": capability},
            )
            return False

        patterns = self._grants.get(actor_role, [])
        allowed = any(fnmatchcase(capability, pattern) for pattern in patterns)

        if not allowed:
            self._logger.info(
                "Permission denied",
                extra={"actor_id": actor_id, "actor_role": actor_role, "capability": capability},
            )
        return allowed

    def grants_for(self, role: str) -> List[str]:
        return list(self._grants.get(role, []))
