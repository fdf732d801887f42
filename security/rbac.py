"""
security/rbac.py -- Role-based access control.

Storage:
    role:{id}            Role JSON
    permission:{id}      Permission JSON
    user:{user_id}:roles set of role ids

Decision [R1]: deny by default. A request is granted only when some
permission reachable from the user's roles matches (resource, action) and
every condition on that permission is satisfied by the request context.

Conditions compare strictly: the context value must have the same type and
be equal. {"projectId": "123"} does not match a context of {"projectId": 123}
and a context without projectId denies.

Roles may name parent roles in inherit_from. Resolution is breadth-first with
a visited set, so cycles and diamonds terminate and each role is read once.
Dangling role or permission ids contribute nothing.

evaluate_conditions() and find_grant() are pure; RBACEngine only loads data
and records the decision.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from typing import Any

from core.errors import MalformedStoredData
from security.events import SecurityEventLog
from security.models import Permission, Role
from store.kv import CredentialStore

logger = logging.getLogger("trustgate.rbac")


def _role_key(role_id: str) -> str:
    return f"role:{role_id}"


def _permission_key(permission_id: str) -> str:
    return f"permission:{permission_id}"


def _user_roles_key(user_id: str) -> str:
    return f"user:{user_id}:roles"


# ---------------------------------------------------------------------------
# Decision procedure
# ---------------------------------------------------------------------------


def evaluate_conditions(conditions: dict[str, Any] | None, context: dict[str, Any] | None) -> bool:
    """True when every condition is present in context with an identical value."""
    if not conditions:
        return True
    context = context or {}
    for name, expected in conditions.items():
        if name not in context:
            return False
        actual = context[name]
        if type(actual) is not type(expected) or actual != expected:
            return False
    return True


def find_grant(
    permissions: Iterable[Permission], resource: str, action: str, context: dict[str, Any] | None = None
) -> Permission | None:
    """Return the first permission granting (resource, action) in context, or None."""
    for permission in permissions:
        if permission.resource != resource or permission.action != action:
            continue
        if evaluate_conditions(permission.conditions, context):
            return permission
    return None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class RBACEngine:
    def __init__(self, store: CredentialStore, events: SecurityEventLog) -> None:
        self._store = store
        self._events = events

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def get_role(self, role_id: str) -> Role | None:
        raw = self._store.get(_role_key(role_id))
        return None if raw is None else Role.from_json(raw, _role_key(role_id))

    def get_permission(self, permission_id: str) -> Permission | None:
        raw = self._store.get(_permission_key(permission_id))
        return None if raw is None else Permission.from_json(raw, _permission_key(permission_id))

    def get_user_roles(self, user_id: str) -> list[str]:
        """Role ids directly assigned to user_id, sorted."""
        return sorted(self._store.smembers(_user_roles_key(user_id)))

    def _resolve_roles(self, role_ids: Iterable[str]) -> list[Role]:
        """Expand role_ids through inherit_from. Unknown ids are skipped."""
        queue = deque(role_ids)
        seen: set[str] = set()
        roles: list[Role] = []
        while queue:
            role_id = queue.popleft()
            if role_id in seen:
                continue
            seen.add(role_id)
            role = self.get_role(role_id)
            if role is None:
                logger.debug("Role %s is assigned or inherited but not defined", role_id)
                continue
            roles.append(role)
            queue.extend(parent for parent in role.inherit_from if parent not in seen)
        return roles

    def _permissions_for(self, roles: list[Role]) -> list[Permission]:
        ids: list[str] = []
        for role in roles:
            for permission_id in role.permissions:
                if permission_id not in ids:
                    ids.append(permission_id)
        if not ids:
            return []
        keys = [_permission_key(pid) for pid in ids]
        permissions = []
        for key, raw in zip(keys, self._store.mget(keys)):
            if raw is not None:
                permissions.append(Permission.from_json(raw, key))
        return permissions

    def effective_permissions(self, user_id: str) -> list[Permission]:
        """Every permission user_id holds through direct and inherited roles."""
        return self._permissions_for(self._resolve_roles(self.get_user_roles(user_id)))

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def has_permission(
        self, user_id: str, resource: str, action: str, context: dict[str, Any] | None = None
    ) -> bool:
        """Deny-by-default permission check. Never raises."""
        context = context or {}
        details: dict[str, Any] = {"resource": resource, "action": action}
        try:
            grant = find_grant(self.effective_permissions(user_id), resource, action, context)
        except Exception as exc:
            logger.exception("Permission check failed for user %s on %s:%s", user_id, resource, action)
            grant = None
            details["error"] = type(exc).__name__

        details["granted"] = grant is not None
        if grant is not None:
            details["permission"] = grant.id
        self._events.emit(
            "permission_check",
            "low" if grant is not None else "medium",
            details,
            user_id=user_id,
            ip_address=str(context.get("ipAddress") or "internal"),
            user_agent=str(context.get("userAgent") or "system"),
        )
        return grant is not None

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> None:
        """Create or overwrite a role definition. Permission ids are not checked."""
        self._store.set(_role_key(role.id), role.to_json())
        logger.info("Role %s saved with %d permission(s)", role.id, len(role.permissions))

    def create_permission(self, permission: Permission) -> None:
        self._store.set(_permission_key(permission.id), permission.to_json())
        logger.info("Permission %s saved (%s:%s)", permission.id, permission.resource, permission.action)

    def assign_role(self, user_id: str, role_id: str) -> bool:
        """Add role_id to user_id. Idempotent; returns True if it was newly assigned."""
        added = self._store.sadd(_user_roles_key(user_id), role_id) == 1
        self._events.emit(
            "permission_check",
            "medium",
            {"action": "role_assigned", "role_id": role_id, "newly_assigned": added},
            user_id=user_id,
        )
        return added

    def unassign_role(self, user_id: str, role_id: str) -> bool:
        """Remove role_id from user_id. Returns False if it was not assigned."""
        removed = self._store.srem(_user_roles_key(user_id), role_id) == 1
        if removed:
            self._events.emit(
                "permission_check",
                "medium",
                {"action": "role_unassigned", "role_id": role_id},
                user_id=user_id,
            )
        return removed

    def list_roles(self) -> list[Role]:
        roles = []
        for key in self._store.keys("role:"):
            raw = self._store.get(key)
            if raw is None:
                continue
            try:
                roles.append(Role.from_json(raw, key))
            except MalformedStoredData as exc:
                logger.warning("Skipping unreadable role: %s", exc)
        return roles
