"""
Scope capability evaluation.

The engine asks one question: may a user with this role perform this
action in this scope?  ``PermissionEvaluator`` is the contract; the default
``MatrixPermissionEvaluator`` answers from a static role matrix.  A
deployment that stores its matrix elsewhere installs its own evaluator on
``app.extensions["reftrack.permissions"]``.

Usage:
    from reftrack.services.permission import check_permission, get_evaluator

    check_permission(actor, "global", "bulk")     # raises AuthorizationError
    if get_evaluator().can_act_on(actor.role, "local", "view_all"):
        ...
"""

from flask import current_app, has_app_context

from reftrack.core.exceptions import AuthorizationError
from reftrack.models.identity import (
    ROLE_DELEGATED_ADMIN,
    ROLE_INTER_LAB_SENDER,
    ROLE_SUPERADMIN,
    ROLE_USER,
)
from reftrack.models.reference import SCOPE_GLOBAL, SCOPE_LOCAL

EXTENSION_KEY = "reftrack.permissions"

CAPABILITIES = frozenset({
    "create",
    "move",
    "bulk",
    "request_reopen",
    "resolve_reopen",
    "override",
    "view_all",
})

_HOLDER_ACTIONS = {"move", "bulk", "request_reopen"}

# role → scope → allowed actions
PERMISSION_MATRIX = {
    ROLE_USER: {
        SCOPE_LOCAL: {"create"} | _HOLDER_ACTIONS,
        SCOPE_GLOBAL: set(_HOLDER_ACTIONS),
    },
    ROLE_INTER_LAB_SENDER: {
        SCOPE_LOCAL: {"create"} | _HOLDER_ACTIONS,
        SCOPE_GLOBAL: {"create"} | _HOLDER_ACTIONS,
    },
    ROLE_DELEGATED_ADMIN: {
        SCOPE_LOCAL: set(CAPABILITIES),
        SCOPE_GLOBAL: {"create"} | _HOLDER_ACTIONS,
    },
    ROLE_SUPERADMIN: {
        SCOPE_LOCAL: set(CAPABILITIES),
        SCOPE_GLOBAL: set(CAPABILITIES),
    },
}


class PermissionEvaluator:
    """Capability contract consulted once per external request."""

    def can_act_on(self, actor_role: str, scope: str, action: str) -> bool:
        raise NotImplementedError

    def roles_with(self, scope: str, action: str) -> list[str]:
        """Roles that hold *action* in *scope*."""
        return [role for role in PERMISSION_MATRIX if self.can_act_on(role, scope, action)]


class MatrixPermissionEvaluator(PermissionEvaluator):
    """Default evaluator backed by PERMISSION_MATRIX."""

    def __init__(self, matrix: dict | None = None):
        self.matrix = matrix or PERMISSION_MATRIX

    def can_act_on(self, actor_role: str, scope: str, action: str) -> bool:
        if action not in CAPABILITIES:
            return False
        return action in self.matrix.get(actor_role, {}).get(scope, set())


_default_evaluator = MatrixPermissionEvaluator()


def init_permissions(app, evaluator: PermissionEvaluator | None = None) -> None:
    app.extensions[EXTENSION_KEY] = evaluator or _default_evaluator


def get_evaluator() -> PermissionEvaluator:
    if has_app_context():
        return current_app.extensions.get(EXTENSION_KEY, _default_evaluator)
    return _default_evaluator


def check_permission(actor, scope: str, action: str) -> None:
    """
    Assert the actor's role grants *action* in *scope*.

    Raises:
        AuthorizationError: If the evaluator denies it.
    """
    if not get_evaluator().can_act_on(actor.role, scope, action):
        raise AuthorizationError(
            f"Role '{actor.role}' may not '{action}' {scope} references",
            details={"role": actor.role, "scope": scope, "action": action},
        )
