import logging

from rest_framework.permissions import BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")

ALL_ROLES = {User.Role.CASHIER, User.Role.SUPERVISOR, User.Role.ADMIN}
SUPERVISOR_ROLES = {User.Role.SUPERVISOR, User.Role.ADMIN}

ROLE_CAPABILITY_MATRIX = {
    "masters.view": ALL_ROLES,
    "stock.view": ALL_ROLES,
    "sales.post": ALL_ROLES,
    "sales.return": ALL_ROLES,
    "quotation.manage": ALL_ROLES,
    "quotation.convert": ALL_ROLES,
    "stock.receive": SUPERVISOR_ROLES,
    "stock.adjust": SUPERVISOR_ROLES,
    "stock.dispatch": SUPERVISOR_ROLES,
    "stock.opening": SUPERVISOR_ROLES,
    "document.cancel": SUPERVISOR_ROLES,
    "movement.reverse": SUPERVISOR_ROLES,
    "admin.records.manage": {User.Role.ADMIN},
    "settings.manage": {User.Role.ADMIN},
}


def get_user_role(user):
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser:
        return User.Role.ADMIN
    role = getattr(user, "role", None)
    if role:
        return role
    if getattr(user, "is_staff", False):
        return User.Role.ADMIN
    return User.Role.CASHIER


def user_has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    allowed_roles = ROLE_CAPABILITY_MATRIX.get(capability)
    if not allowed_roles:
        return False
    return get_user_role(user) in allowed_roles


class RoleCapabilityPermission(BasePermission):
    """Permission class that validates role capability by action/method and logs denied attempts."""

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        capability_map = getattr(view, "permission_action_map", {})
        action_key = getattr(view, "action", None) or request.method.lower()
        capability = capability_map.get(action_key)
        if capability is None:
            return True

        allowed = user_has_capability(request.user, capability)
        if not allowed:
            logger.warning(
                "permission_denied capability=%s user=%s role=%s method=%s path=%s view=%s action=%s",
                capability,
                getattr(request.user, "username", "anonymous"),
                get_user_role(request.user),
                request.method,
                request.path,
                view.__class__.__name__,
                action_key,
            )
        return allowed
