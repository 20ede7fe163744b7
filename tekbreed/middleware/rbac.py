"""
Role-Based Access Control (RBAC) for FastAPI.

Roles come from the JWT `role` claim. Fine-grained checks use permission
strings of the form ACTION:ENTITY[:ACCESS], e.g. UPDATE:COMMENT:OWN.
"""
from fastapi import HTTPException, status, Depends
from typing import Dict, List, Optional

from tekbreed.middleware.jwt_middleware import get_current_user, user_id_from_claims


class Roles:
    ADMIN = "admin"
    MODERATOR = "moderator"
    USER = "user"


# Higher roles inherit lower role permissions
ROLE_HIERARCHY = {
    Roles.ADMIN: [Roles.ADMIN, Roles.MODERATOR, Roles.USER],
    Roles.MODERATOR: [Roles.MODERATOR, Roles.USER],
    Roles.USER: [Roles.USER]
}

# Permissions granted directly to each role (before hierarchy expansion).
# An OWN permission only applies to resources the caller owns.
ROLE_PERMISSIONS: Dict[str, List[str]] = {
    Roles.USER: [
        "CREATE:COMMENT:OWN",
        "UPDATE:COMMENT:OWN",
        "DELETE:COMMENT:OWN",
        "CREATE:REPLY:OWN",
        "UPDATE:REPLY:OWN",
        "DELETE:REPLY:OWN",
        "CREATE:BOOKMARK:OWN",
        "UPDATE:BOOKMARK:OWN",
        "DELETE:BOOKMARK:OWN",
        "DELETE:TAG:OWN",
        "UPDATE:USER:OWN",
        "DELETE:USER:OWN",
    ],
    Roles.MODERATOR: [
        "UPDATE:COMMENT:ANY",
        "DELETE:COMMENT:ANY",
        "UPDATE:REPLY:ANY",
        "DELETE:REPLY:ANY",
        "UPDATE:REPORT:ANY",
        "READ:REPORT:ANY",
    ],
    Roles.ADMIN: ["*"],
}


def get_user_permissions(role: Optional[str]) -> List[str]:
    """All roles this role is allowed to act as."""
    return ROLE_HIERARCHY.get((role or Roles.USER).lower(), [Roles.USER])


def _granted_permissions(role: Optional[str]) -> List[str]:
    granted = []
    for inherited in get_user_permissions(role):
        granted.extend(ROLE_PERMISSIONS.get(inherited, []))
    return granted


def has_permission(current_user: dict, permission: str, resource_owner_id: Optional[str] = None) -> bool:
    """
    Check an ACTION:ENTITY[:ACCESS] permission for the caller.

    OWN is satisfied by an ANY grant, or by an OWN grant when the caller owns
    the resource. ANY requires an ANY grant.
    """
    parts = permission.upper().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid permission string: {permission}")
    action, entity = parts[0], parts[1]
    access = parts[2] if len(parts) == 3 else "ANY"

    granted = _granted_permissions(current_user.get("role", Roles.USER))
    if "*" in granted:
        return True

    if f"{action}:{entity}:ANY" in granted:
        return True

    if access == "OWN" and f"{action}:{entity}:OWN" in granted:
        return resource_owner_id is not None and str(resource_owner_id) == str(user_id_from_claims(current_user))

    return False


def require_roles(allowed_roles: List[str]):
    """
    FastAPI dependency that enforces role-based access.

    Usage:
        @router.post('/moderation')
        async def moderate(current_user: dict = Depends(require_roles([Roles.MODERATOR]))):
            ...
    """
    async def role_checker(current_user: dict = Depends(get_current_user)) -> dict:
        user_role = current_user.get("role", Roles.USER)
        user_permissions = get_user_permissions(user_role)

        allowed = any(
            allowed_role.lower() in user_permissions
            for allowed_role in allowed_roles
        )

        if not allowed:
            print(f"[RBAC] ❌ Access DENIED for {user_id_from_claims(current_user)} (role: {user_role})")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": "access_denied",
                    "message": f"This action requires one of these roles: {', '.join(allowed_roles)}",
                    "your_role": user_role
                }
            )

        return current_user

    return role_checker


def require_admin(current_user: dict = Depends(get_current_user)) -> dict:
    """Dependency for admin-only endpoints."""
    user_role = current_user.get("role", Roles.USER)

    if user_role.lower() != Roles.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "admin_required",
                "message": "This action requires administrator privileges",
                "your_role": user_role
            }
        )

    return current_user


def require_moderator_or_above(current_user: dict = Depends(get_current_user)) -> dict:
    user_role = current_user.get("role", Roles.USER)

    if user_role.lower() not in (Roles.ADMIN, Roles.MODERATOR):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "moderator_required",
                "message": "This action requires moderator or administrator privileges",
                "your_role": user_role
            }
        )

    return current_user
