# ops_app/utils/permissions.py

MANAGE_IMPORTS = "manage_imports"
VIEW_IMPORTS = "view_imports"

ROLE_PERMISSIONS = {
    "admin": frozenset({MANAGE_IMPORTS, VIEW_IMPORTS}),
    "manager": frozenset({MANAGE_IMPORTS, VIEW_IMPORTS}),
    "viewer": frozenset({VIEW_IMPORTS}),
}


def permissions_for(user):
    """All permission names a user holds through their role"""
    if not user or not getattr(user, "is_authenticated", False):
        return frozenset()
    if user.is_super_admin:
        return frozenset().union(*ROLE_PERMISSIONS.values())
    return ROLE_PERMISSIONS.get(user.role, frozenset())


def has_permission(user, permission_name):
    """Check if user has a specific permission"""
    if not user or not getattr(user, "is_authenticated", False):
        return False

    # Super admins have all permissions
    if user.is_super_admin:
        return True

    if not user.is_active:
        return False
    return permission_name in permissions_for(user)
