# ops_app/routes/__init__.py
"""
Application routes package
"""

from .admin_importer import admin_importer_blueprint, register_importer_admin_routes


def init_routes(app):
    """Initialize all application routes"""
    register_importer_admin_routes(app)


__all__ = ["admin_importer_blueprint", "init_routes", "register_importer_admin_routes"]
