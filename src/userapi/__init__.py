"""User management API with role-aware request guarding."""

from .api import create_app

__all__ = ["create_app"]
