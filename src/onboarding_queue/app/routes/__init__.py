"""HTTP route factories for the provisioning queue."""

from .admin import create_admin_router
from .queue import create_queue_router

__all__ = ['create_admin_router', 'create_queue_router']
