"""Provisioning queue FastAPI application."""

from .main import create_app, create_production_app
from .settings import QueueSettings

__all__ = ["create_app", "create_production_app", "QueueSettings"]
