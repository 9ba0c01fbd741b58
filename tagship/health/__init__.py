"""
Health endpoint served by the release container.
"""

from .app import app, HEALTH_PATH, HEALTH_BODY

__all__ = ["app", "HEALTH_PATH", "HEALTH_BODY"]
