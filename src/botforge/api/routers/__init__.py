"""API routers."""

from . import bots, deployments, health

__all__ = ["bots", "deployments", "health"]
