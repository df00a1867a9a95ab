"""FastAPI dependency injection functions.

The runtime objects are built once by the application lifespan and kept on
``app.state``; these helpers hand them to route handlers.
"""

import logging

from fastapi import HTTPException, Request, status

from plugins.dashboard import DashboardSync
from plugins.registry import ValueRegistry
from plugins.scheduler import PluginScheduler
from plugins.store import ConfigStore

logger = logging.getLogger(__name__)


def _state_attr(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        logger.error(f"Runtime component '{name}' requested before startup")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Plugin runtime is not running",
        )
    return value


def get_scheduler(request: Request) -> PluginScheduler:
    return _state_attr(request, "scheduler")


def get_registry(request: Request) -> ValueRegistry:
    return _state_attr(request, "registry")


def get_store(request: Request) -> ConfigStore:
    return _state_attr(request, "store")


def get_dashboard(request: Request) -> DashboardSync:
    return _state_attr(request, "dashboard")
