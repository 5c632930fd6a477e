"""
Dependency injection for API endpoints.

Provides reusable dependencies for FastAPI routes including
service instances and configuration.
"""

import secrets
from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, Request, status

from memory_engine.config import Settings
from memory_engine.core.maintenance import MaintenanceScheduler
from memory_engine.core.memory import MemoryStore

logger = structlog.get_logger(__name__)


def get_app_settings(request: Request) -> Settings:
    """Settings the application was created with."""
    return request.app.state.settings


def get_memory_store(request: Request) -> MemoryStore:
    """
    Get the memory store from app state.

    Args:
        request: FastAPI request object

    Returns:
        MemoryStore instance

    Raises:
        HTTPException: If the store is not initialized
    """
    store = getattr(request.app.state, "memory_store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Memory store not initialized",
        )
    return store


def get_scheduler(request: Request) -> MaintenanceScheduler:
    """
    Get the maintenance scheduler from app state.

    Raises:
        HTTPException: If the scheduler is not initialized
    """
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Maintenance scheduler not initialized",
        )
    return scheduler


async def verify_api_key(request: Request) -> bool:
    """
    Verify the API key header outside development.

    Accepts any request when no key is configured.

    Raises:
        HTTPException: If the key is missing or wrong
    """
    settings: Settings = request.app.state.settings
    if not settings.requires_api_key:
        return True

    api_key = request.headers.get("X-API-Key")
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required",
        )
    if not secrets.compare_digest(api_key, settings.api_key.get_secret_value()):
        logger.warning("api_key_rejected", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
    return True


# Dependency type aliases
SettingsDep = Annotated[Settings, Depends(get_app_settings)]
StoreDep = Annotated[MemoryStore, Depends(get_memory_store)]
SchedulerDep = Annotated[MaintenanceScheduler, Depends(get_scheduler)]
AuthDep = Annotated[bool, Depends(verify_api_key)]
