"""
API layer for the memory engine.
"""

from memory_engine.api.routes import router
from memory_engine.api.websocket import router as ws_router

__all__ = ["router", "ws_router"]
